from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from starlette.middleware.sessions import SessionMiddleware

from npmx_server.api.error_handling import register_exception_handlers
from npmx_server.api.routes import router
from npmx_server.config import Settings, get_settings
from npmx_server.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from npmx_server.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", kv_backend=runtime.storage_config.backend.value)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="npmx server", version=__version__, lifespan=lifespan)

    if settings.session_password:
        app.add_middleware(
            SessionMiddleware,
            secret_key=settings.session_password,
            session_cookie=settings.session_cookie_name,
            same_site="lax",
            https_only=not settings.dev_mode,
        )
    else:
        # auth endpoints answer 500 until a password is configured
        logger.warning("session_password_missing")

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag logs with X-Request-ID (or a fresh UUID) and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
