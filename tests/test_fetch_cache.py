import asyncio

import httpx
import pytest

from npmx_server.config import DisallowedDomainPolicy
from npmx_server.service.errors import DisallowedDomainError, UpstreamFetchError
from npmx_server.service.fetch_cache import (
    FETCH_CACHE_STORAGE_BASE,
    CachedFetchEntry,
    FetchCache,
    generate_fetch_cache_key,
    is_allowed_domain,
    is_cache_entry_stale,
    url_host,
)
from npmx_server.storage.memory import MemoryKVStore

from fakes import FailingStore, FakeClock

PACKUMENT_URL = "https://registry.npmjs.org/vue"
ABBREVIATED = "application/vnd.npm.install-v1+json"


class Upstream:
    """Mock registry answering with a versioned payload per call."""

    def __init__(self):
        self.calls = []
        self.status = 200
        self.error = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(
            self.status,
            json={"name": "vue", "n": len(self.calls)},
            headers={"etag": f'"{len(self.calls)}"', "x-ignored": "1"},
        )


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def clock():
    return FakeClock()


def _cache(store, upstream, clock, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))
    kwargs.setdefault("allowed_domains", ["registry.npmjs.org"])
    return FetchCache(store, client=client, clock=clock.ms, **kwargs)


class TestHelpers:
    def test_staleness_boundary(self):
        entry = CachedFetchEntry(data={}, status=200, headers={}, cached_at=1_000, ttl=5)
        assert is_cache_entry_stale(entry, 1_000) is False
        assert is_cache_entry_stale(entry, 6_000) is False
        assert is_cache_entry_stale(entry, 6_001) is True

    def test_staleness_is_pure(self):
        entry = CachedFetchEntry(data={}, status=200, headers={}, cached_at=0, ttl=0)
        assert is_cache_entry_stale(entry, 1) is True
        assert is_cache_entry_stale(entry, 1) is True
        assert entry.cached_at == 0

    def test_key_is_deterministic(self):
        key = generate_fetch_cache_key(PACKUMENT_URL)
        assert key == generate_fetch_cache_key(PACKUMENT_URL, "get")
        assert key == "v1:registry.npmjs.org:GET:/vue"

    def test_key_varies_with_method_query_body_and_version(self):
        base = generate_fetch_cache_key(PACKUMENT_URL)
        with_query = generate_fetch_cache_key(f"{PACKUMENT_URL}?page=2")
        other_query = generate_fetch_cache_key(f"{PACKUMENT_URL}?page=3")
        post = generate_fetch_cache_key(PACKUMENT_URL, "POST", {"a": 1})
        post_other = generate_fetch_cache_key(PACKUMENT_URL, "POST", {"a": 2})
        assert len({base, with_query, other_query, post, post_other}) == 5
        assert generate_fetch_cache_key(PACKUMENT_URL, version="v2").startswith("v2:")
        # body key order does not matter
        assert generate_fetch_cache_key(PACKUMENT_URL, "POST", {"a": 1, "b": 2}) == (
            generate_fetch_cache_key(PACKUMENT_URL, "POST", {"b": 2, "a": 1})
        )

    def test_key_varies_with_accept_header(self):
        base = generate_fetch_cache_key(PACKUMENT_URL)
        full = generate_fetch_cache_key(PACKUMENT_URL, headers={"Accept": "application/json"})
        abbreviated = generate_fetch_cache_key(PACKUMENT_URL, headers={"accept": ABBREVIATED})
        assert len({base, full, abbreviated}) == 3
        # unrelated headers leave the key alone
        assert generate_fetch_cache_key(PACKUMENT_URL, headers={"User-Agent": "x"}) == base
        assert generate_fetch_cache_key(PACKUMENT_URL, headers={"ACCEPT": ABBREVIATED}) == abbreviated

    def test_host_matching(self):
        allowed = ["registry.npmjs.org"]
        assert url_host("https://user@Registry.npmjs.org/x") == "registry.npmjs.org"
        assert url_host("ftp://registry.npmjs.org/x") is None
        assert is_allowed_domain(PACKUMENT_URL, allowed)
        assert not is_allowed_domain("https://evil.example/registry.npmjs.org", allowed)
        assert not is_allowed_domain("https://registry.npmjs.org.evil.example/", allowed)
        assert not is_allowed_domain("not a url", allowed)


class TestFetchCache:
    @pytest.mark.asyncio
    async def test_miss_fetches_and_stores(self, upstream, clock):
        store = MemoryKVStore()
        cache = _cache(store, upstream, clock)

        result = await cache.cached_fetch(PACKUMENT_URL)

        assert result.data == {"name": "vue", "n": 1}
        assert result.is_stale is False
        assert result.cached_at == clock.ms()
        assert result.headers == {"content-type": "application/json", "etag": '"1"'}
        stored = await store.get(FETCH_CACHE_STORAGE_BASE, generate_fetch_cache_key(PACKUMENT_URL))
        assert stored["cachedAt"] == clock.ms()
        assert stored["ttl"] == 300
        assert stored["data"] == {"name": "vue", "n": 1}

    @pytest.mark.asyncio
    async def test_fresh_hit_skips_network(self, upstream, clock):
        cache = _cache(MemoryKVStore(), upstream, clock)
        await cache.cached_fetch(PACKUMENT_URL, ttl=5)
        clock.advance(5)

        result = await cache.cached_fetch(PACKUMENT_URL, ttl=5)

        assert result.is_stale is False
        assert result.data["n"] == 1
        assert len(upstream.calls) == 1

    @pytest.mark.asyncio
    async def test_stale_hit_serves_old_data_and_revalidates(self, upstream, clock):
        cache = _cache(MemoryKVStore(), upstream, clock)
        start = clock.ms()
        await cache.cached_fetch(PACKUMENT_URL, ttl=5)

        clock.advance(6)
        stale = await cache.cached_fetch(PACKUMENT_URL, ttl=5)
        assert stale.is_stale is True
        assert stale.data["n"] == 1
        assert stale.cached_at == start

        await cache.drain()
        assert cache.pending_revalidations == 0
        assert len(upstream.calls) == 2

        clock.advance(0.1)
        fresh = await cache.cached_fetch(PACKUMENT_URL, ttl=5)
        assert fresh.is_stale is False
        assert fresh.data["n"] == 2
        assert fresh.cached_at == start + 6_000

    @pytest.mark.asyncio
    async def test_concurrent_stale_hits_share_one_revalidation(self, upstream, clock):
        cache = _cache(MemoryKVStore(), upstream, clock)
        await cache.cached_fetch(PACKUMENT_URL, ttl=5)
        clock.advance(6)

        results = await asyncio.gather(
            *(cache.cached_fetch(PACKUMENT_URL, ttl=5) for _ in range(3))
        )
        await cache.drain()

        assert all(result.is_stale for result in results)
        assert len(upstream.calls) == 2

    @pytest.mark.asyncio
    async def test_failed_revalidation_keeps_entry(self, upstream, clock):
        store = MemoryKVStore()
        cache = _cache(store, upstream, clock)
        await cache.cached_fetch(PACKUMENT_URL, ttl=5)
        clock.advance(6)
        upstream.status = 503

        stale = await cache.cached_fetch(PACKUMENT_URL, ttl=5)
        await cache.drain()

        assert stale.is_stale is True
        again = await cache.cached_fetch(PACKUMENT_URL, ttl=5)
        await cache.drain()
        assert again.is_stale is True
        assert again.data["n"] == 1

    @pytest.mark.asyncio
    async def test_miss_failure_raises_and_writes_nothing(self, upstream, clock):
        store = MemoryKVStore()
        cache = _cache(store, upstream, clock)
        upstream.status = 404

        with pytest.raises(UpstreamFetchError) as excinfo:
            await cache.cached_fetch(PACKUMENT_URL)

        assert excinfo.value.upstream_status == 404
        assert store.keys(FETCH_CACHE_STORAGE_BASE) == []

    @pytest.mark.asyncio
    async def test_transport_error_is_upstream_error(self, upstream, clock):
        cache = _cache(MemoryKVStore(), upstream, clock)
        upstream.error = httpx.ConnectError("refused")

        with pytest.raises(UpstreamFetchError):
            await cache.cached_fetch(PACKUMENT_URL)

    @pytest.mark.asyncio
    async def test_disallowed_host_bypasses_cache(self, upstream, clock):
        store = MemoryKVStore()
        cache = _cache(store, upstream, clock)

        result = await cache.cached_fetch("https://example.com/data.json")

        assert result.cached_at is None
        assert result.is_stale is False
        assert len(upstream.calls) == 1
        assert store.keys() == []

    @pytest.mark.asyncio
    async def test_disallowed_host_rejected_before_network(self, upstream, clock):
        cache = _cache(
            MemoryKVStore(), upstream, clock, disallowed_policy=DisallowedDomainPolicy.REJECT
        )

        with pytest.raises(DisallowedDomainError):
            await cache.cached_fetch("https://example.com/data.json")
        assert upstream.calls == []

    @pytest.mark.asyncio
    async def test_storage_read_failure_counts_as_miss(self, upstream, clock):
        store = FailingStore()
        cache = _cache(store, upstream, clock)
        store.fail = {"get", "set"}

        first = await cache.cached_fetch(PACKUMENT_URL)
        second = await cache.cached_fetch(PACKUMENT_URL)

        assert first.data["n"] == 1
        assert second.data["n"] == 2

    @pytest.mark.asyncio
    async def test_post_body_is_sent_and_keyed(self, upstream, clock):
        store = MemoryKVStore()
        cache = _cache(store, upstream, clock)

        await cache.cached_fetch(PACKUMENT_URL, method="POST", body={"q": "vue"})
        await cache.cached_fetch(PACKUMENT_URL, method="POST", body={"q": "react"})

        assert [call.method for call in upstream.calls] == ["POST", "POST"]
        assert b'"vue"' in upstream.calls[0].content
        assert len(store.keys(FETCH_CACHE_STORAGE_BASE)) == 2

    @pytest.mark.asyncio
    async def test_text_responses_are_cached_as_text(self, clock):
        def handler(request):
            return httpx.Response(200, text="hello", headers={"content-type": "text/plain"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        cache = FetchCache(
            MemoryKVStore(), allowed_domains=["ungh.cc"], client=client, clock=clock.ms
        )
        result = await cache.cached_fetch("https://ungh.cc/repos/vuejs/core/readme")
        assert result.data == "hello"

    @pytest.mark.asyncio
    async def test_accept_header_selects_separate_entries(self, upstream, clock):
        store = MemoryKVStore()
        cache = _cache(store, upstream, clock)

        full = await cache.cached_fetch(PACKUMENT_URL)
        abbreviated = await cache.cached_fetch(PACKUMENT_URL, headers={"Accept": ABBREVIATED})
        again = await cache.cached_fetch(PACKUMENT_URL, headers={"Accept": ABBREVIATED})

        assert full.data["n"] == 1
        assert abbreviated.data["n"] == 2
        assert again.data["n"] == 2
        assert upstream.calls[1].headers["accept"] == ABBREVIATED
        assert len(store.keys(FETCH_CACHE_STORAGE_BASE)) == 2
