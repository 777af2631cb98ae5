import json

import pytest
import respx
from httpx import ConnectError, Response

from context_search.cache import MemoryStore, RemoteStore, TwoTierCache, make_cache_key

REMOTE_URL = "https://cache.example.upstash.io"


class TestCacheKey:
    def test_normalizes_case_and_whitespace(self):
        assert make_cache_key("filter", "Best  Python\tIDE") == "filter:best-python-ide"

    def test_truncated(self):
        key = make_cache_key("filter", "x" * 500)
        assert len(key) == 200
        assert key.startswith("filter:")

    def test_case_variants_share_a_key(self):
        assert make_cache_key("intent", "Rust") == make_cache_key("intent", "rust")


class TestMemoryStore:
    def test_get_before_expiry(self, clock):
        store = MemoryStore(clock=clock)
        store.set("k", {"v": 1}, ttl=10)
        clock.advance(9.9)
        assert store.get("k") == {"v": 1}

    def test_expired_entry_never_returned(self, clock):
        store = MemoryStore(clock=clock)
        store.set("k", "v", ttl=10)
        clock.advance(10)
        assert store.get("k") is None
        assert len(store) == 0

    def test_sweep_removes_only_expired(self, clock):
        store = MemoryStore(clock=clock)
        store.set("old", 1, ttl=5)
        store.set("new", 2, ttl=50)
        clock.advance(6)

        assert store.sweep() == 1
        assert store.get("new") == 2
        assert len(store) == 1

    def test_delete(self, clock):
        store = MemoryStore(clock=clock)
        store.set("k", 1, ttl=5)
        store.delete("k")
        store.delete("missing")
        assert store.get("k") is None


@pytest.mark.asyncio
@respx.mock
async def test_remote_store_get_and_set():
    get_route = respx.get(f"{REMOTE_URL}/get/filter%3Aabc").mock(
        return_value=Response(200, json={"result": json.dumps({"posts": []})})
    )
    set_route = respx.post(REMOTE_URL).mock(
        return_value=Response(200, json={"result": "OK"})
    )
    store = RemoteStore(REMOTE_URL, "token")

    assert await store.get("filter:abc") == {"posts": []}
    await store.set("filter:abc", {"posts": []}, 1800)
    await store.close()

    assert get_route.calls[0].request.headers["Authorization"] == "Bearer token"
    body = json.loads(set_route.calls[0].request.content)
    assert body == ["SET", "filter:abc", '{"posts": []}', "EX", 1800]


@pytest.mark.asyncio
@respx.mock
async def test_remote_store_miss():
    respx.get(f"{REMOTE_URL}/get/k").mock(
        return_value=Response(200, json={"result": None})
    )
    store = RemoteStore(REMOTE_URL, "token")
    assert await store.get("k") is None
    await store.close()


class TestTwoTierCache:
    @pytest.mark.asyncio
    async def test_memory_only(self):
        cache = TwoTierCache()
        cache.set("k", {"a": 1}, 60)
        assert await cache.get("k") == {"a": 1}
        assert await cache.get("other") is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_remote_hit_preferred(self):
        respx.get(f"{REMOTE_URL}/get/k").mock(
            return_value=Response(200, json={"result": json.dumps("remote")})
        )
        memory = MemoryStore()
        memory.set("k", "local", 60)
        cache = TwoTierCache(memory, RemoteStore(REMOTE_URL, "token"))

        assert await cache.get("k") == "remote"
        await cache.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_remote_failure_falls_back_to_memory(self):
        respx.get(f"{REMOTE_URL}/get/k").mock(side_effect=ConnectError("down"))
        respx.post(REMOTE_URL).mock(return_value=Response(500, text="boom"))
        cache = TwoTierCache(MemoryStore(), RemoteStore(REMOTE_URL, "token"))

        cache.set("k", "local", 60)
        await cache.flush()

        assert await cache.get("k") == "local"
        await cache.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_remote_write_is_dispatched(self):
        route = respx.post(REMOTE_URL).mock(
            return_value=Response(200, json={"result": "OK"})
        )
        cache = TwoTierCache(MemoryStore(), RemoteStore(REMOTE_URL, "token"))

        cache.set("k", [1, 2], 30)
        await cache.flush()

        assert route.called
        await cache.close()

    @pytest.mark.asyncio
    async def test_start_and_close_sweeper(self, clock):
        cache = TwoTierCache(MemoryStore(clock=clock), sweep_interval=3600)
        cache.start()
        assert cache._sweeper is not None
        await cache.close()
        assert cache._sweeper is None
