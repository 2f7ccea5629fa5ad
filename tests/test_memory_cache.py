"""Tests for the in-process cache used when Redis is not configured."""

from inkwell.storage.memory_cache import MemoryCache


class TestMemoryCacheValues:
    """Key/value behaviour with TTLs."""

    async def test_set_get_and_expire(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.set("k", "v", 10)
        assert await cache.get("k") == "v"
        clock.advance(9.9)
        assert await cache.get("k") == "v"
        clock.advance(0.2)
        assert await cache.get("k") is None

    async def test_ttl_is_at_least_one_second(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.set("k", "v", 0)
        assert await cache.get("k") == "v"
        clock.advance(1)
        assert await cache.get("k") is None

    async def test_delete_counts_live_keys_only(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.set("a", "1", 5)
        await cache.set("b", "1", 50)
        clock.advance(10)
        assert await cache.delete("a", "b", "missing") == 1
        assert await cache.delete() == 0

    async def test_pop_is_single_use(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.set("oauth:state:abc", "google", 600)
        assert await cache.pop("oauth:state:abc") == "google"
        assert await cache.pop("oauth:state:abc") is None


class TestMemoryCacheSets:
    """Set members used for per-user session indexes."""

    async def test_add_and_remove_members(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.add_to_set("idx", "s1", 60)
        await cache.add_to_set("idx", "s2", 60)
        assert await cache.set_members("idx") == {"s1", "s2"}
        await cache.remove_from_set("idx", "s1")
        assert await cache.set_members("idx") == {"s2"}

    async def test_adding_a_member_extends_the_set(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.add_to_set("idx", "s1", 60)
        clock.advance(50)
        await cache.add_to_set("idx", "s2", 60)
        clock.advance(50)
        assert await cache.set_members("idx") == {"s1", "s2"}
        clock.advance(11)
        assert await cache.set_members("idx") == set()

    async def test_returned_members_are_a_copy(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.add_to_set("idx", "s1", 60)
        members = await cache.set_members("idx")
        members.add("intruder")
        assert await cache.set_members("idx") == {"s1"}

    async def test_close_drops_everything(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.set("k", "v", 60)
        await cache.add_to_set("idx", "s1", 60)
        await cache.close()
        assert await cache.get("k") is None
        assert await cache.set_members("idx") == set()
