import asyncio

from studio_api.cache import TTLCache, fingerprint


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_fingerprint_ignores_key_order():
    a = fingerprint("color", {"style": "x", "frames": [1, 2]})
    b = fingerprint("color", {"frames": [1, 2], "style": "x"})
    assert a == b
    assert a.startswith("color:")
    assert len(a.split(":", 1)[1]) <= 50


def test_fingerprint_sees_late_differences():
    base = {"frames": [{"sceneNumber": i, "duration": 5} for i in range(20)]}
    changed = {"frames": [{"sceneNumber": i, "duration": 5} for i in range(19)] + [{"sceneNumber": 19, "duration": 6}]}
    assert fingerprint("fx", base) != fingerprint("fx", changed)


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = TTLCache(300, clock=clock)
    cache.set("k", {"v": 1})
    clock.now += 299
    assert cache.get("k") == {"v": 1}
    clock.now += 1
    assert cache.get("k") is None
    assert len(cache) == 0


def test_purge_and_clear():
    clock = FakeClock()
    cache = TTLCache(10, clock=clock)
    cache.set("short", 1, ttl=1)
    cache.set("long", 2)
    clock.now += 5
    assert cache.purge_expired() == 1
    assert cache.clear() == 1
    assert cache.get("long") is None


def test_dedupe_shares_in_flight_call():
    cache = TTLCache()
    calls = []

    async def factory():
        calls.append(1)
        await asyncio.sleep(0.01)
        return "value"

    async def main():
        return await asyncio.gather(*(cache.dedupe("k", factory) for _ in range(5)))

    assert asyncio.run(main()) == ["value"] * 5
    assert len(calls) == 1


def test_dedupe_propagates_errors_to_all_waiters():
    cache = TTLCache()

    async def factory():
        await asyncio.sleep(0.01)
        raise RuntimeError("upstream down")

    async def main():
        return await asyncio.gather(*(cache.dedupe("k", factory) for _ in range(3)), return_exceptions=True)

    results = asyncio.run(main())
    assert all(isinstance(r, RuntimeError) for r in results)


def test_with_cache_respects_should_cache():
    cache = TTLCache()
    calls = []

    async def factory():
        calls.append(1)
        return {"success": False}

    async def main():
        await cache.with_cache("k", factory, should_cache=lambda r: r["success"])
        await cache.with_cache("k", factory, should_cache=lambda r: r["success"])

    asyncio.run(main())
    assert len(calls) == 2


def test_with_cache_hits():
    cache = TTLCache()
    calls = []

    async def factory():
        calls.append(1)
        return {"success": True}

    async def main():
        first = await cache.with_cache("k", factory)
        second = await cache.with_cache("k", factory)
        return first, second

    first, second = asyncio.run(main())
    assert first == second
    assert len(calls) == 1


def test_set_evicts_expired_entries():
    clock = FakeClock()
    cache = TTLCache(10, clock=clock)
    for i in range(50):
        cache.set(f"old-{i}", i)
    clock.now += 11
    cache.set("fresh", 1)
    assert len(cache) == 1
    assert cache.get("fresh") == 1


def test_set_caps_live_entries():
    cache = TTLCache(300, max_entries=3, clock=FakeClock())
    for key in ("a", "b", "c", "d"):
        cache.set(key, key)
    assert len(cache) == 3
    assert cache.get("a") is None
    assert cache.get("d") == "d"
    cache.set("b", "again")
    assert len(cache) == 3
    assert cache.get("c") == "c"


def test_cancelled_leader_releases_waiters():
    cache = TTLCache()

    async def main():
        started = asyncio.Event()

        async def slow():
            started.set()
            await asyncio.sleep(10)
            return "never"

        leader = asyncio.create_task(cache.dedupe("k", slow))
        await started.wait()
        follower = asyncio.create_task(cache.dedupe("k", slow))
        await asyncio.sleep(0)
        leader.cancel()
        results = await asyncio.wait_for(asyncio.gather(leader, follower, return_exceptions=True), timeout=1)

        async def quick():
            return "fresh"

        return results, await cache.dedupe("k", quick)

    results, fresh = asyncio.run(main())
    assert all(isinstance(r, asyncio.CancelledError) for r in results)
    assert fresh == "fresh"
