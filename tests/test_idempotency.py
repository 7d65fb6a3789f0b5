import asyncio

import pytest

from portfolio_checkout.services.idempotency import (
    InMemoryIdempotencyCache,
    SqlIdempotencyCache,
    activation_key,
    resource_key,
    verification_key,
)


def test_keys():
    assert resource_key("p1", "yearly") == "resource:p1:yearly"
    assert resource_key("p1", "yearly", "cashfree") == "resource:p1:yearly:cashfree"
    assert verification_key("sub_1") == "verification:sub_1"
    assert activation_key("sub_1") == "activation:sub_1"


@pytest.fixture(params=["memory", "sql"])
def any_cache(request, clock):
    if request.param == "memory":
        return InMemoryIdempotencyCache(clock)
    return SqlIdempotencyCache(request.getfixturevalue("sql_factory"), clock)


class TestIdempotencyCache:
    async def test_second_acquire_is_rejected_while_live(self, any_cache):
        assert await any_cache.try_acquire("resource:p1:yearly", 300) is True
        assert await any_cache.try_acquire("resource:p1:yearly", 300) is False

    async def test_expired_record_can_be_reacquired(self, any_cache, clock):
        assert await any_cache.try_acquire("resource:p1:yearly", 300)
        clock.advance(299)
        assert not await any_cache.try_acquire("resource:p1:yearly", 300)
        clock.advance(2)
        assert await any_cache.try_acquire("resource:p1:yearly", 300)

    async def test_release_frees_the_key(self, any_cache):
        await any_cache.try_acquire("resource:p1:monthly", 300)
        await any_cache.release("resource:p1:monthly")
        assert await any_cache.try_acquire("resource:p1:monthly", 300)

    async def test_get_and_put(self, any_cache, clock):
        assert await any_cache.get("verification:sub_1") is None
        await any_cache.try_acquire("activation:sub_1", 60)
        assert await any_cache.get("activation:sub_1") == {}

        await any_cache.put("verification:sub_1", {"success": True, "status": "active"}, 60)
        assert await any_cache.get("verification:sub_1") == {"success": True, "status": "active"}

        clock.advance(61)
        assert await any_cache.get("verification:sub_1") is None

    async def test_release_of_unknown_key_is_a_no_op(self, any_cache):
        await any_cache.release("resource:nope:monthly")


async def test_concurrent_acquire_admits_exactly_one(clock):
    cache = InMemoryIdempotencyCache(clock)
    results = await asyncio.gather(*(cache.try_acquire("resource:p1:yearly", 300) for _ in range(10)))
    assert results.count(True) == 1
