from decimal import Decimal

import pytest

from portfolio_checkout.schemas import CheckoutSession, PlanType, ProductRef, ResumptionToken, Step
from portfolio_checkout.services.storage import (
    InMemoryResumptionStore,
    InMemorySessionStore,
    SqlResumptionStore,
    SqlSessionStore,
)


def make_session(**overrides):
    data = dict(
        id="s1",
        product=ProductRef(product_id="p1", product_name="Growth Bundle"),
        plan_type=PlanType.YEARLY,
        base_amount=Decimal("4999"),
        final_amount=Decimal("4999.00"),
        selected_gateway="cashfree",
        step=Step.PROCESSING,
        history=[Step.PLAN, Step.CONSENT, Step.PROCESSING],
    )
    data.update(overrides)
    return CheckoutSession(**data)


@pytest.fixture(params=["memory", "sql"])
def stores(request, clock):
    if request.param == "memory":
        return InMemorySessionStore(3600, clock), InMemoryResumptionStore(clock)
    factory = request.getfixturevalue("sql_factory")
    return SqlSessionStore(factory, 3600, clock), SqlResumptionStore(factory, clock)


async def test_session_snapshot_survives_reload(stores):
    sessions, _ = stores
    await sessions.save(make_session())

    loaded = await sessions.load("s1")
    assert loaded.selected_gateway == "cashfree"
    assert loaded.history == [Step.PLAN, Step.CONSENT, Step.PROCESSING]
    assert loaded.final_amount == Decimal("4999.00")


async def test_session_snapshot_expires_after_an_hour(stores, clock):
    sessions, _ = stores
    await sessions.save(make_session())
    clock.advance(3601)
    assert await sessions.load("s1") is None


async def test_session_delete(stores):
    sessions, _ = stores
    await sessions.save(make_session())
    await sessions.delete("s1")
    assert await sessions.load("s1") is None


async def test_resumption_token_is_consumed_once(stores):
    _, resumptions = stores
    token = ResumptionToken(
        token="tok-1",
        session_id="s1",
        resource_id="sub_1",
        gateway="cashfree",
        return_context={"plan_type": "yearly", "coupon_code": "SAVE10"},
    )
    await resumptions.put(token, 3600)

    first = await resumptions.consume("tok-1")
    assert first == token
    assert await resumptions.consume("tok-1") is None


async def test_expired_resumption_token_is_rejected(stores, clock):
    _, resumptions = stores
    await resumptions.put(ResumptionToken(token="tok-2", session_id="s1", resource_id="sub_1", gateway="cashfree"), 60)
    clock.advance(61)
    assert await resumptions.consume("tok-2") is None
