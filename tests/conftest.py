from unittest.mock import AsyncMock, Mock

import pytest

from fakes import FakeBackend, FakeClock
from portfolio_checkout.config import Settings
from portfolio_checkout.db import init_db, make_engine, make_session_factory
from portfolio_checkout.main import build_services
from portfolio_checkout.services.controller import CheckoutManager
from portfolio_checkout.services.idempotency import InMemoryIdempotencyCache
from portfolio_checkout.services.provisioning import ProvisioningClient

INVITE_LINK = "https://t.me/+invite-growth"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def config():
    return Settings(
        _env_file=None,
        storage_backend="memory",
        require_consent=True,
        provisioning_api_base="http://provisioning.test",
        idempotency_ttl_seconds=300,
        verify_max_attempts=10,
        verify_ceiling_seconds=60,
        signature_poll_interval_seconds=3,
        signature_wait_ceiling_seconds=120,
        frontend_return_url="https://shop.example/payment/return",
    )


@pytest.fixture
def cache(clock):
    return InMemoryIdempotencyCache(clock)


@pytest.fixture
def provisioning():
    client = Mock(spec=ProvisioningClient)
    client.is_configured.return_value = True
    client.subscribe_many = AsyncMock(return_value=[INVITE_LINK])
    return client


@pytest.fixture
def services(config, backend, clock, provisioning):
    return build_services(config, backend=backend, clock=clock, provisioning=provisioning)


@pytest.fixture
def manager(services):
    return CheckoutManager(services)


@pytest.fixture
async def sql_factory(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}")
    await init_db(engine)
    yield make_session_factory(engine)
    await engine.dispose()
