from datetime import datetime
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, settings
from .db import async_session, init_db
from .logs import configure_logging
from .routers import checkout
from .services.activation import ActivationNotifier
from .services.backend import BackendClient
from .services.controller import CheckoutManager, CheckoutServices
from .services.eligibility import EligibilityGate
from .services.gateways.factory import build_registry
from .services.idempotency import InMemoryIdempotencyCache, SqlIdempotencyCache
from .services.provisioning import ProvisioningClient
from .services.retry import Clock, SystemClock
from .services.signature import SignatureGate
from .services.storage import (
    InMemoryResumptionStore,
    InMemorySessionStore,
    SqlResumptionStore,
    SqlSessionStore,
)
from .services.verification import VerificationPoller, default_policy

app = FastAPI(title="Portfolio Checkout Service")

# CORS - allow the storefront domain(s)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(checkout.router)


def build_services(
    config: Settings = settings,
    *,
    backend=None,
    clock: Optional[Clock] = None,
    session_factory=None,
    provisioning: Optional[ProvisioningClient] = None,
) -> CheckoutServices:
    clock = clock or SystemClock()
    backend = backend or BackendClient(config.backend_api_base, config.backend_timeout_seconds)

    if config.storage_backend == "memory":
        cache = InMemoryIdempotencyCache(clock)
        sessions = InMemorySessionStore(config.session_ttl_seconds, clock)
        resumptions = InMemoryResumptionStore(clock)
    else:
        factory = session_factory or async_session
        cache = SqlIdempotencyCache(factory, clock)
        sessions = SqlSessionStore(factory, config.session_ttl_seconds, clock)
        resumptions = SqlResumptionStore(factory, clock)

    return CheckoutServices(
        backend=backend,
        registry=build_registry(backend, cache, resumptions, clock, config),
        eligibility=EligibilityGate(
            backend,
            minimum_age=config.minimum_age,
            today=lambda: datetime.fromtimestamp(clock.now()).date(),
        ),
        signature=SignatureGate(
            backend,
            clock,
            poll_interval=config.signature_poll_interval_seconds,
            wait_ceiling=config.signature_wait_ceiling_seconds,
            expire_in_days=config.signature_expire_in_days,
            callback_ttl=config.session_ttl_seconds,
        ),
        verifier=VerificationPoller(
            backend,
            cache,
            clock,
            policy=default_policy(config),
            cache_ttl=config.verification_cache_ttl_seconds,
        ),
        activation=ActivationNotifier(
            backend,
            provisioning or ProvisioningClient(config.provisioning_api_base),
            cache,
            clock,
            timeout=config.provisioning_timeout_seconds,
        ),
        sessions=sessions,
        resumptions=resumptions,
        clock=clock,
        config=config,
    )


@app.on_event("startup")
async def on_startup():
    configure_logging(settings.log_level, settings.log_json)
    # a manager installed beforehand (tests) is kept as is
    if getattr(app.state, "manager", None) is None:
        if settings.storage_backend == "sql":
            await init_db()
        app.state.manager = CheckoutManager(build_services(settings))


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run(
        "portfolio_checkout.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=(settings.env != "production"),
    )
