import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import httpx
import structlog

from ..config import settings
from ..errors import BackendError, CheckoutError
from .idempotency import IdempotencyCache, activation_key
from .provisioning import ProvisioningClient, ProvisioningRequest
from .retry import Clock, SystemClock

logger = structlog.get_logger(__name__)

DEFAULT_EXPIRY = timedelta(days=30)
# activation keys are never released; they only age out
ACTIVATION_TTL = 30 * 24 * 3600.0


class ActivationNotifier:
    """Provisions post-activation perks (invite links) once per order or mandate."""

    def __init__(
        self,
        backend,
        provisioning: ProvisioningClient,
        cache: IdempotencyCache,
        clock: Optional[Clock] = None,
        timeout: float = settings.provisioning_timeout_seconds,
    ):
        self.backend = backend
        self.provisioning = provisioning
        self.cache = cache
        self.clock = clock or SystemClock()
        self.timeout = timeout

    async def _provision(self, token: str, email: str) -> List[str]:
        records = await self.backend.get_subscriptions(token)
        fallback = datetime.fromtimestamp(self.clock.now(), tz=timezone.utc) + DEFAULT_EXPIRY
        requests = [
            ProvisioningRequest(
                email=email,
                product_id=record.product_id,
                product_name=record.product_name,
                expiration_datetime=(record.expiry_date or fallback).isoformat(),
            )
            for record in records
            if record.is_active
        ]
        if not requests:
            return []
        return await self.provisioning.subscribe_many(requests)

    async def notify(self, token: str, resource_id: str, email: Optional[str]) -> List[str]:
        """Fire provisioning for ``resource_id``; failures are logged, never raised."""
        key = activation_key(resource_id)
        if not await self.cache.try_acquire(key, ACTIVATION_TTL):
            logger.info("activation_already_notified", resource_id=resource_id)
            previous = await self.cache.get(key) or {}
            return list(previous.get("invite_links") or [])

        if not self.provisioning.is_configured() or not email:
            logger.info("activation_provisioning_skipped", resource_id=resource_id)
            return []

        try:
            links = await asyncio.wait_for(self._provision(token, email), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("activation_provisioning_timeout", resource_id=resource_id, timeout=self.timeout)
            return []
        except (BackendError, CheckoutError, httpx.HTTPError) as exc:
            logger.warning("activation_provisioning_failed", resource_id=resource_id, error=str(exc))
            return []
        except Exception:
            # the payment is already confirmed; nothing here may surface as a checkout error
            logger.warning("activation_provisioning_failed", resource_id=resource_id, exc_info=True)
            return []

        await self.cache.put(key, {"invite_links": links}, ACTIVATION_TTL)
        logger.info("activation_provisioned", resource_id=resource_id, links=len(links))
        return links
