from dataclasses import dataclass, field
from typing import Dict, List, Optional, Type

import structlog

from ...errors import BackendError, GatewayFailed, NetworkOrTimeout
from ...schemas import Capability, GatewayDescriptor
from .base import PaymentGateway
from .cashfree import CashfreeGateway
from .razorpay import RazorpayGateway

logger = structlog.get_logger(__name__)

GATEWAY_CLASSES: Dict[str, Type[PaymentGateway]] = {
    RazorpayGateway.id: RazorpayGateway,
    CashfreeGateway.id: CashfreeGateway,
}

# used when gateway discovery is unavailable
FALLBACK_DESCRIPTOR = GatewayDescriptor(
    id="razorpay",
    name="Razorpay",
    supports_subscriptions=True,
    supports_one_time=True,
    supported_methods=["upi", "card", "netbanking", "wallet", "emandate"],
)


@dataclass
class GatewaySelection:
    gateway: Optional[str]
    choices: List[str] = field(default_factory=list)

    @property
    def needs_prompt(self) -> bool:
        return self.gateway is None


class GatewayRegistry:
    def __init__(self, gateways: Dict[str, PaymentGateway], default_gateway: str):
        self._gateways = gateways
        self.default_gateway = default_gateway

    def __contains__(self, gateway_id: str) -> bool:
        return gateway_id in self._gateways

    def get(self, gateway_id: str) -> PaymentGateway:
        try:
            return self._gateways[gateway_id]
        except KeyError:
            raise GatewayFailed(f"Payment method '{gateway_id}' is not available.")

    async def discover(self, backend) -> List[GatewayDescriptor]:
        try:
            descriptors, _ = await backend.get_gateways()
        except (BackendError, NetworkOrTimeout) as exc:
            logger.warning("gateway_discovery_failed", error=str(exc))
            return [FALLBACK_DESCRIPTOR]
        return descriptors or [FALLBACK_DESCRIPTOR]

    def select(self, descriptors: List[GatewayDescriptor], capability: Capability) -> GatewaySelection:
        """More than one capable gateway prompts; exactly one is auto-selected;
        none falls back to the default gateway."""
        candidates = []
        for descriptor in descriptors:
            if descriptor.id not in self._gateways:
                logger.warning("gateway_unsupported", gateway=descriptor.id)
                continue
            if descriptor.supports(capability) and self._gateways[descriptor.id].supports(capability):
                candidates.append(descriptor.id)

        if len(candidates) > 1:
            return GatewaySelection(gateway=None, choices=candidates)
        if len(candidates) == 1:
            return GatewaySelection(gateway=candidates[0], choices=candidates)
        return GatewaySelection(gateway=self.default_gateway, choices=[self.default_gateway])


def build_registry(backend, cache, resumption_store, clock, config) -> GatewayRegistry:
    common = dict(
        clock=clock,
        idempotency_ttl=config.idempotency_ttl_seconds,
        key_includes_gateway=config.idempotency_key_includes_gateway,
        currency=config.currency,
        merchant_name=config.merchant_name,
    )
    gateways: Dict[str, PaymentGateway] = {
        RazorpayGateway.id: RazorpayGateway(backend, cache, key_id=config.razorpay_key_id, **common),
        CashfreeGateway.id: CashfreeGateway(
            backend,
            cache,
            resumption_store=resumption_store,
            return_url=config.frontend_return_url,
            mode=config.cashfree_mode,
            token_ttl=config.session_ttl_seconds,
            **common,
        ),
    }
    return GatewayRegistry(gateways, default_gateway=config.default_gateway)
