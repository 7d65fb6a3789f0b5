from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from ...errors import (
    BackendError,
    CheckoutError,
    DuplicateInFlight,
    GatewayFailed,
    IdentityMissing,
    NotAuthenticated,
    SignaturePending,
    SignatureRequired,
    SubscriptionConflict,
    Unknown,
)
from ...schemas import (
    Capability,
    Customer,
    GatewayCallbackIn,
    GatewayOutcome,
    OrderOrMandate,
    PendingAction,
    ResourceKind,
    ResourceRequest,
    VerificationRequest,
)
from ..idempotency import IdempotencyCache, resource_key
from ..retry import Clock, SystemClock

logger = structlog.get_logger(__name__)

CONFLICT_CODES = {
    "SUBSCRIPTION_EXISTS",
    "ALREADY_SUBSCRIBED",
    "ACTIVE_SUBSCRIPTION_EXISTS",
    "SUBSCRIPTION_CONFLICT",
}


class CreateErrorClass(str, Enum):
    SIGNATURE_REQUIRED = "SIGNATURE_REQUIRED"
    SIGNATURE_PENDING = "SIGNATURE_PENDING"
    CONFLICT = "CONFLICT"
    OTHER = "OTHER"


def classify_create_error(exc: BackendError) -> CreateErrorClass:
    if exc.code == "ESIGN_REQUIRED":
        return CreateErrorClass.SIGNATURE_REQUIRED
    if exc.code == "ESIGN_PENDING":
        return CreateErrorClass.SIGNATURE_PENDING
    if exc.status_code == 409 or exc.code in CONFLICT_CODES:
        return CreateErrorClass.CONFLICT
    return CreateErrorClass.OTHER


def _conflicting_products(body: Dict[str, Any]) -> List[str]:
    names = []
    for item in body.get("conflicts") or body.get("existingSubscriptions") or []:
        if isinstance(item, str):
            names.append(item)
        elif isinstance(item, dict):
            name = item.get("productName") or item.get("name")
            if name:
                names.append(name)
    return names


def to_checkout_error(exc: BackendError) -> CheckoutError:
    kind = classify_create_error(exc)
    if kind is CreateErrorClass.SIGNATURE_REQUIRED:
        return SignatureRequired()
    if kind is CreateErrorClass.SIGNATURE_PENDING:
        pending = exc.body.get("pendingEsign") or {}
        return SignaturePending(
            authentication_url=pending.get("authenticationUrl"),
            document_id=pending.get("documentId"),
        )
    if kind is CreateErrorClass.CONFLICT:
        return SubscriptionConflict(_conflicting_products(exc.body))
    if exc.status_code in (401, 403):
        return NotAuthenticated("Your session has expired. Please log in again.")
    if exc.code == "PAN_REQUIRED":
        return IdentityMissing()
    return Unknown(exc.message or "Could not start checkout.")


class PaymentGateway(ABC):
    """A payment provider the checkout can route a purchase through.

    Subclasses describe their capabilities, the payloads their backend
    endpoints expect and the launch data their client SDK needs. Creation is
    idempotent per product and plan through the shared cache.
    """

    id: str = ""
    display_name: str = ""
    supports_redirect_fallback = False

    def __init__(
        self,
        backend,
        cache: IdempotencyCache,
        *,
        clock: Optional[Clock] = None,
        idempotency_ttl: float = 300.0,
        key_includes_gateway: bool = False,
        currency: str = "INR",
        merchant_name: str = "",
    ):
        self.backend = backend
        self.cache = cache
        self.clock = clock or SystemClock()
        self.idempotency_ttl = idempotency_ttl
        self.key_includes_gateway = key_includes_gateway
        self.currency = currency
        self.merchant_name = merchant_name

    @abstractmethod
    def supports_recurring(self) -> bool:
        ...

    def supports_one_time(self) -> bool:
        return True

    def supports(self, capability: Capability) -> bool:
        if capability is Capability.RECURRING:
            return self.supports_recurring()
        return self.supports_one_time()

    def idempotency_key(self, request: ResourceRequest) -> str:
        gateway = self.id if self.key_includes_gateway else None
        return resource_key(request.product.product_id, request.plan_type.value, gateway)

    # --- creation ---

    def order_payload(self, request: ResourceRequest) -> dict:
        payload = {
            "productType": request.product.product_type.value,
            "productId": request.product.product_id,
            "planType": request.plan_type.value,
            "gateway": self.id,
        }
        if request.coupon_code:
            payload["couponCode"] = request.coupon_code
        return payload

    def mandate_payload(self, request: ResourceRequest) -> dict:
        payload = {
            "productType": request.product.product_type.value,
            "productId": request.product.product_id,
            "emandateType": request.plan_type.value,
            "gateway": self.id,
        }
        if request.coupon_code:
            payload["couponCode"] = request.coupon_code
        return payload

    def launch_extras(self, body: dict) -> Dict[str, Any]:
        return {}

    def parse_resource(self, body: dict, request: ResourceRequest) -> OrderOrMandate:
        if request.kind is ResourceKind.RECURRING_MANDATE:
            external_id = body["subscriptionId"]
        else:
            external_id = body["orderId"]
        extras = self.launch_extras(body)
        if body.get("commitmentEndDate"):
            extras["commitment_end_date"] = body["commitmentEndDate"]
        return OrderOrMandate(
            external_id=external_id,
            kind=request.kind,
            amount=body.get("amount", request.amount),
            currency=body.get("currency") or self.currency,
            created_at=self.clock.now(),
            gateway=self.id,
            extras=extras,
        )

    async def create_resource(self, token: str, request: ResourceRequest) -> OrderOrMandate:
        key = self.idempotency_key(request)
        if not await self.cache.try_acquire(key, self.idempotency_ttl, {"gateway": self.id}):
            logger.info("duplicate_in_flight", key=key, gateway=self.id)
            raise DuplicateInFlight()

        try:
            if request.kind is ResourceKind.RECURRING_MANDATE:
                body = await self.backend.create_mandate(token, self.mandate_payload(request))
            else:
                body = await self.backend.create_order(token, self.order_payload(request))
            resource = self.parse_resource(body, request)
        except BackendError as exc:
            # the backend created nothing, so the request may be retried
            await self.cache.release(key)
            logger.info(
                "create_resource_rejected",
                gateway=self.id,
                status=exc.status_code,
                code=exc.code,
                error_class=classify_create_error(exc).value,
            )
            raise to_checkout_error(exc) from exc
        except KeyError as exc:
            await self.cache.release(key)
            raise Unknown("The payment provider returned an incomplete response.") from exc
        except Exception:
            await self.cache.release(key)
            raise

        await self.cache.put(
            key,
            {"external_id": resource.external_id, "kind": resource.kind.value, "gateway": self.id},
            self.idempotency_ttl,
        )
        logger.info("resource_created", gateway=self.id, resource_id=resource.external_id, kind=resource.kind.value)
        return resource

    async def release(self, request: ResourceRequest) -> None:
        await self.cache.release(self.idempotency_key(request))

    # --- UI ---

    @abstractmethod
    def open_checkout_ui(self, resource: OrderOrMandate, prefill: Customer, description: str) -> PendingAction:
        """Launch instructions for the provider's client SDK."""

    def interpret_callback(self, callback: GatewayCallbackIn) -> GatewayOutcome:
        return GatewayOutcome(
            status=callback.status,
            payment_id=callback.payment_id,
            signature=callback.signature,
            message=callback.message,
        )

    async def redirect_fallback(
        self, resource: OrderOrMandate, session_id: str, return_context: Dict[str, Any]
    ) -> PendingAction:
        raise GatewayFailed(f"{self.display_name or self.id} checkout failed to load. Please try again.")

    def verification_request(self, resource: OrderOrMandate, outcome: GatewayOutcome) -> VerificationRequest:
        return VerificationRequest(
            resource_id=resource.external_id,
            kind=resource.kind,
            gateway=self.id,
            payment_id=outcome.payment_id,
            signature=outcome.signature,
        )
