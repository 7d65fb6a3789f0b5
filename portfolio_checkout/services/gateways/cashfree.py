import secrets
from typing import Any, Dict

import structlog

from ...schemas import (
    Customer,
    OrderOrMandate,
    PendingAction,
    PendingActionKind,
    ResourceKind,
    ResumptionToken,
)
from ..storage import ResumptionStore
from .base import PaymentGateway

logger = structlog.get_logger(__name__)


class CashfreeGateway(PaymentGateway):
    """Embedded checkout keyed by a session id, with a same-page redirect fallback.

    Before redirecting, a ResumptionToken carrying the resource id and the
    selections needed to resume is persisted; the return URL carries the token.
    """

    id = "cashfree"
    display_name = "Cashfree"
    supports_redirect_fallback = True

    def __init__(
        self,
        backend,
        cache,
        *,
        resumption_store: ResumptionStore,
        return_url: str,
        mode: str = "sandbox",
        token_ttl: float = 3600.0,
        **kwargs,
    ):
        super().__init__(backend, cache, **kwargs)
        self.resumption_store = resumption_store
        self.return_url = return_url
        self.mode = "production" if mode == "production" else "sandbox"
        self.token_ttl = token_ttl

    def supports_recurring(self) -> bool:
        return True

    def launch_extras(self, body: dict) -> Dict[str, Any]:
        extras = {}
        session_id = body.get("paymentSessionId") or body.get("payment_session_id")
        subs_session_id = body.get("subsSessionId") or body.get("subscriptionSessionId")
        if session_id:
            extras["payment_session_id"] = session_id
        if subs_session_id:
            extras["subs_session_id"] = subs_session_id
        return extras

    def _session_fields(self, resource: OrderOrMandate) -> Dict[str, Any]:
        if resource.kind is ResourceKind.RECURRING_MANDATE:
            return {"subsSessionId": resource.extras.get("subs_session_id")}
        return {"paymentSessionId": resource.extras.get("payment_session_id")}

    def open_checkout_ui(self, resource: OrderOrMandate, prefill: Customer, description: str) -> PendingAction:
        payload = {"mode": self.mode, "redirectTarget": "_modal", "description": description}
        payload.update(self._session_fields(resource))
        return PendingAction(kind=PendingActionKind.OPEN_GATEWAY, gateway=self.id, payload=payload)

    async def redirect_fallback(
        self, resource: OrderOrMandate, session_id: str, return_context: Dict[str, Any]
    ) -> PendingAction:
        token = ResumptionToken(
            token=secrets.token_urlsafe(24),
            session_id=session_id,
            resource_id=resource.external_id,
            gateway=self.id,
            return_context=return_context,
        )
        await self.resumption_store.put(token, self.token_ttl)
        return_url = f"{self.return_url}?token={token.token}"
        logger.info("redirect_fallback", gateway=self.id, resource_id=resource.external_id, session_id=session_id)

        payload = {"mode": self.mode, "redirectTarget": "_self", "returnUrl": return_url}
        payload.update(self._session_fields(resource))
        return PendingAction(kind=PendingActionKind.REDIRECT, gateway=self.id, url=return_url, payload=payload)
