import asyncio
import base64
from typing import Callable, Dict, Optional, Tuple

import structlog

from ..config import settings
from ..errors import BackendError, CheckoutCancelled, NetworkOrTimeout, SignatureFailed
from ..schemas import PaymentAgreement, SignatureRequest, SignatureStatus
from .retry import Clock, SystemClock

logger = structlog.get_logger(__name__)


def render_agreement(agreement: PaymentAgreement) -> str:
    lines = [
        "PAYMENT AGREEMENT",
        "",
        f"Customer: {agreement.customer_name}",
        f"Email: {agreement.customer_email}",
    ]
    if agreement.customer_mobile:
        lines.append(f"Mobile: {agreement.customer_mobile}")
    lines += [
        "",
        f"Agreement Date: {agreement.agreement_date.strftime('%d/%m/%Y')}",
        "",
        "SUBSCRIPTION DETAILS:",
        f"- Type: {agreement.plan_type.value.upper()}",
        f"- Amount: Rs.{agreement.amount:,.2f}",
        f"- Portfolios: {', '.join(agreement.product_names)}",
        "",
        "By signing this agreement, the customer agrees to the subscription terms",
        "and authorizes the payment for the selected portfolio services.",
    ]
    return "\n".join(lines)


class SignatureGate:
    """eSign step: creates the agreement signature request and waits for it.

    Completion is reported either by the provider's client-side callback
    (``record_callback``) or by polling the document status. Neither is proof;
    ``verify_and_sync`` asks the backend before checkout may continue.
    """

    def __init__(
        self,
        backend,
        clock: Optional[Clock] = None,
        poll_interval: float = settings.signature_poll_interval_seconds,
        wait_ceiling: float = settings.signature_wait_ceiling_seconds,
        expire_in_days: int = settings.signature_expire_in_days,
        callback_ttl: float = settings.session_ttl_seconds,
    ):
        self.backend = backend
        self.clock = clock or SystemClock()
        self.poll_interval = poll_interval
        self.wait_ceiling = wait_ceiling
        self.expire_in_days = expire_in_days
        self.callback_ttl = callback_ttl
        # document id -> (created at, completion hint)
        self._callbacks: Dict[str, Tuple[float, asyncio.Event]] = {}

    def _prune(self) -> None:
        cutoff = self.clock.now() - self.callback_ttl
        for document_id, (created_at, _) in list(self._callbacks.items()):
            if created_at < cutoff:
                del self._callbacks[document_id]

    def _event(self, document_id: str) -> asyncio.Event:
        self._prune()
        if document_id not in self._callbacks:
            self._callbacks[document_id] = (self.clock.now(), asyncio.Event())
        return self._callbacks[document_id][1]

    async def create_signature_request(self, token: str, agreement: PaymentAgreement) -> SignatureRequest:
        document = base64.b64encode(render_agreement(agreement).encode("utf-8")).decode("ascii")
        payload = {
            "agreementData": agreement.model_dump(mode="json"),
            "signRequest": {
                "file_name": f"Payment_Agreement_{int(self.clock.now())}.pdf",
                "file_data": document,
                "signers": [
                    {
                        "identifier": agreement.customer_email,
                        "name": agreement.customer_name,
                        "sign_type": "aadhaar",
                        "signature_mode": "otp",
                        "reason": "Payment authorization for subscription services",
                    }
                ],
                "expire_in_days": self.expire_in_days,
                "display_on_page": "last",
                "notify_signers": True,
                "send_sign_link": False,
                "generate_access_token": True,
                "include_authentication_url": True,
            },
        }
        request = await self.backend.create_signature(token, payload)
        logger.info("signature_requested", document_id=request.document_id)
        return request

    def record_callback(self, document_id: str) -> None:
        self._event(document_id).set()

    async def _wait(self, event: asyncio.Event, seconds: float) -> None:
        waiter = asyncio.ensure_future(event.wait())
        sleeper = asyncio.ensure_future(self.clock.sleep(seconds))
        done, pending = await asyncio.wait({waiter, sleeper}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    async def complete_flow(
        self,
        token: str,
        request: SignatureRequest,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> SignatureStatus:
        """Resolve once the signer finished; ``REQUESTED`` means the wait ceiling passed."""
        event = self._event(request.document_id)
        start = self.clock.now()
        while True:
            if is_cancelled is not None and is_cancelled():
                raise CheckoutCancelled()
            if event.is_set():
                logger.info("signature_callback_received", document_id=request.document_id)
                return SignatureStatus.COMPLETED

            try:
                status = await self.backend.get_signature_status(token, request.document_id)
            except NetworkOrTimeout:
                logger.warning("signature_status_unavailable", document_id=request.document_id)
                status = SignatureStatus.REQUESTED

            if status is SignatureStatus.COMPLETED:
                return status
            if status in (SignatureStatus.EXPIRED, SignatureStatus.FAILED):
                self._callbacks.pop(request.document_id, None)
                raise SignatureFailed(f"Signing {status.value}. Please start again.")

            remaining = self.wait_ceiling - (self.clock.now() - start)
            if remaining <= 0:
                logger.info("signature_wait_elapsed", document_id=request.document_id)
                return SignatureStatus.REQUESTED
            await self._wait(event, min(self.poll_interval, remaining))

    async def verify_and_sync(self, token: str, document_id: str) -> bool:
        try:
            signed = await self.backend.verify_signature(token, document_id)
        except BackendError as exc:
            logger.warning("signature_verify_rejected", document_id=document_id, status=exc.status_code)
            signed = False
        if signed:
            self._callbacks.pop(document_id, None)
        else:
            # a stale hint must not short-circuit the next wait
            self._event(document_id).clear()
        return signed
