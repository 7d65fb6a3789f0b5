import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Optional

import structlog

from ..config import Settings
from ..errors import (
    BackendError,
    CheckoutCancelled,
    CheckoutError,
    ErrorKind,
    GatewayCancelled,
    GatewayFailed,
    IdentityMissing,
    IdentityValidationError,
    InvalidTransition,
    NotAuthenticated,
    SessionNotFound,
    SignatureFailed,
    SignaturePending,
    SignatureRequired,
    SubscriptionConflict,
    Unknown,
    VerificationTimeout,
)
from ..schemas import (
    Capability,
    CheckoutSession,
    CheckoutView,
    Customer,
    ErrorInfo,
    GatewayCallbackIn,
    IdentityIn,
    Notice,
    OutcomeStatus,
    PaymentAgreement,
    PendingAction,
    PendingActionKind,
    PlanType,
    ProductRef,
    Profile,
    ResourceKind,
    ResourceRequest,
    ResumptionToken,
    SignatureRequest,
    SignatureStatus,
    StartCheckoutIn,
    Step,
    VerificationRequest,
    VerificationStatus,
)
from .activation import ActivationNotifier
from .eligibility import EligibilityGate
from .gateways.base import PaymentGateway
from .gateways.factory import GatewayRegistry
from .pricing import quote
from .retry import Clock
from .signature import SignatureGate
from .storage import ResumptionStore, SessionStore
from .verification import VerificationPoller

logger = structlog.get_logger(__name__)

TRANSITIONS: Dict[Step, FrozenSet[Step]] = {
    Step.PLAN: frozenset({Step.CONSENT, Step.AUTH, Step.PROCESSING, Step.ERROR}),
    Step.CONSENT: frozenset({Step.AUTH, Step.PROCESSING, Step.PLAN, Step.ERROR}),
    Step.AUTH: frozenset({Step.CONSENT, Step.PROCESSING, Step.PLAN, Step.ERROR}),
    Step.PAN_FORM: frozenset({Step.PROCESSING, Step.AUTH, Step.PLAN, Step.ERROR}),
    Step.GATEWAY_SELECT: frozenset({Step.PROCESSING, Step.PLAN, Step.ERROR}),
    Step.SIGNATURE: frozenset({Step.PROCESSING, Step.AUTH, Step.PLAN, Step.ERROR}),
    Step.PROCESSING: frozenset(
        {
            Step.PAN_FORM,
            Step.GATEWAY_SELECT,
            Step.SIGNATURE,
            Step.AUTH,
            Step.PLAN,
            Step.SUCCESS,
            Step.ERROR,
        }
    ),
    Step.SUCCESS: frozenset(),
    Step.ERROR: frozenset({Step.PLAN}),
}

CANCELLABLE = frozenset(
    {Step.CONSENT, Step.AUTH, Step.PAN_FORM, Step.GATEWAY_SELECT, Step.SIGNATURE, Step.PROCESSING}
)

ERROR_TITLES = {
    ErrorKind.SUBSCRIPTION_CONFLICT: "Subscription already active",
    ErrorKind.DUPLICATE_IN_FLIGHT: "Payment already in progress",
    ErrorKind.GATEWAY_CANCELLED: "Payment cancelled",
    ErrorKind.VERIFICATION_TIMEOUT: "Payment status unknown",
    ErrorKind.SIGNATURE_FAILED: "Agreement not signed",
    ErrorKind.NETWORK_OR_TIMEOUT: "Network error",
}


def from_backend_error(exc: BackendError) -> CheckoutError:
    if exc.status_code in (401, 403):
        return NotAuthenticated("Your session has expired. Please log in again.")
    return Unknown(exc.message)


@dataclass
class CheckoutServices:
    backend: Any
    registry: GatewayRegistry
    eligibility: EligibilityGate
    signature: SignatureGate
    verifier: VerificationPoller
    activation: ActivationNotifier
    sessions: SessionStore
    resumptions: ResumptionStore
    clock: Clock
    config: Settings


class CheckoutController:
    """State machine for one checkout session.

    Every public operation advances the session until the next point where
    the user (or a provider UI) has to act, persists the snapshot and returns
    the view. ``busy`` and ``cancel_requested`` live in memory only.
    """

    def __init__(self, session: CheckoutSession, services: CheckoutServices):
        self.session = session
        self.services = services
        self.busy = False
        self.cancel_requested = False
        self.closed = False
        self.touched_at = services.clock.now()

    # --- helpers ---

    def view(self) -> CheckoutView:
        return CheckoutView.model_validate({**self.session.model_dump(), "busy": self.busy})

    def capability(self) -> Capability:
        if self.session.plan_type.value in self.services.config.recurring_plan_types:
            return Capability.RECURRING
        return Capability.ONE_TIME

    def resource_kind(self) -> ResourceKind:
        if self.capability() is Capability.RECURRING:
            return ResourceKind.RECURRING_MANDATE
        return ResourceKind.ONE_TIME_ORDER

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.services.clock.now(), tz=timezone.utc)

    def _is_cancelled(self) -> bool:
        return self.cancel_requested

    def _check_cancelled(self) -> None:
        if self.cancel_requested:
            raise CheckoutCancelled()

    def _can(self, step: Step) -> bool:
        return step is self.session.step or step in TRANSITIONS[self.session.step]

    def _goto(self, step: Step) -> None:
        current = self.session.step
        if step is current:
            return
        if step not in TRANSITIONS[current]:
            raise InvalidTransition(current, step)
        self.session.step = step
        self.session.history.append(step)
        logger.info("step_changed", session_id=self.session.id, from_step=current.value, to_step=step.value)

    def _require(self, *steps: Step) -> None:
        if self.session.step not in steps:
            raise InvalidTransition(self.session.step)

    def _notify(self, title: str, description: str = "", variant: str = "default") -> None:
        self.session.notice = Notice(title=title, description=description, variant=variant)

    async def save(self) -> None:
        if self.closed:
            return
        if self.session.step is Step.SUCCESS:
            # a finished checkout is not resumable
            self.closed = True
            await self.services.sessions.delete(self.session.id)
            logger.info("checkout_session_destroyed", session_id=self.session.id)
            return
        await self.services.sessions.save(self.session)

    async def _run(self, action: str, fn, *args) -> CheckoutView:
        if self.busy:
            logger.info("advance_suppressed", session_id=self.session.id, action=action)
            return self.view()

        self.busy = True
        self.cancel_requested = False
        self.touched_at = self.services.clock.now()
        self.session.notice = None
        try:
            await fn(*args)
            if self.cancel_requested and self.session.step in CANCELLABLE:
                self._cancelled()
        except CheckoutCancelled:
            self._cancelled()
        except CheckoutError as exc:
            self._handle(exc)
        except BackendError as exc:
            self._handle(from_backend_error(exc))
        except InvalidTransition:
            raise
        except Exception:
            logger.exception("checkout_unexpected_error", session_id=self.session.id, action=action)
            self._handle(Unknown())
        finally:
            self.busy = False
            await self.save()
        return self.view()

    def _handle(self, exc: CheckoutError) -> None:
        s = self.session
        if isinstance(exc, IdentityValidationError):
            s.form_errors = exc.field_errors
            self._notify("Could not save your details", exc.message, "destructive")
        elif isinstance(exc, IdentityMissing) and self._can(Step.PAN_FORM):
            s.eligible = False
            s.pending_action = None
            self._goto(Step.PAN_FORM)
            self._notify("PAN details required", exc.message)
        elif isinstance(exc, NotAuthenticated) and self._can(Step.AUTH):
            s.pending_action = None
            self._goto(Step.AUTH)
            self._notify("Login required", exc.message)
        else:
            self._fail(exc)

    def _fail(self, exc: CheckoutError) -> None:
        s = self.session
        if not self._can(Step.ERROR):
            logger.warning("error_after_terminal_step", session_id=s.id, kind=exc.kind.value)
            return
        conflicts = exc.product_names if isinstance(exc, SubscriptionConflict) else []
        s.error = ErrorInfo(
            kind=exc.kind.value,
            message=exc.message,
            retryable=exc.retryable,
            conflicting_products=conflicts,
        )
        s.pending_action = None
        self._goto(Step.ERROR)
        self._notify(ERROR_TITLES.get(exc.kind, "Payment failed"), exc.message, "destructive")
        logger.info("checkout_failed", session_id=s.id, kind=exc.kind.value, gateway=s.selected_gateway)

    def _cancelled(self) -> None:
        self.session.pending_action = None
        self.cancel_requested = False
        if self._can(Step.PLAN):
            self._goto(Step.PLAN)
        self._notify("Payment cancelled", "Your selections have been kept.")
        logger.info("checkout_cancelled", session_id=self.session.id)

    def _prefill(self) -> Customer:
        return self.session.profile.customer() if self.session.profile else Customer()

    def _description(self) -> str:
        product = self.session.product
        return f"{self.session.plan_type.value.capitalize()} subscription - {product.product_name or product.product_id}"

    def _resource_request(self) -> ResourceRequest:
        s = self.session
        return ResourceRequest(
            product=s.product,
            plan_type=s.plan_type,
            kind=self.resource_kind(),
            amount=s.final_amount,
            coupon_code=s.applied_coupon.code if s.applied_coupon else None,
        )

    def _resource_is_live(self, gateway: PaymentGateway) -> bool:
        resource = self.session.resource
        if resource is None or resource.gateway != gateway.id or resource.kind is not self.resource_kind():
            return False
        return self.services.clock.now() - resource.created_at < self.services.config.idempotency_ttl_seconds

    def _return_context(self) -> Dict[str, Any]:
        s = self.session
        return {
            "plan_type": s.plan_type.value,
            "coupon_code": s.applied_coupon.code if s.applied_coupon else None,
            "gateway": s.selected_gateway,
            "kind": s.resource.kind.value if s.resource else self.resource_kind().value,
        }

    # --- plan and coupon ---

    async def change_plan(self, plan_type: PlanType, base_amount: Decimal) -> CheckoutView:
        return await self._run("change_plan", self._change_plan, plan_type, base_amount)

    async def _change_plan(self, plan_type: PlanType, base_amount: Decimal) -> None:
        self._require(Step.PLAN)
        s = self.session
        code = s.applied_coupon.code if s.applied_coupon else None
        s.plan_type = plan_type
        s.base_amount = base_amount
        s.applied_coupon = None
        s.final_amount = quote(base_amount, None, s.product).final_amount
        # the capability may differ for the new plan
        s.selected_gateway = None
        s.gateway_choices = []
        s.resource = None
        if code:
            await self._apply_coupon(code)

    async def apply_coupon(self, code: str) -> CheckoutView:
        return await self._run("apply_coupon", self._apply_coupon, code)

    async def _apply_coupon(self, code: str) -> None:
        self._require(Step.PLAN)
        s = self.session
        code = code.strip()
        coupon, reason = await self.services.backend.validate_coupon(code)
        result = quote(
            s.base_amount,
            coupon,
            s.product,
            rounding=self.services.config.amount_rounding,
            now=self._now(),
        )
        s.resource = None
        rejection = reason if coupon is None else result.rejection
        if rejection:
            s.applied_coupon = None
            s.final_amount = result.final_amount
            self._notify("Invalid coupon", rejection, "destructive")
            logger.info("coupon_rejected", session_id=s.id, code=code, reason=rejection)
            return
        s.applied_coupon = result.coupon
        s.final_amount = result.final_amount
        self._notify("Coupon applied", f"You save {self.services.config.currency} {result.discount}.")

    async def remove_coupon(self) -> CheckoutView:
        return await self._run("remove_coupon", self._remove_coupon)

    async def _remove_coupon(self) -> None:
        self._require(Step.PLAN)
        s = self.session
        s.applied_coupon = None
        s.final_amount = quote(s.base_amount, None, s.product).final_amount
        s.resource = None

    # --- gates ---

    async def confirm(self, token: Optional[str]) -> CheckoutView:
        return await self._run("confirm", self._confirm, token)

    async def _confirm(self, token: Optional[str]) -> None:
        self._require(Step.PLAN)
        if not token:
            self._goto(Step.AUTH)
            return
        await self._after_auth(token)

    async def authenticated(self, token: Optional[str]) -> CheckoutView:
        return await self._run("authenticated", self._authenticated, token)

    async def _authenticated(self, token: Optional[str]) -> None:
        self._require(Step.AUTH)
        if not token:
            self._notify("Login required", "Please log in to continue.")
            return
        await self._after_auth(token)

    async def _after_auth(self, token: str) -> None:
        if self.services.config.require_consent and not self.session.consent_given:
            self._goto(Step.CONSENT)
            return
        self._goto(Step.PROCESSING)
        await self._advance(token)

    async def accept_consent(self, token: Optional[str]) -> CheckoutView:
        return await self._run("accept_consent", self._accept_consent, token)

    async def _accept_consent(self, token: Optional[str]) -> None:
        self._require(Step.CONSENT)
        self.session.consent_given = True
        if not token:
            self._goto(Step.AUTH)
            return
        self._goto(Step.PROCESSING)
        await self._advance(token)

    async def submit_identity(self, token: Optional[str], fields: IdentityIn) -> CheckoutView:
        return await self._run("submit_identity", self._submit_identity, token, fields)

    async def _submit_identity(self, token: Optional[str], fields: IdentityIn) -> None:
        self._require(Step.PAN_FORM)
        s = self.session
        s.form_errors = {}
        if not token:
            self._goto(Step.AUTH)
            return
        s.profile = await self.services.eligibility.submit_identity(token, fields)
        s.eligible = True
        self._notify("Details saved", "Your PAN details have been verified.")
        self._goto(Step.PROCESSING)
        await self._advance(token)

    async def choose_gateway(self, token: Optional[str], gateway_id: str) -> CheckoutView:
        return await self._run("choose_gateway", self._choose_gateway, token, gateway_id)

    async def _choose_gateway(self, token: Optional[str], gateway_id: str) -> None:
        self._require(Step.GATEWAY_SELECT)
        s = self.session
        if gateway_id not in s.gateway_choices:
            self._notify("Payment method unavailable", f"'{gateway_id}' cannot be used for this plan.", "destructive")
            return
        if not token:
            raise NotAuthenticated()
        s.selected_gateway = gateway_id
        self._goto(Step.PROCESSING)
        await self._advance(token)

    async def _advance(self, token: str) -> None:
        """Run the remaining gates in order and open the gateway UI."""
        s = self.session
        services = self.services
        self._check_cancelled()

        if not s.eligible:
            result = await services.eligibility.check_eligibility(token)
            s.profile = result.profile
            if not result.eligible:
                self._goto(Step.PAN_FORM)
                return
            s.eligible = True

        if s.selected_gateway is None:
            descriptors = await services.registry.discover(services.backend)
            selection = services.registry.select(descriptors, self.capability())
            s.gateway_choices = selection.choices
            if selection.needs_prompt:
                self._goto(Step.GATEWAY_SELECT)
                return
            s.selected_gateway = selection.gateway
            logger.info("gateway_auto_selected", session_id=s.id, gateway=s.selected_gateway)
        gateway = services.registry.get(s.selected_gateway)

        if not self._resource_is_live(gateway):
            s.resource = None
            try:
                s.resource = await gateway.create_resource(token, self._resource_request())
            except SignatureRequired:
                await self._start_signature(token)
                return
            except SignaturePending as exc:
                await self._resume_signature(token, exc)
                return

        self._check_cancelled()
        s.pending_action = gateway.open_checkout_ui(s.resource, self._prefill(), self._description())
        logger.info("gateway_ui_opened", session_id=s.id, gateway=gateway.id, resource_id=s.resource.external_id)

    # --- signature detour ---

    async def _start_signature(self, token: str) -> None:
        s = self.session
        profile = s.profile or Profile()
        agreement = PaymentAgreement(
            customer_name=profile.full_name or "",
            customer_email=profile.email or "",
            customer_mobile=profile.phone,
            amount=s.final_amount,
            plan_type=s.plan_type,
            product_names=[s.product.product_name or s.product.product_id],
            agreement_date=self._now().date(),
        )
        try:
            request = await self.services.signature.create_signature_request(token, agreement)
        except BackendError as exc:
            raise SignatureFailed(exc.message) from exc
        self._await_signature(request)

    async def _resume_signature(self, token: str, exc: SignaturePending) -> None:
        if not exc.document_id:
            await self._start_signature(token)
            return
        self._await_signature(
            SignatureRequest(document_id=exc.document_id, authentication_url=exc.authentication_url)
        )

    def _await_signature(self, request: SignatureRequest) -> None:
        s = self.session
        s.signature = request
        s.signature_verified = False
        s.pending_action = PendingAction(
            kind=PendingActionKind.OPEN_SIGNATURE,
            url=request.authentication_url,
            payload={"document_id": request.document_id},
        )
        self._goto(Step.SIGNATURE)
        logger.info(
            "signature_detour",
            session_id=s.id,
            gateway=s.selected_gateway,
            document_id=request.document_id,
        )

    async def signature_callback(self, token: Optional[str], document_id: str) -> CheckoutView:
        signature = self.session.signature
        if signature is None or signature.document_id != document_id:
            logger.info("signature_callback_ignored", session_id=self.session.id, document_id=document_id)
            return self.view()
        # wakes a running wait_for_signature
        self.services.signature.record_callback(document_id)
        return await self._run("signature_callback", self._confirm_signature, token)

    async def _confirm_signature(self, token: Optional[str]) -> None:
        self._require(Step.SIGNATURE)
        s = self.session
        if not token:
            raise NotAuthenticated()
        signed = await self.services.signature.verify_and_sync(token, s.signature.document_id)
        if not signed:
            self._notify("Signature not confirmed yet", "Finish signing the agreement, then continue.")
            return
        s.signature = s.signature.model_copy(update={"status": SignatureStatus.COMPLETED})
        s.signature_verified = True
        s.pending_action = None
        self._notify("Agreement signed", "Continuing to payment.")
        self._goto(Step.PROCESSING)
        await self._advance(token)

    async def wait_for_signature(self, token: Optional[str]) -> CheckoutView:
        return await self._run("wait_for_signature", self._wait_for_signature, token)

    async def _wait_for_signature(self, token: Optional[str]) -> None:
        self._require(Step.SIGNATURE)
        if not token:
            raise NotAuthenticated()
        status = await self.services.signature.complete_flow(token, self.session.signature, self._is_cancelled)
        if status is SignatureStatus.COMPLETED:
            await self._confirm_signature(token)
        else:
            self._notify("Still waiting for your signature", "Complete the signing window to continue.")

    # --- gateway outcome ---

    async def gateway_callback(self, token: Optional[str], callback: GatewayCallbackIn) -> CheckoutView:
        s = self.session
        if s.step is not Step.PROCESSING or s.resource is None or s.pending_action is None:
            logger.info(
                "late_gateway_callback_ignored",
                session_id=s.id,
                step=s.step.value,
                status=callback.status.value,
            )
            return self.view()
        return await self._run("gateway_callback", self._gateway_callback, token, callback)

    async def _gateway_callback(self, token: Optional[str], callback: GatewayCallbackIn) -> None:
        s = self.session
        gateway = self.services.registry.get(s.resource.gateway)
        outcome = gateway.interpret_callback(callback)
        s.pending_action = None
        logger.info(
            "gateway_outcome",
            session_id=s.id,
            gateway=gateway.id,
            resource_id=s.resource.external_id,
            status=outcome.status.value,
        )

        if outcome.status is OutcomeStatus.SUCCESS:
            if not token:
                raise NotAuthenticated()
            await self._verify_and_activate(token, gateway.verification_request(s.resource, outcome))
            return
        if outcome.status is OutcomeStatus.LOAD_FAILED and gateway.supports_redirect_fallback:
            s.pending_action = await gateway.redirect_fallback(s.resource, s.id, self._return_context())
            return

        await gateway.release(self._resource_request())
        s.resource = None
        if outcome.status is OutcomeStatus.CANCELLED:
            raise GatewayCancelled(outcome.message)
        raise GatewayFailed(outcome.message)

    async def _verify_and_activate(self, token: str, request: VerificationRequest) -> None:
        s = self.session
        result = await self.services.verifier.verify(token, request, is_cancelled=self._is_cancelled)
        if result.activated:
            email = s.profile.email if s.profile else None
            s.invite_links = await self.services.activation.notify(token, request.resource_id, email)
            s.error = None
            self._goto(Step.SUCCESS)
            self._notify("Payment successful", "Your subscription is now active.")
            logger.info(
                "checkout_succeeded",
                session_id=s.id,
                gateway=request.gateway,
                resource_id=request.resource_id,
                retries=result.retries,
            )
            return
        if result.status is VerificationStatus.TIMEOUT:
            raise VerificationTimeout()
        # the provider reported a definite failure, so a fresh attempt is allowed
        await self.services.registry.get(request.gateway).release(self._resource_request())
        s.resource = None
        raise GatewayFailed(result.message or "Payment verification failed.")

    async def resume_redirect(
        self, token: Optional[str], resumption: ResumptionToken, params: Dict[str, str]
    ) -> CheckoutView:
        return await self._run("resume_redirect", self._resume_redirect, token, resumption, params)

    async def _resume_redirect(self, token: Optional[str], resumption: ResumptionToken, params: Dict[str, str]) -> None:
        self._require(Step.PROCESSING)
        s = self.session
        if not token:
            raise NotAuthenticated()
        context = resumption.return_context
        s.selected_gateway = resumption.gateway
        s.pending_action = None
        resource_id = (
            params.get("subscription_id")
            or params.get("cf_subscription_id")
            or params.get("sub_id")
            or resumption.resource_id
        )
        if s.resource is not None:
            kind = s.resource.kind
        else:
            kind = ResourceKind(context.get("kind") or ResourceKind.RECURRING_MANDATE.value)
        logger.info("redirect_resumed", session_id=s.id, gateway=resumption.gateway, resource_id=resource_id)
        request = VerificationRequest(
            resource_id=resource_id,
            kind=kind,
            gateway=resumption.gateway,
            payment_id=params.get("payment_id") or params.get("order_id"),
        )
        await self._verify_and_activate(token, request)

    # --- user control ---

    async def cancel(self) -> CheckoutView:
        if self.busy:
            self.cancel_requested = True
            logger.info("cancel_requested", session_id=self.session.id, step=self.session.step.value)
            return self.view()
        if self.session.step in CANCELLABLE:
            self._cancelled()
            await self.save()
        return self.view()

    async def retry(self) -> CheckoutView:
        return await self._run("retry", self._retry)

    async def _retry(self) -> None:
        """Back to plan with every gate re-armed; nothing cached is assumed."""
        self._require(Step.ERROR)
        s = self.session
        s.error = None
        s.consent_given = False
        s.eligible = False
        s.profile = None
        s.signature = None
        s.signature_verified = False
        s.selected_gateway = None
        s.gateway_choices = []
        s.resource = None
        s.pending_action = None
        s.form_errors = {}
        self._goto(Step.PLAN)


class CheckoutManager:
    """Keeps live controllers and rehydrates sessions from the snapshot store."""

    def __init__(self, services: CheckoutServices):
        self.services = services
        self._controllers: Dict[str, CheckoutController] = {}

    def _prune(self) -> None:
        cutoff = self.services.clock.now() - self.services.config.session_ttl_seconds
        for session_id, controller in list(self._controllers.items()):
            if controller.closed or (not controller.busy and controller.touched_at < cutoff):
                del self._controllers[session_id]

    async def start(self, data: StartCheckoutIn) -> CheckoutController:
        product = ProductRef(
            product_type=data.product_type,
            product_id=data.product_id,
            product_name=data.product_name,
        )
        final_amount = quote(data.base_amount, None, product).final_amount
        session = CheckoutSession(
            id=uuid.uuid4().hex,
            product=product,
            plan_type=data.plan_type,
            base_amount=data.base_amount,
            final_amount=final_amount,
            created_at=self.services.clock.now(),
        )
        controller = CheckoutController(session, self.services)
        self._prune()
        self._controllers[session.id] = controller
        await controller.save()
        logger.info("checkout_started", session_id=session.id, product_id=product.product_id, plan=data.plan_type.value)
        return controller

    async def get(self, session_id: str) -> CheckoutController:
        controller = self._controllers.get(session_id)
        if controller is not None and not controller.closed:
            return controller
        self._controllers.pop(session_id, None)
        session = await self.services.sessions.load(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        controller = CheckoutController(session, self.services)
        self._prune()
        self._controllers[session_id] = controller
        logger.info("checkout_rehydrated", session_id=session_id, step=session.step.value)
        return controller

    async def resume(self, resumption_token: str, token: Optional[str], params: Dict[str, str]) -> CheckoutView:
        resumption = await self.services.resumptions.consume(resumption_token)
        if resumption is None:
            raise SessionNotFound(resumption_token)
        controller = await self.get(resumption.session_id)
        return await controller.resume_redirect(token, resumption, params)

    async def close(self, session_id: str) -> None:
        controller = self._controllers.pop(session_id, None)
        if controller is not None and controller.closed:
            controller = None
        if controller is None and await self.services.sessions.load(session_id) is None:
            raise SessionNotFound(session_id)
        if controller is not None:
            controller.closed = True
            controller.cancel_requested = controller.busy
        await self.services.sessions.delete(session_id)
        logger.info("checkout_closed", session_id=session_id)
