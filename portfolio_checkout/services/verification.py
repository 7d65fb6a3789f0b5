from typing import Callable, Optional

import structlog

from ..config import settings
from ..errors import BackendError, CheckoutCancelled, NetworkOrTimeout
from ..schemas import ResourceKind, VerificationRequest, VerificationResult, VerificationStatus
from .idempotency import IdempotencyCache, verification_key
from .retry import Clock, RetryPolicy, SystemClock, retry

logger = structlog.get_logger(__name__)

# the backend has not reconciled the provider webhook yet
NOT_YET_RECONCILED = {VerificationStatus.PENDING, VerificationStatus.CREATED, VerificationStatus.NOT_FOUND}


def default_policy(config=settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.verify_max_attempts,
        initial_delay=config.verify_initial_delay_seconds,
        backoff=config.verify_backoff_factor,
        max_delay=config.verify_max_delay_seconds,
        ceiling=config.verify_ceiling_seconds,
    )


def _status_of(body: dict) -> VerificationStatus:
    raw = body.get("subscriptionStatus") or body.get("status")
    subscription = body.get("subscription") or {}
    if subscription.get("cashfreeStatus") == "BANK_APPROVAL_PENDING" or raw == "BANK_APPROVAL_PENDING":
        return VerificationStatus.PENDING
    if not raw:
        return VerificationStatus.ACTIVE if body.get("success") else VerificationStatus.FAILED
    try:
        return VerificationStatus(str(raw).lower())
    except ValueError:
        return VerificationStatus.FAILED


def interpret_verification(body: dict) -> VerificationResult:
    status = _status_of(body)
    success = bool(body.get("success")) or status in (VerificationStatus.ACTIVE, VerificationStatus.AUTHENTICATED)
    return VerificationResult(success=success, status=status, message=body.get("message") or "")


def interpret_rejection(exc: BackendError) -> VerificationResult:
    if exc.status_code == 404 or (exc.status_code == 403 and "No matching subscriptions found" in exc.message):
        return VerificationResult(success=False, status=VerificationStatus.NOT_FOUND, message=exc.message)
    return VerificationResult(success=False, status=VerificationStatus.FAILED, message=exc.message)


class VerificationPoller:
    """Confirms with the backend that a created order or mandate was authorized.

    "Not yet reconciled" answers are retried with capped exponential backoff
    inside a wall-clock ceiling; anything else returns at once. Giving up is
    reported as ``VerificationStatus.TIMEOUT`` rather than a failure since the
    charge may still settle. Successful results are cached per resource, and
    overlapping calls for the same resource wait on the poll already running.
    """

    def __init__(
        self,
        backend,
        cache: IdempotencyCache,
        clock: Optional[Clock] = None,
        policy: Optional[RetryPolicy] = None,
        cache_ttl: float = settings.verification_cache_ttl_seconds,
    ):
        self.backend = backend
        self.cache = cache
        self.clock = clock or SystemClock()
        self.policy = policy or default_policy()
        self.cache_ttl = cache_ttl

    async def _verify_once(self, token: str, request: VerificationRequest) -> VerificationResult:
        try:
            if request.kind is ResourceKind.RECURRING_MANDATE:
                body = await self.backend.verify_mandate(token, request.resource_id, request.gateway)
            else:
                payload = {"orderId": request.resource_id, "gateway": request.gateway}
                if request.payment_id:
                    payload["paymentId"] = request.payment_id
                if request.signature:
                    payload["signature"] = request.signature
                body = await self.backend.verify_payment(token, payload)
        except BackendError as exc:
            return interpret_rejection(exc)
        return interpret_verification(body)

    async def _acquire(self, key: str, request: VerificationRequest, is_cancelled) -> Optional[VerificationResult]:
        """Take the verification key, or wait for the poll that holds it.

        Returns a cached result when another poll produced one, ``None`` once
        this caller owns the key.
        """
        deadline = self.clock.now() + self.policy.ceiling
        while True:
            cached = await self.cache.get(key)
            if cached:
                logger.info("verification_cache_hit", resource_id=request.resource_id)
                return VerificationResult.model_validate(cached)
            if await self.cache.try_acquire(key, self.policy.ceiling + self.cache_ttl):
                return None
            if is_cancelled is not None and is_cancelled():
                raise CheckoutCancelled()
            if self.clock.now() >= deadline:
                logger.warning("verification_in_flight_timeout", resource_id=request.resource_id)
                return VerificationResult(
                    success=False,
                    status=VerificationStatus.TIMEOUT,
                    message="Payment verification is still in progress.",
                    attempts=0,
                )
            logger.info("verification_in_flight", resource_id=request.resource_id)
            await self.clock.sleep(self.policy.initial_delay)

    async def verify(
        self,
        token: str,
        request: VerificationRequest,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> VerificationResult:
        key = verification_key(request.resource_id)
        shared = await self._acquire(key, request, is_cancelled)
        if shared is not None:
            return shared

        try:
            result = await self._poll(token, request, is_cancelled)
        except BaseException:
            await self.cache.release(key)
            raise
        if result.activated:
            await self.cache.put(key, result.model_dump(mode="json"), self.cache_ttl)
        else:
            await self.cache.release(key)
        return result

    async def _poll(self, token: str, request: VerificationRequest, is_cancelled) -> VerificationResult:
        attempts = 0

        async def attempt_once(attempt):
            nonlocal attempts
            attempts = attempt
            return await self._verify_once(token, request)

        def on_retry(attempt, wait, value, error):
            logger.info(
                "verification_retry",
                resource_id=request.resource_id,
                gateway=request.gateway,
                attempt=attempt,
                delay=round(wait, 2),
                status=value.status.value if value is not None else None,
                error=str(error) if error is not None else None,
            )

        try:
            outcome = await retry(
                attempt_once,
                self.policy,
                should_retry=lambda result: result.status in NOT_YET_RECONCILED,
                clock=self.clock,
                retry_on=(NetworkOrTimeout,),
                is_cancelled=is_cancelled,
                on_retry=on_retry,
            )
        except NetworkOrTimeout:
            logger.warning("verification_unreachable", resource_id=request.resource_id, attempts=attempts)
            return VerificationResult(
                success=False,
                status=VerificationStatus.TIMEOUT,
                message="Could not reach the payment service.",
                attempts=attempts,
            )

        if outcome.exhausted:
            logger.warning(
                "verification_timeout",
                resource_id=request.resource_id,
                attempts=outcome.attempts,
                elapsed=round(outcome.elapsed, 2),
            )
            return VerificationResult(
                success=False,
                status=VerificationStatus.TIMEOUT,
                message="Payment verification timed out.",
                attempts=outcome.attempts,
            )

        result = outcome.value.model_copy(update={"attempts": outcome.attempts})
        logger.info(
            "verification_finished",
            resource_id=request.resource_id,
            status=result.status.value,
            success=result.success,
            attempts=result.attempts,
        )
        return result
