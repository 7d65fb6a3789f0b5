import asyncio

import pytest
from structlog.testing import capture_logs

from fakes import TOKEN
from portfolio_checkout.errors import BackendError, NetworkOrTimeout
from portfolio_checkout.schemas import ResourceKind, VerificationRequest, VerificationStatus
from portfolio_checkout.services.retry import RetryPolicy
from portfolio_checkout.services.verification import VerificationPoller

PENDING = {"success": False, "subscriptionStatus": "pending", "message": "Awaiting confirmation"}
ACTIVE = {"success": True, "subscriptionStatus": "active"}

MANDATE = VerificationRequest(resource_id="sub_1", kind=ResourceKind.RECURRING_MANDATE, gateway="razorpay")


@pytest.fixture
def poller(backend, cache, clock):
    policy = RetryPolicy(max_attempts=10, initial_delay=2.0, backoff=1.5, max_delay=5.0, ceiling=60.0)
    return VerificationPoller(backend, cache, clock, policy=policy, cache_ttl=300)


async def test_pending_three_times_then_success(poller, backend):
    backend.verify_responses = [PENDING, PENDING, PENDING, ACTIVE]

    with capture_logs() as logs:
        result = await poller.verify(TOKEN, MANDATE)

    assert result.success
    assert result.status is VerificationStatus.ACTIVE
    assert result.retries == 3
    retries = [entry for entry in logs if entry["event"] == "verification_retry"]
    assert len(retries) == 3
    assert [entry["attempt"] for entry in retries] == [1, 2, 3]


async def test_polling_is_bounded_by_the_ceiling(poller, backend, clock):
    poller.policy = RetryPolicy(max_attempts=1000, initial_delay=2.0, backoff=1.5, max_delay=5.0, ceiling=60.0)
    backend.verify_responses = [PENDING]
    start = clock.now()

    result = await poller.verify(TOKEN, MANDATE)

    assert result.status is VerificationStatus.TIMEOUT
    assert not result.success
    assert clock.now() - start <= 60.0


async def test_attempt_limit_ends_in_timeout(poller, backend):
    backend.verify_responses = [{"success": False, "subscriptionStatus": "created"}]

    result = await poller.verify(TOKEN, MANDATE)

    assert result.status is VerificationStatus.TIMEOUT
    assert backend.count("verify_mandate") == 10


async def test_hard_failure_returns_without_retrying(poller, backend, clock):
    backend.verify_responses = [{"success": False, "subscriptionStatus": "failed", "message": "Mandate rejected"}]

    result = await poller.verify(TOKEN, MANDATE)

    assert result.status is VerificationStatus.FAILED
    assert result.message == "Mandate rejected"
    assert backend.count("verify_mandate") == 1
    assert clock.sleeps == []


async def test_unmatched_subscription_is_treated_as_not_yet_found(poller, backend):
    backend.verify_responses = [
        BackendError(403, {"message": "Unauthorized eMandate verification - No matching subscriptions found"}),
        BackendError(404, {}),
        ACTIVE,
    ]

    result = await poller.verify(TOKEN, MANDATE)

    assert result.success
    assert result.attempts == 3


async def test_other_rejections_fail_immediately(poller, backend):
    backend.verify_responses = [BackendError(400, {"message": "Invalid signature"})]
    result = await poller.verify(TOKEN, MANDATE)
    assert result.status is VerificationStatus.FAILED
    assert backend.count("verify_mandate") == 1


async def test_bank_approval_pending_is_retried(poller, backend):
    backend.verify_responses = [
        {"success": False, "subscription": {"cashfreeStatus": "BANK_APPROVAL_PENDING"}},
        {"success": False, "subscriptionStatus": "authenticated"},
    ]

    result = await poller.verify(TOKEN, MANDATE)

    assert result.activated
    assert result.status is VerificationStatus.AUTHENTICATED


async def test_network_errors_are_retried_then_reported_as_timeout(poller, backend):
    poller.policy = RetryPolicy(max_attempts=3)
    backend.verify_responses = [NetworkOrTimeout()]

    result = await poller.verify(TOKEN, MANDATE)

    assert result.status is VerificationStatus.TIMEOUT
    assert backend.count("verify_mandate") == 3


async def test_successful_result_is_cached(poller, backend):
    first = await poller.verify(TOKEN, MANDATE)
    second = await poller.verify(TOKEN, MANDATE)

    assert first.success and second.success
    assert backend.count("verify_mandate") == 1


async def test_one_time_order_sends_payment_details(poller, backend):
    order = VerificationRequest(
        resource_id="order_1",
        kind=ResourceKind.ONE_TIME_ORDER,
        gateway="razorpay",
        payment_id="pay_1",
        signature="sig_1",
    )

    result = await poller.verify(TOKEN, order)

    assert result.success
    _, payload = backend.last("verify_payment")
    assert payload == {"orderId": "order_1", "gateway": "razorpay", "paymentId": "pay_1", "signature": "sig_1"}


async def test_network_timeout_reports_the_attempts_made(poller, backend):
    poller.policy = RetryPolicy(max_attempts=10, initial_delay=2.0, backoff=1.5, max_delay=5.0, ceiling=6.0)
    backend.verify_responses = [NetworkOrTimeout()]

    result = await poller.verify(TOKEN, MANDATE)

    assert result.status is VerificationStatus.TIMEOUT
    assert result.attempts == backend.count("verify_mandate") == 4


async def test_overlapping_calls_share_one_poll(poller, backend):
    backend.verify_responses = [PENDING, ACTIVE]

    first, second = await asyncio.gather(poller.verify(TOKEN, MANDATE), poller.verify(TOKEN, MANDATE))

    assert first.success and second.success
    assert backend.count("verify_mandate") == 2


async def test_unsuccessful_poll_frees_the_resource_for_a_later_check(poller, backend):
    backend.verify_responses = [{"success": False, "subscriptionStatus": "failed"}]
    assert not (await poller.verify(TOKEN, MANDATE)).success

    backend.verify_responses = [ACTIVE]
    assert (await poller.verify(TOKEN, MANDATE)).success
    assert backend.count("verify_mandate") == 2
