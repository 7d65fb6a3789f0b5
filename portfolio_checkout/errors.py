from enum import Enum
from typing import Dict, List, Optional


class ErrorKind(str, Enum):
    NOT_AUTHENTICATED = "not_authenticated"
    IDENTITY_MISSING = "identity_missing"
    SIGNATURE_REQUIRED = "signature_required"
    SIGNATURE_PENDING = "signature_pending"
    SIGNATURE_FAILED = "signature_failed"
    SUBSCRIPTION_CONFLICT = "subscription_conflict"
    DUPLICATE_IN_FLIGHT = "duplicate_in_flight"
    GATEWAY_CANCELLED = "gateway_cancelled"
    GATEWAY_FAILED = "gateway_failed"
    VERIFICATION_TIMEOUT = "verification_timeout"
    NETWORK_OR_TIMEOUT = "network_or_timeout"
    UNKNOWN = "unknown"


class CheckoutError(Exception):
    kind: ErrorKind = ErrorKind.UNKNOWN
    default_message = "Something went wrong. Please try again."
    # whether "Try Again" is offered on the error screen
    retryable = True

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotAuthenticated(CheckoutError):
    kind = ErrorKind.NOT_AUTHENTICATED
    default_message = "Please log in to continue."


class IdentityMissing(CheckoutError):
    kind = ErrorKind.IDENTITY_MISSING
    default_message = "PAN details are required before checkout."


class IdentityValidationError(CheckoutError):
    kind = ErrorKind.IDENTITY_MISSING
    default_message = "Please correct the highlighted fields."

    def __init__(self, field_errors: Dict[str, str], message: Optional[str] = None):
        self.field_errors = field_errors
        super().__init__(message)


class SignatureRequired(CheckoutError):
    kind = ErrorKind.SIGNATURE_REQUIRED
    default_message = "A signed payment agreement is required."


class SignaturePending(CheckoutError):
    kind = ErrorKind.SIGNATURE_PENDING
    default_message = "Your payment agreement is awaiting signature."

    def __init__(
        self,
        authentication_url: Optional[str] = None,
        document_id: Optional[str] = None,
        message: Optional[str] = None,
    ):
        self.authentication_url = authentication_url
        self.document_id = document_id
        super().__init__(message)


class SignatureFailed(CheckoutError):
    kind = ErrorKind.SIGNATURE_FAILED
    default_message = "The agreement could not be signed."


class SubscriptionConflict(CheckoutError):
    kind = ErrorKind.SUBSCRIPTION_CONFLICT
    retryable = False

    def __init__(self, product_names: Optional[List[str]] = None, message: Optional[str] = None):
        self.product_names = product_names or []
        if message is None:
            if self.product_names:
                message = "You already have an active subscription for: " + ", ".join(self.product_names)
            else:
                message = "You already have an active subscription for this product."
        super().__init__(message)


class DuplicateInFlight(CheckoutError):
    kind = ErrorKind.DUPLICATE_IN_FLIGHT
    default_message = "Payment already in progress. Please wait or refresh the page."
    retryable = False


class GatewayCancelled(CheckoutError):
    kind = ErrorKind.GATEWAY_CANCELLED
    default_message = "Payment was cancelled."


class GatewayFailed(CheckoutError):
    kind = ErrorKind.GATEWAY_FAILED
    default_message = "Payment failed."


class VerificationTimeout(CheckoutError):
    kind = ErrorKind.VERIFICATION_TIMEOUT
    default_message = (
        "We could not confirm your payment yet. It may have succeeded, "
        "please check your account before paying again."
    )


class NetworkOrTimeout(CheckoutError):
    kind = ErrorKind.NETWORK_OR_TIMEOUT
    default_message = "Network error. Please check your connection and try again."


class Unknown(CheckoutError):
    kind = ErrorKind.UNKNOWN


class CheckoutCancelled(Exception):
    """Raised at a suspension point once the user asked to cancel."""


class BackendError(Exception):
    """Non-2xx response from the subscriptions backend."""

    def __init__(self, status_code: int, body: Optional[dict] = None):
        self.status_code = status_code
        self.body = body or {}
        self.code = self.body.get("code")
        message = self.body.get("message") or self.body.get("error") or f"Backend returned {status_code}"
        self.message = str(message)
        super().__init__(self.message)


class InvalidTransition(Exception):
    """The operation is not allowed from the session's current step."""

    def __init__(self, current, target=None):
        self.current = current
        self.target = target
        if target is None:
            message = f"Not allowed while in step '{current.value}'"
        else:
            message = f"Cannot move from '{current.value}' to '{target.value}'"
        super().__init__(message)


class SessionNotFound(LookupError):
    """Unknown or expired checkout session or resumption token."""
