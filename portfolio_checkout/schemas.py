import re
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

PAN_PATTERN = re.compile(r"^[A-Z]{5}[0-9]{4}[A-Z]$")


class PlanType(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class ProductType(str, Enum):
    PORTFOLIO = "Portfolio"
    BUNDLE = "Bundle"


class Step(str, Enum):
    PLAN = "plan"
    CONSENT = "consent"
    AUTH = "auth"
    PAN_FORM = "pan-form"
    GATEWAY_SELECT = "gateway-select"
    SIGNATURE = "signature"
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"


class ResourceKind(str, Enum):
    ONE_TIME_ORDER = "one-time-order"
    RECURRING_MANDATE = "recurring-mandate"


class Capability(str, Enum):
    RECURRING = "recurring"
    ONE_TIME = "one-time"


class SignatureStatus(str, Enum):
    REQUESTED = "requested"
    COMPLETED = "completed"
    EXPIRED = "expired"
    FAILED = "failed"


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    CANCELLED = "cancelled"
    FAILED = "failed"
    LOAD_FAILED = "load_failed"


class VerificationStatus(str, Enum):
    ACTIVE = "active"
    AUTHENTICATED = "authenticated"
    PENDING = "pending"
    CREATED = "created"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class PendingActionKind(str, Enum):
    OPEN_GATEWAY = "open_gateway"
    OPEN_SIGNATURE = "open_signature"
    REDIRECT = "redirect"


# --- domain records ---

class ProductRef(BaseModel):
    product_type: ProductType = ProductType.BUNDLE
    product_id: str
    product_name: Optional[str] = None


class Coupon(BaseModel):
    code: str
    discount_type: str = "percentage"  # percentage | fixed
    discount_value: Decimal = Decimal("0")
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    min_order_value: Decimal = Decimal("0")
    max_discount_amount: Decimal = Decimal("0")
    apply_to_all: bool = True
    portfolios: List[str] = Field(default_factory=list)
    bundles: List[str] = Field(default_factory=list)


class AppliedCoupon(BaseModel):
    code: str
    discount: Decimal


class Quote(BaseModel):
    base_amount: Decimal
    discount: Decimal
    final_amount: Decimal
    coupon: Optional[AppliedCoupon] = None
    rejection: Optional[str] = None


class Customer(BaseModel):
    name: str = ""
    email: str = ""
    phone: Optional[str] = None


class Profile(BaseModel):
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None
    tax_id: Optional[str] = None

    @property
    def has_tax_id(self) -> bool:
        return bool(self.tax_id and self.tax_id.strip())

    def customer(self) -> Customer:
        return Customer(name=self.full_name or "", email=self.email or "", phone=self.phone)


class IdentitySubmission(BaseModel):
    full_name: str
    date_of_birth: date
    phone: str
    tax_id: str

    @field_validator("tax_id", mode="before")
    @classmethod
    def normalize_tax_id(cls, value):
        return str(value or "").strip().upper()

    @field_validator("full_name", "phone", mode="before")
    @classmethod
    def strip_text(cls, value):
        return str(value or "").strip()


class OrderOrMandate(BaseModel):
    external_id: str
    kind: ResourceKind
    amount: Decimal
    currency: str = "INR"
    created_at: float
    gateway: str
    # gateway-specific launch data (session ids, commitment dates)
    extras: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class ResourceRequest(BaseModel):
    product: ProductRef
    plan_type: PlanType
    kind: ResourceKind
    amount: Decimal
    coupon_code: Optional[str] = None


class SignatureRequest(BaseModel):
    document_id: str
    authentication_url: Optional[str] = None
    status: SignatureStatus = SignatureStatus.REQUESTED


class PaymentAgreement(BaseModel):
    customer_name: str
    customer_email: str
    customer_mobile: Optional[str] = None
    amount: Decimal
    plan_type: PlanType
    product_names: List[str]
    agreement_date: date


class SubscriptionRecord(BaseModel):
    product_id: str
    product_name: Optional[str] = None
    is_active: bool = False
    expiry_date: Optional[datetime] = None


class VerificationRequest(BaseModel):
    resource_id: str
    kind: ResourceKind
    gateway: str
    payment_id: Optional[str] = None
    signature: Optional[str] = None


class VerificationResult(BaseModel):
    success: bool
    status: VerificationStatus
    message: str = ""
    attempts: int = 1

    @property
    def retries(self) -> int:
        return max(self.attempts - 1, 0)

    @property
    def activated(self) -> bool:
        return self.success or self.status in (VerificationStatus.ACTIVE, VerificationStatus.AUTHENTICATED)


class GatewayDescriptor(BaseModel):
    id: str
    name: str = ""
    supports_subscriptions: bool = False
    supports_one_time: bool = True
    supported_methods: List[str] = Field(default_factory=list)

    def supports(self, capability: Capability) -> bool:
        if capability is Capability.RECURRING:
            methods = set(self.supported_methods)
            return self.supports_subscriptions or bool(methods & {"emandate", "upi_autopay", "enach"})
        return self.supports_one_time


class GatewayOutcome(BaseModel):
    status: OutcomeStatus
    payment_id: Optional[str] = None
    signature: Optional[str] = None
    message: Optional[str] = None


class ResumptionToken(BaseModel):
    token: str
    session_id: str
    resource_id: str
    gateway: str
    return_context: Dict[str, Any] = Field(default_factory=dict)


class PendingAction(BaseModel):
    kind: PendingActionKind
    gateway: Optional[str] = None
    url: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class ErrorInfo(BaseModel):
    kind: str
    message: str
    retryable: bool = True
    conflicting_products: List[str] = Field(default_factory=list)


class Notice(BaseModel):
    title: str
    description: str = ""
    variant: str = "default"  # default | destructive


class CheckoutSession(BaseModel):
    id: str
    product: ProductRef
    plan_type: PlanType
    base_amount: Decimal
    applied_coupon: Optional[AppliedCoupon] = None
    final_amount: Decimal
    selected_gateway: Optional[str] = None
    step: Step = Step.PLAN
    history: List[Step] = Field(default_factory=lambda: [Step.PLAN])
    consent_given: bool = False
    eligible: bool = False
    profile: Optional[Profile] = None
    gateway_choices: List[str] = Field(default_factory=list)
    signature: Optional[SignatureRequest] = None
    signature_verified: bool = False
    resource: Optional[OrderOrMandate] = None
    pending_action: Optional[PendingAction] = None
    error: Optional[ErrorInfo] = None
    notice: Optional[Notice] = None
    form_errors: Dict[str, str] = Field(default_factory=dict)
    invite_links: List[str] = Field(default_factory=list)
    created_at: float = 0.0


# --- HTTP payloads ---

class StartCheckoutIn(BaseModel):
    product_type: ProductType = ProductType.BUNDLE
    product_id: str
    product_name: Optional[str] = None
    plan_type: PlanType
    base_amount: Decimal = Field(..., ge=0)


class PlanIn(BaseModel):
    plan_type: PlanType
    base_amount: Decimal = Field(..., ge=0)


class CouponIn(BaseModel):
    code: str


class IdentityIn(BaseModel):
    full_name: str = ""
    date_of_birth: str = ""
    phone: str = ""
    tax_id: str = ""


class GatewayChoiceIn(BaseModel):
    gateway: str


class SignatureCallbackIn(BaseModel):
    document_id: str


class GatewayCallbackIn(BaseModel):
    status: OutcomeStatus
    payment_id: Optional[str] = None
    signature: Optional[str] = None
    message: Optional[str] = None


class CheckoutView(CheckoutSession):
    busy: bool = False
