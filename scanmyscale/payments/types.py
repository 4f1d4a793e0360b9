"""Provider-agnostic payment types.

Every adapter operation returns a PaymentResult. Expected vendor outcomes
(missing resource, unsupported operation, rejected request) are carried as
a failed result with a ResultCode, never raised.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ProviderName(str, Enum):
    REVENUECAT = "revenuecat"
    MERCADOPAGO = "mercadopago"
    PAGARME = "pagarme"
    PAGSEGURO = "pagseguro"
    STRIPE = "stripe"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    PENDING = "pending"
    TRIALING = "trialing"
    PAUSED = "paused"


class BillingInterval(str, Enum):
    MONTH = "month"
    SEMIANNUAL = "semiannual"
    YEAR = "year"


class WebhookEventType(str, Enum):
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CUSTOMER_UPDATED = "customer_updated"


class ResultCode(str, Enum):
    # Customers
    CUSTOMER_CREATION_FAILED = "CUSTOMER_CREATION_FAILED"
    CUSTOMER_NOT_FOUND = "CUSTOMER_NOT_FOUND"
    CUSTOMER_DELETED = "CUSTOMER_DELETED"
    CUSTOMER_FETCH_FAILED = "CUSTOMER_FETCH_FAILED"
    CUSTOMER_UPDATE_FAILED = "CUSTOMER_UPDATE_FAILED"
    CUSTOMER_ID_MISMATCH = "CUSTOMER_ID_MISMATCH"
    CUSTOMER_MODE_MISMATCH = "CUSTOMER_MODE_MISMATCH"

    # Checkout
    CHECKOUT_SESSION_FAILED = "CHECKOUT_SESSION_FAILED"
    PAYMENT_NOT_COMPLETED = "PAYMENT_NOT_COMPLETED"
    PIX_CHECKOUT_FAILED = "PIX_CHECKOUT_FAILED"
    PIX_VERIFICATION_FAILED = "PIX_VERIFICATION_FAILED"
    BILLING_PORTAL_FAILED = "BILLING_PORTAL_FAILED"

    # Subscriptions
    SUBSCRIPTION_FETCH_FAILED = "SUBSCRIPTION_FETCH_FAILED"
    SUBSCRIPTION_NOT_FOUND = "SUBSCRIPTION_NOT_FOUND"
    NO_SUBSCRIPTIONS_FOUND = "NO_SUBSCRIPTIONS_FOUND"
    SUBSCRIPTION_CANCEL_FAILED = "SUBSCRIPTION_CANCEL_FAILED"
    SUBSCRIPTION_RESUME_FAILED = "SUBSCRIPTION_RESUME_FAILED"
    SUBSCRIPTION_CHANGE_FAILED = "SUBSCRIPTION_CHANGE_FAILED"

    # Plans
    PLANS_FETCH_FAILED = "PLANS_FETCH_FAILED"
    PLAN_NOT_FOUND = "PLAN_NOT_FOUND"

    # Webhooks
    WEBHOOK_PROCESSING_FAILED = "WEBHOOK_PROCESSING_FAILED"
    INVALID_WEBHOOK_FORMAT = "INVALID_WEBHOOK_FORMAT"
    UNSUPPORTED_EVENT_TYPE = "UNSUPPORTED_EVENT_TYPE"

    # Routing / capability
    PROVIDER_NOT_FOUND = "PROVIDER_NOT_FOUND"
    NOT_SUPPORTED_BY_PROVIDER = "NOT_SUPPORTED_BY_PROVIDER"
    NOT_IMPLEMENTED = "NOT_IMPLEMENTED"


TIERS = ("starter", "premium", "pro")
DEFAULT_TIER = "starter"


def _iso(value):
    return value.isoformat() if isinstance(value, datetime) else value


@dataclass
class PaymentResult(Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    code: Optional[ResultCode] = None

    @classmethod
    def ok(cls, data=None):
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error, code):
        return cls(success=False, error=error, code=code)


@dataclass
class PaymentCustomer:
    id: str
    provider_id: str
    provider: str
    email: Optional[str] = None
    name: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass
class PaymentSubscription:
    id: str
    customer_id: str
    provider_subscription_id: str
    provider: str
    status: SubscriptionStatus
    plan_id: str
    currency: str
    amount: int
    interval: BillingInterval
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    trial_end: Optional[datetime] = None
    metadata: dict = field(default_factory=dict)

    @property
    def tier(self):
        return self.metadata.get("tier")

    def to_dict(self):
        return {
            "id": self.id,
            "customerId": self.customer_id,
            "providerSubscriptionId": self.provider_subscription_id,
            "provider": self.provider,
            "status": self.status.value,
            "planId": self.plan_id,
            "tier": self.tier,
            "currency": self.currency,
            "amount": self.amount,
            "interval": self.interval.value,
            "currentPeriodStart": _iso(self.current_period_start),
            "currentPeriodEnd": _iso(self.current_period_end),
            "cancelAtPeriodEnd": self.cancel_at_period_end,
            "trialEnd": _iso(self.trial_end),
        }


@dataclass
class PaymentPlan:
    id: str
    provider: str
    provider_plan_id: str
    name: str
    tier: str
    currency: str
    amount: int
    interval: BillingInterval
    features: list = field(default_factory=list)
    is_active: bool = True
    metadata: dict = field(default_factory=dict)

    def to_dict(self):
        return {
            "id": self.id,
            "provider": self.provider,
            "providerPlanId": self.provider_plan_id,
            "name": self.name,
            "tier": self.tier,
            "currency": self.currency,
            "amount": self.amount,
            "interval": self.interval.value,
            "features": list(self.features),
            "isActive": self.is_active,
        }


@dataclass
class CheckoutSessionData:
    id: str
    url: str
    provider: str
    expires_at: Optional[datetime] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class CompletedCheckout:
    """A hosted checkout session as re-fetched from the vendor."""

    id: str
    status: Optional[str]
    payment_status: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    metadata: dict = field(default_factory=dict)

    @property
    def is_paid(self):
        return self.status == "complete" and self.payment_status == "paid"


@dataclass
class OneTimeCheckout:
    id: str
    url: str
    payment_intent_id: Optional[str]
    expires_at: Optional[datetime]
    access_expires_at: datetime


@dataclass
class OneTimePaymentVerification:
    session_id: str
    status: str
    payment_intent_id: Optional[str]
    user_id: Optional[str]
    tier: Optional[str]
    interval: Optional[str]
    access_expires_at: Optional[datetime]
    amount: Optional[int]
    currency: str = "BRL"
    customer_id: Optional[str] = None


@dataclass
class WebhookEvent:
    id: str
    provider: str
    type: str
    data: dict
    timestamp: Optional[datetime] = None
    signature: Optional[str] = None


@dataclass
class WebhookProcessingResult:
    type: WebhookEventType
    subscription: Optional[PaymentSubscription] = None
    customer: Optional[PaymentCustomer] = None
    changes: dict = field(default_factory=dict)

    @property
    def customer_id(self) -> Optional[str]:
        if self.subscription is not None:
            return self.subscription.customer_id
        if self.customer is not None:
            return self.customer.provider_id
        return self.changes.get("customerId")
