"""
Payment provider contract.

Every vendor adapter (Stripe, RevenueCat, the Brazilian gateway stubs)
implements PaymentProvider. Vendor-specific extras are exposed through
narrow capability interfaces (SupportsOneTimePayment,
SupportsCheckoutVerification) and advertised via `capabilities`, so callers
ask `provider.supports(Capability.X)` instead of checking concrete types.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from scanmyscale.payments.types import (
    CheckoutSessionData,
    CompletedCheckout,
    OneTimeCheckout,
    OneTimePaymentVerification,
    PaymentCustomer,
    PaymentPlan,
    PaymentResult,
    PaymentSubscription,
    ResultCode,
    WebhookEvent,
    WebhookProcessingResult,
)


class Capability(str, Enum):
    HOSTED_CHECKOUT = "hosted_checkout"
    ONE_TIME_PAYMENT = "one_time_payment"
    BILLING_PORTAL = "billing_portal"
    CHECKOUT_VERIFICATION = "checkout_verification"
    SUBSCRIPTION_SYNC = "subscription_sync"


@dataclass
class ProviderConfig:
    api_key: str
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    environment: str = "sandbox"  # sandbox | production
    metadata: dict = field(default_factory=dict)


@dataclass
class CreateCustomerData:
    email: str
    user_id: str
    name: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class CreateCheckoutData:
    customer_id: str
    plan_id: str
    price_id: str
    user_id: str
    success_url: str
    cancel_url: str
    tier: Optional[str] = None
    trial_days: Optional[int] = None
    locale: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class OneTimeCheckoutData:
    customer_id: Optional[str]
    user_id: str
    tier: str
    interval: str
    amount: int
    success_url: str
    cancel_url: str
    currency: str = "BRL"
    payment_method: str = "pix"
    locale: Optional[str] = None


class PaymentProvider(ABC):
    """Abstract payment provider."""

    name: str = ""
    supported_currencies: tuple = ()
    supported_countries: tuple = ()
    capabilities: frozenset = frozenset()

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def not_supported(self, operation: str, detail: str = "") -> PaymentResult:
        message = f"{operation} is not supported by {self.name}"
        if detail:
            message = f"{message}: {detail}"
        return PaymentResult.fail(message, ResultCode.NOT_SUPPORTED_BY_PROVIDER)

    # --- Lifecycle ---

    @abstractmethod
    def initialize(self, config: ProviderConfig) -> None:
        """One-time setup. Raises ValueError on unusable config."""

    # --- Customers ---

    @abstractmethod
    def create_customer(self, data: CreateCustomerData) -> PaymentResult[PaymentCustomer]:
        pass

    @abstractmethod
    def get_customer(self, customer_id: str) -> PaymentResult[PaymentCustomer]:
        pass

    @abstractmethod
    def update_customer(self, customer_id: str, updates: dict) -> PaymentResult[PaymentCustomer]:
        pass

    # --- Checkout ---

    @abstractmethod
    def create_checkout_session(self, data: CreateCheckoutData) -> PaymentResult[CheckoutSessionData]:
        pass

    # --- Subscriptions ---

    @abstractmethod
    def get_subscription(self, subscription_id: str) -> PaymentResult[PaymentSubscription]:
        pass

    @abstractmethod
    def cancel_subscription(self, subscription_id: str, immediate: bool = False) -> PaymentResult[PaymentSubscription]:
        pass

    @abstractmethod
    def resume_subscription(self, subscription_id: str) -> PaymentResult[PaymentSubscription]:
        pass

    @abstractmethod
    def change_subscription_plan(self, subscription_id: str, new_plan_id: str) -> PaymentResult[PaymentSubscription]:
        pass

    def find_customer_subscription(self, customer_id: str) -> PaymentResult[PaymentSubscription]:
        """Look up the customer's current subscription (manual resync)."""
        return self.not_supported("Subscription lookup by customer")

    # --- Plans ---

    @abstractmethod
    def get_plans(self, currency: Optional[str] = None) -> PaymentResult[list]:
        """Active plans only, optionally limited to one currency."""

    @abstractmethod
    def get_plan(self, plan_id: str) -> PaymentResult[PaymentPlan]:
        pass

    # --- Webhooks ---

    @abstractmethod
    def verify_webhook(self, payload, signature: Optional[str], secret: Optional[str]) -> bool:
        pass

    @abstractmethod
    def is_webhook_event(self, payload) -> bool:
        """Shape check on a parsed webhook body."""

    @abstractmethod
    def to_webhook_event(self, payload: dict, signature: Optional[str] = None) -> WebhookEvent:
        pass

    @abstractmethod
    def process_webhook(self, event: WebhookEvent) -> PaymentResult[WebhookProcessingResult]:
        pass

    # --- Customer portal ---

    def get_customer_portal_url(self, customer_id: str, return_url: str) -> PaymentResult[str]:
        return self.not_supported("Customer portal")

    def __repr__(self):
        return f"<{type(self).__name__} {self.name}>"


class SupportsOneTimePayment(ABC):
    """Fixed-duration access bought with a single payment (e.g. Pix)."""

    @abstractmethod
    def create_one_time_checkout(self, data: OneTimeCheckoutData, now=None) -> PaymentResult[OneTimeCheckout]:
        pass

    @abstractmethod
    def verify_one_time_payment(self, session_id: str) -> PaymentResult[OneTimePaymentVerification]:
        pass


class SupportsCheckoutVerification(ABC):
    """Re-fetch a hosted checkout session after the user returns from it."""

    @abstractmethod
    def retrieve_checkout_session(self, session_id: str) -> PaymentResult[CompletedCheckout]:
        pass
