"""RevenueCat provider — app-store billing via the RevenueCat REST API.

Responsible for:
- Subscriber lookups (GET /v1/subscribers/{app_user_id}) with retry/backoff
- Deriving subscription status from per-product subscription records
- Mapping store product identifiers to internal plan ids
- Static plan catalog (prices live in the app stores)
- Shared-secret webhook verification and event normalization

Purchases, cancellation and plan changes happen inside the native app
stores, so those operations return NOT_SUPPORTED_BY_PROVIDER.

The subscriber id is always the internal user id (never email).
"""

import hmac
import logging
import time
from datetime import datetime, timezone
from urllib.parse import quote

import requests

from scanmyscale.errors import (
    PaymentProviderError,
    ProviderAPIError,
    ProviderConnectionError,
    ProviderResponseError,
    ProviderTimeoutError,
)
from scanmyscale.payments.base import Capability, PaymentProvider
from scanmyscale.payments.pricing import PLAN_FEATURES
from scanmyscale.payments.retry import RetryPolicy, parse_retry_after
from scanmyscale.payments.types import (
    DEFAULT_TIER,
    TIERS,
    BillingInterval,
    PaymentCustomer,
    PaymentPlan,
    PaymentResult,
    PaymentSubscription,
    ProviderName,
    ResultCode,
    SubscriptionStatus,
    WebhookEvent,
    WebhookEventType,
    WebhookProcessingResult,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.revenuecat.com"
DEFAULT_TIMEOUT = 30
USER_AGENT = "ScanMyScale-RevenueCat-Provider/1.0"

PRODUCT_TO_PLAN = {
    "starter_monthly_usd": "scanmyscale_starter_monthly_usd",
    "starter_yearly_usd": "scanmyscale_starter_yearly_usd",
    "premium_monthly_usd": "scanmyscale_premium_monthly_usd",
    "premium_yearly_usd": "scanmyscale_premium_yearly_usd",
    "pro_monthly_usd": "scanmyscale_pro_monthly_usd",
    "pro_yearly_usd": "scanmyscale_pro_yearly_usd",
    # Legacy store identifiers
    "starter_monthly": "scanmyscale_starter_monthly_usd",
    "starter_yearly": "scanmyscale_starter_yearly_usd",
    "premium_monthly": "scanmyscale_premium_monthly_usd",
    "premium_yearly": "scanmyscale_premium_yearly_usd",
    "pro_monthly": "scanmyscale_pro_monthly_usd",
    "pro_yearly": "scanmyscale_pro_yearly_usd",
}

# tier -> (monthly cents, yearly cents)
PLAN_PRICES = {
    "starter": (199, 1999),
    "premium": (299, 2999),
    "pro": (399, 3999),
}

EVENT_TYPE_MAP = {
    "INITIAL_PURCHASE": WebhookEventType.SUBSCRIPTION_CREATED,
    "RENEWAL": WebhookEventType.PAYMENT_SUCCEEDED,
    "CANCELLATION": WebhookEventType.SUBSCRIPTION_CANCELED,
    "UNCANCELLATION": WebhookEventType.SUBSCRIPTION_UPDATED,
    "NON_RENEWING_PURCHASE": WebhookEventType.PAYMENT_SUCCEEDED,
    "RESUBSCRIPTION": WebhookEventType.SUBSCRIPTION_CREATED,
    "EXPIRATION": WebhookEventType.SUBSCRIPTION_CANCELED,
    "BILLING_ISSUE": WebhookEventType.PAYMENT_FAILED,
    "SUBSCRIBER_ALIAS": WebhookEventType.CUSTOMER_UPDATED,
}

SUBSCRIPTION_EVENT_TYPES = frozenset({
    WebhookEventType.SUBSCRIPTION_CREATED,
    WebhookEventType.SUBSCRIPTION_UPDATED,
    WebhookEventType.SUBSCRIPTION_CANCELED,
})


# ──────────────────────────────────────────────
# Pure helpers
# ──────────────────────────────────────────────

def parse_date(value):
    """Parse a RevenueCat ISO-8601 timestamp ("...Z") into an aware datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        logger.warning(f"Unparseable RevenueCat date: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def derive_status(record, now=None):
    """Status state machine for one RevenueCat subscription record.

    billing issue -> past_due
    unsubscribed, expiry still ahead -> active (paid-through grace)
    unsubscribed or plain expired, expiry passed -> canceled
    otherwise -> active
    """
    now = now or datetime.now(timezone.utc)
    expires = parse_date(record.get("expires_date"))

    if record.get("billing_issues_detected_at"):
        return SubscriptionStatus.PAST_DUE
    if record.get("unsubscribe_detected_at"):
        if expires and expires > now:
            return SubscriptionStatus.ACTIVE
        return SubscriptionStatus.CANCELED
    if expires and expires <= now:
        return SubscriptionStatus.CANCELED
    return SubscriptionStatus.ACTIVE


def select_subscription(subscriptions, now=None):
    """Pick the record to report: the first active one, else the latest purchase.

    `subscriptions` is RevenueCat's {product_id: record} mapping.
    Returns (product_id, record) or None.
    """
    if not subscriptions:
        return None

    epoch = datetime.min.replace(tzinfo=timezone.utc)
    latest = None
    for product_id, record in subscriptions.items():
        if derive_status(record, now) == SubscriptionStatus.ACTIVE:
            return product_id, record
        purchased = parse_date(record.get("purchase_date")) or epoch
        if latest is None or purchased > latest[2]:
            latest = (product_id, record, purchased)
    return latest[0], latest[1]


def map_product_to_plan(product_id):
    plan_id = PRODUCT_TO_PLAN.get(product_id)
    if plan_id is None:
        logger.warning(f"Unmapped RevenueCat product identifier {product_id!r}; passing through")
        return product_id
    return plan_id


def interval_from_product(product_id):
    """Duration comes from the product identifier, not RevenueCat's period_type
    (which is trial/intro/normal)."""
    if "yearly" in (product_id or "").lower():
        return BillingInterval.YEAR
    return BillingInterval.MONTH


def tier_from_plan_id(plan_id):
    parts = (plan_id or "").lower().split("_")
    for tier in TIERS:
        if tier in parts:
            return tier
    return None


def _build_static_plans():
    plans = []
    for tier in TIERS:
        monthly, yearly = PLAN_PRICES[tier]
        label = tier.title()
        plans.append(PaymentPlan(
            id=f"scanmyscale_{tier}_monthly_usd",
            provider=ProviderName.REVENUECAT.value,
            provider_plan_id=f"{tier}_monthly_usd",
            name=f"ScanMyScale {label}",
            tier=tier,
            currency="USD",
            amount=monthly,
            interval=BillingInterval.MONTH,
            features=list(PLAN_FEATURES[tier]),
        ))
        plans.append(PaymentPlan(
            id=f"scanmyscale_{tier}_yearly_usd",
            provider=ProviderName.REVENUECAT.value,
            provider_plan_id=f"{tier}_yearly_usd",
            name=f"ScanMyScale {label} (Annual)",
            tier=tier,
            currency="USD",
            amount=yearly,
            interval=BillingInterval.YEAR,
            features=list(PLAN_FEATURES[tier]) + ["Save 17% vs monthly"],
        ))
    return plans


STATIC_PLANS = _build_static_plans()


# ──────────────────────────────────────────────
# Provider
# ──────────────────────────────────────────────

class RevenueCatProvider(PaymentProvider):
    name = ProviderName.REVENUECAT.value
    supported_currencies = ("USD",)
    supported_countries = ("US",)
    capabilities = frozenset({Capability.SUBSCRIPTION_SYNC})

    def __init__(self, sleep=time.sleep):
        self._sleep = sleep
        self.api_key = None
        self.webhook_secret = None
        self.environment = "sandbox"
        self.base_url = DEFAULT_BASE_URL
        self.timeout = DEFAULT_TIMEOUT
        self.retry_policy = RetryPolicy()

    def initialize(self, config):
        if not config.api_key:
            raise ValueError("RevenueCat API key is required")
        self.api_key = config.api_key
        self.webhook_secret = config.webhook_secret
        self.environment = config.environment
        self.base_url = (config.metadata.get("base_url") or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = config.metadata.get("timeout") or DEFAULT_TIMEOUT
        self.retry_policy = RetryPolicy(
            max_retries=config.metadata.get("max_retries", 3),
        )
        logger.info(f"RevenueCat provider initialized ({self.environment})")

    # ──────────────────────────────────────────
    # HTTP
    # ──────────────────────────────────────────

    def _request(self, method, path, payload=None):
        """Call the RevenueCat API with bounded retry.

        Retries 429 (honoring Retry-After), 5xx, timeouts and connection
        errors. Returns parsed JSON, or None for an empty body.
        Raises ProviderAPIError for a non-2xx answer that is final,
        ProviderTimeoutError / ProviderConnectionError once retries run out,
        ProviderResponseError for a body that is not JSON.
        """
        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        policy = self.retry_policy
        attempt = 0

        while True:
            try:
                response = requests.request(
                    method, url, headers=headers, json=payload, timeout=self.timeout,
                )
            except requests.Timeout as e:
                if not policy.should_retry(attempt):
                    raise ProviderTimeoutError(
                        f"RevenueCat request timed out after {attempt + 1} attempts: {method} {path}"
                    ) from e
                delay = policy.compute_delay(attempt)
                logger.warning(f"RevenueCat timeout on {method} {path}, retry {attempt + 1} in {delay}s")
                self._sleep(delay)
                attempt += 1
                continue
            except requests.ConnectionError as e:
                if not policy.should_retry(attempt):
                    raise ProviderConnectionError(
                        f"RevenueCat unreachable after {attempt + 1} attempts: {e}"
                    ) from e
                delay = policy.compute_delay(attempt)
                logger.warning(f"RevenueCat connection error on {method} {path}, retry {attempt + 1} in {delay}s")
                self._sleep(delay)
                attempt += 1
                continue

            status = response.status_code
            if policy.is_retryable_status(status) and policy.should_retry(attempt):
                retry_after = None
                if status == 429:
                    retry_after = parse_retry_after(response.headers.get("Retry-After"))
                delay = policy.compute_delay(attempt, retry_after)
                logger.warning(f"RevenueCat returned {status} on {method} {path}, retry {attempt + 1} in {delay}s")
                self._sleep(delay)
                attempt += 1
                continue

            if not 200 <= status < 300:
                raise ProviderAPIError(status, self._error_message(response))

            if not response.content:
                return None
            try:
                return response.json()
            except ValueError as e:
                raise ProviderResponseError(f"Invalid JSON from RevenueCat: {e}") from e

    @staticmethod
    def _error_message(response):
        try:
            body = response.json()
        except ValueError:
            return response.text or "Unknown error"
        if isinstance(body, dict):
            return body.get("message") or body.get("error") or str(body)
        return str(body)

    def _get_subscriber(self, app_user_id):
        data = self._request("GET", f"/v1/subscribers/{quote(app_user_id, safe='')}") or {}
        return data.get("subscriber") or {}

    # ──────────────────────────────────────────
    # Customers
    # ──────────────────────────────────────────

    def create_customer(self, data):
        # Subscribers are created by the app SDK on first launch; our user id
        # is the app_user_id, so nothing is sent to RevenueCat here.
        return PaymentResult.ok(PaymentCustomer(
            id=data.user_id,
            provider_id=data.user_id,
            provider=self.name,
            email=data.email,
            name=data.name,
            metadata=dict(data.metadata),
            created_at=datetime.now(timezone.utc),
        ))

    def get_customer(self, customer_id):
        try:
            subscriber = self._get_subscriber(customer_id)
        except ProviderAPIError as e:
            if e.status_code == 404:
                return PaymentResult.fail("Customer not found", ResultCode.CUSTOMER_NOT_FOUND)
            return PaymentResult.fail(str(e), ResultCode.CUSTOMER_FETCH_FAILED)

        original_id = subscriber.get("original_app_user_id")
        if original_id and original_id != customer_id:
            return PaymentResult.fail(
                f"Subscriber id mismatch: requested {customer_id}, got {original_id}",
                ResultCode.CUSTOMER_ID_MISMATCH,
            )

        return PaymentResult.ok(PaymentCustomer(
            id=customer_id,
            provider_id=customer_id,
            provider=self.name,
            metadata={
                "first_seen": subscriber.get("first_seen"),
                "last_seen": subscriber.get("last_seen"),
                "management_url": subscriber.get("management_url"),
                "entitlements": list((subscriber.get("entitlements") or {}).keys()),
            },
            created_at=parse_date(subscriber.get("first_seen")),
        ))

    def update_customer(self, customer_id, updates):
        return self.not_supported("Customer updates", "subscriber attributes are set from the app SDK")

    # ──────────────────────────────────────────
    # Checkout / subscription management (app stores only)
    # ──────────────────────────────────────────

    def create_checkout_session(self, data):
        return self.not_supported("Checkout sessions", "purchases happen through the app stores")

    def cancel_subscription(self, subscription_id, immediate=False):
        return self.not_supported("Cancellation", "users cancel in their app store settings")

    def resume_subscription(self, subscription_id):
        return self.not_supported("Resuming subscriptions", "users resubscribe in the app")

    def change_subscription_plan(self, subscription_id, new_plan_id):
        return self.not_supported("Plan changes", "upgrades happen through the app stores")

    def get_customer_portal_url(self, customer_id, return_url):
        return self.not_supported(
            "Customer portal",
            "manage subscriptions in iOS Settings > Apple ID > Subscriptions "
            "or Google Play Store > Account > Subscriptions",
        )

    # ──────────────────────────────────────────
    # Subscriptions
    # ──────────────────────────────────────────

    def get_subscription(self, subscription_id, now=None):
        """Current subscription for a subscriber.

        `subscription_id` is the app_user_id; RevenueCat keys subscription
        records by store product id under the subscriber.
        """
        try:
            subscriber = self._get_subscriber(subscription_id)
        except ProviderAPIError as e:
            if e.status_code == 404:
                return PaymentResult.fail("Subscription not found", ResultCode.SUBSCRIPTION_NOT_FOUND)
            return PaymentResult.fail(str(e), ResultCode.SUBSCRIPTION_FETCH_FAILED)

        picked = select_subscription(subscriber.get("subscriptions") or {}, now)
        if picked is None:
            return PaymentResult.fail("No subscriptions found for customer", ResultCode.NO_SUBSCRIPTIONS_FOUND)
        product_id, record = picked

        plan_id = map_product_to_plan(product_id)
        plan = next((p for p in STATIC_PLANS if p.id == plan_id), None)
        tier = tier_from_plan_id(plan_id)
        if tier is None:
            logger.warning(
                f"Could not resolve tier for RevenueCat product {product_id!r}; "
                f"falling back to '{DEFAULT_TIER}'"
            )
            tier = DEFAULT_TIER

        return PaymentResult.ok(PaymentSubscription(
            id=product_id,
            customer_id=subscriber.get("original_app_user_id") or subscription_id,
            provider_subscription_id=product_id,
            provider=self.name,
            status=derive_status(record, now),
            plan_id=plan_id,
            currency=plan.currency if plan else "USD",
            amount=plan.amount if plan else 0,
            interval=interval_from_product(product_id),
            current_period_start=parse_date(record.get("purchase_date")),
            current_period_end=parse_date(record.get("expires_date")),
            cancel_at_period_end=bool(record.get("unsubscribe_detected_at")),
            metadata={
                "tier": tier,
                "environment": self.environment,
                "store": record.get("store"),
                "is_sandbox": record.get("is_sandbox"),
                "original_purchase_date": record.get("original_purchase_date"),
                "product_identifier": product_id,
                "unsubscribe_detected_at": record.get("unsubscribe_detected_at"),
                "billing_issues_detected_at": record.get("billing_issues_detected_at"),
            },
        ))

    def find_customer_subscription(self, customer_id):
        return self.get_subscription(customer_id)

    # ──────────────────────────────────────────
    # Plans
    # ──────────────────────────────────────────

    def get_plans(self, currency=None):
        plans = [
            p for p in STATIC_PLANS
            if p.is_active and (currency is None or p.currency == currency.upper())
        ]
        return PaymentResult.ok(plans)

    def get_plan(self, plan_id):
        for plan in STATIC_PLANS:
            if plan_id in (plan.id, plan.provider_plan_id):
                return PaymentResult.ok(plan)
        return PaymentResult.fail(f"Plan {plan_id} not found", ResultCode.PLAN_NOT_FOUND)

    # ──────────────────────────────────────────
    # Webhooks
    # ──────────────────────────────────────────

    def verify_webhook(self, payload, signature, secret=None):
        """Constant-time compare of the Authorization header with the shared secret.

        Accepts both "Bearer <token>" and a bare token.
        """
        secret = secret or self.webhook_secret
        if not secret or not signature:
            logger.warning("RevenueCat webhook missing secret or Authorization header")
            return False

        token = signature[len("Bearer "):] if signature.startswith("Bearer ") else signature
        return hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8"))

    def is_webhook_event(self, payload):
        if not isinstance(payload, dict):
            return False
        event = payload.get("event")
        if not isinstance(event, dict):
            return False
        if not isinstance(event.get("type"), str) or not isinstance(event.get("app_user_id"), str):
            return False
        if event.get("product_id") is not None and not isinstance(event["product_id"], str):
            return False
        entitlements = event.get("entitlement_ids", event.get("entitlements"))
        return entitlements is None or isinstance(entitlements, list)

    def to_webhook_event(self, payload, signature=None):
        event = payload["event"]
        timestamp_ms = event.get("event_timestamp_ms")
        return WebhookEvent(
            id=event.get("id") or "",
            provider=self.name,
            type=event["type"],
            data=event,
            timestamp=datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc) if timestamp_ms else None,
            signature=signature,
        )

    def process_webhook(self, event):
        if not self.is_webhook_event({"event": event.data}):
            return PaymentResult.fail("Invalid RevenueCat webhook format", ResultCode.INVALID_WEBHOOK_FORMAT)

        normalized = EVENT_TYPE_MAP.get(event.type)
        if normalized is None:
            return PaymentResult.fail(
                f"Unsupported RevenueCat event type: {event.type}",
                ResultCode.UNSUPPORTED_EVENT_TYPE,
            )

        app_user_id = event.data["app_user_id"]
        subscription = None
        if normalized in SUBSCRIPTION_EVENT_TYPES:
            try:
                result = self.get_subscription(app_user_id)
            except PaymentProviderError as e:
                result = PaymentResult.fail(str(e), ResultCode.SUBSCRIPTION_FETCH_FAILED)

            if result.success:
                subscription = result.data
            elif result.code in (ResultCode.NO_SUBSCRIPTIONS_FOUND, ResultCode.SUBSCRIPTION_NOT_FOUND):
                logger.warning(
                    f"RevenueCat {event.type} for {app_user_id}: "
                    f"no subscription on record ({result.code})"
                )
            else:
                # Fail so RevenueCat redelivers; the event is not recorded
                return PaymentResult.fail(
                    f"Could not fetch subscription for {app_user_id}: {result.error}",
                    ResultCode.WEBHOOK_PROCESSING_FAILED,
                )

        return PaymentResult.ok(WebhookProcessingResult(
            type=normalized,
            subscription=subscription,
            changes={
                "eventId": event.id,
                "customerId": app_user_id,
                "product_id": event.data.get("product_id"),
                "entitlements": event.data.get("entitlement_ids", event.data.get("entitlements")) or [],
                "original_event_type": event.type,
                "timestamp": event.timestamp.isoformat() if event.timestamp else None,
                "expiresAt": event.data.get("expiration_at_ms"),
            },
        ))
