"""Stripe provider — all Stripe API calls behind the PaymentProvider contract.

Responsible for:
- Customers (create / look up / update)
- Hosted Checkout Sessions for subscriptions, with locale mapping
- Subscription lifecycle (fetch / cancel / resume / change plan)
- Live plan catalog built from the configured price table
- Webhook signature verification and event normalization
- Pix one-time checkout + verification
- Customer Portal sessions

Every call passes the provider's own api_key, so no global stripe.api_key
is mutated.
"""

import logging
from datetime import datetime, timedelta, timezone

import stripe

from scanmyscale.payments.base import (
    Capability,
    PaymentProvider,
    SupportsCheckoutVerification,
    SupportsOneTimePayment,
)
from scanmyscale.payments.pricing import (
    PLAN_FEATURES,
    PriceTable,
    compute_access_expiry,
    plan_name,
)
from scanmyscale.payments.types import (
    DEFAULT_TIER,
    TIERS,
    BillingInterval,
    CheckoutSessionData,
    CompletedCheckout,
    OneTimeCheckout,
    OneTimePaymentVerification,
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

STRIPE_LOCALES = {
    "pt-BR": "pt-BR",
    "pt": "pt-BR",
    "en": "en",
    "en-US": "en",
}
FALLBACK_LOCALE = "auto"

STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.PENDING,
    "incomplete_expired": SubscriptionStatus.PENDING,
    "paused": SubscriptionStatus.PAUSED,
    "unpaid": SubscriptionStatus.PAST_DUE,
}

EVENT_TYPE_MAP = {
    "checkout.session.completed": WebhookEventType.SUBSCRIPTION_CREATED,
    "customer.subscription.created": WebhookEventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": WebhookEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": WebhookEventType.SUBSCRIPTION_CANCELED,
    "invoice.payment_succeeded": WebhookEventType.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": WebhookEventType.PAYMENT_FAILED,
    "customer.updated": WebhookEventType.CUSTOMER_UPDATED,
}

SUBSCRIPTION_EVENT_TYPES = frozenset({
    WebhookEventType.SUBSCRIPTION_CREATED,
    WebhookEventType.SUBSCRIPTION_UPDATED,
    WebhookEventType.SUBSCRIPTION_CANCELED,
})

# Substrings Stripe uses when a customer id belongs to the other key mode
# (or no longer exists at all).
MODE_MISMATCH_MARKERS = (
    "similar object exists in live mode",
    "similar object exists in test mode",
    "No such customer",
)

PIX_SESSION_TTL = timedelta(hours=24)
PIX_DESCRIPTIONS = {
    BillingInterval.YEAR: "Acesso por 12 meses",
    BillingInterval.SEMIANNUAL: "Acesso por 6 meses",
    BillingInterval.MONTH: "Acesso por 1 mês",
}


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────

def _get(obj, key, default=None):
    """Read a field from a StripeObject, a plain dict (webhook payloads) or None.

    Newer SDK releases no longer make StripeObject a dict, so SDK objects
    are flattened with to_dict() first; nested values come back as plain
    dicts and lists.
    """
    if obj is None:
        return default
    if not isinstance(obj, dict) and callable(getattr(obj, "to_dict", None)):
        obj = obj.to_dict()
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _expandable_id(value):
    """Return the id of a field that may be an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return _get(value, "id")


def _ts(value):
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


def _error_message(error):
    return getattr(error, "user_message", None) or str(error)


def _first_item(sub):
    data = _get(_get(sub, "items"), "data") or []
    return data[0] if data else {}


def _extract_period(sub, key):
    """Read current_period_start/end from a subscription.

    Newer Stripe API versions moved the period fields from the subscription
    to items.data[0]; check both.
    """
    return _ts(_get(sub, key) or _get(_first_item(sub), key))


def _interval_from_recurring(recurring):
    interval = _get(recurring, "interval")
    count = _get(recurring, "interval_count") or 1
    if interval == "year":
        return BillingInterval.YEAR
    if interval == "month" and count == 6:
        return BillingInterval.SEMIANNUAL
    return BillingInterval.MONTH


def _with_session_id(url, extra=None):
    query = "session_id={CHECKOUT_SESSION_ID}"
    if extra:
        query = f"{query}&{extra}"
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{query}"


def map_locale(locale):
    """Map an app locale to a Stripe Checkout locale.

    A missing locale is treated as English; anything unknown becomes
    "auto" so Stripe picks from the browser instead of rejecting it.
    """
    return STRIPE_LOCALES.get(locale or "en", FALLBACK_LOCALE)


def map_status(stripe_status):
    return STATUS_MAP.get(stripe_status, SubscriptionStatus.PENDING)


def is_customer_mode_mismatch(error):
    """True when Stripe rejected a customer id from the other key mode."""
    if not isinstance(error, stripe.InvalidRequestError):
        return False
    message = str(error)
    return any(marker in message for marker in MODE_MISMATCH_MARKERS)


def _event_references(event_type, obj):
    """Return (subscription_id, customer_id) referenced by a webhook object."""
    if event_type.startswith("customer.subscription."):
        return _get(obj, "id"), _expandable_id(_get(obj, "customer"))
    if event_type == "checkout.session.completed":
        return (
            _expandable_id(_get(obj, "subscription")),
            _expandable_id(_get(obj, "customer")),
        )
    if event_type.startswith("invoice."):
        subscription_id = _expandable_id(_get(obj, "subscription"))
        if not subscription_id:
            details = _get(_get(obj, "parent"), "subscription_details")
            subscription_id = _expandable_id(_get(details, "subscription"))
        return subscription_id, _expandable_id(_get(obj, "customer"))
    if event_type == "customer.updated":
        return None, _get(obj, "id")
    return None, None


# ──────────────────────────────────────────────
# Provider
# ──────────────────────────────────────────────

class StripeProvider(PaymentProvider, SupportsOneTimePayment, SupportsCheckoutVerification):
    name = ProviderName.STRIPE.value
    supported_currencies = ("USD", "BRL")
    supported_countries = ("US", "CA", "GB", "AU", "EU", "BR")
    capabilities = frozenset({
        Capability.HOSTED_CHECKOUT,
        Capability.ONE_TIME_PAYMENT,
        Capability.BILLING_PORTAL,
        Capability.CHECKOUT_VERIFICATION,
        Capability.SUBSCRIPTION_SYNC,
    })

    def __init__(self):
        self.api_key = None
        self.webhook_secret = None
        self.environment = "sandbox"
        self.price_table = PriceTable()

    def initialize(self, config):
        if not config.api_key:
            raise ValueError("Stripe secret key is required")
        self.api_key = config.api_key
        self.webhook_secret = config.webhook_secret
        self.environment = config.environment
        self.price_table = config.metadata.get("price_table") or PriceTable()
        logger.info(
            f"Stripe provider initialized ({self.environment}, "
            f"{len(self.price_table)} prices configured)"
        )

    # ──────────────────────────────────────────
    # Customers
    # ──────────────────────────────────────────

    def _to_customer(self, customer, user_id=None):
        metadata = dict(_get(customer, "metadata") or {})
        return PaymentCustomer(
            id=user_id or metadata.get("userId") or _get(customer, "id"),
            provider_id=_get(customer, "id"),
            provider=self.name,
            email=_get(customer, "email"),
            name=_get(customer, "name"),
            metadata=metadata,
            created_at=_ts(_get(customer, "created")),
        )

    def create_customer(self, data):
        params = {
            "email": data.email,
            "metadata": {"userId": data.user_id, "source": "ScanMyScale", **data.metadata},
        }
        if data.name:
            params["name"] = data.name

        try:
            customer = stripe.Customer.create(api_key=self.api_key, **params)
        except stripe.StripeError as e:
            logger.error(f"Stripe customer creation failed for user {data.user_id}: {e}")
            return PaymentResult.fail(
                f"Failed to create customer: {_error_message(e)}",
                ResultCode.CUSTOMER_CREATION_FAILED,
            )

        logger.info(f"Created Stripe customer {_get(customer, 'id')} for user {data.user_id}")
        return PaymentResult.ok(self._to_customer(customer, user_id=data.user_id))

    def _find_customer_by_user_id(self, user_id):
        customers = stripe.Customer.list(limit=100, api_key=self.api_key)
        for customer in _get(customers, "data") or []:
            if (_get(customer, "metadata") or {}).get("userId") == user_id:
                return customer
        return None

    def get_customer(self, customer_id):
        """Fetch a customer by Stripe id, or by internal user id (contains '-')."""
        try:
            if "-" in customer_id:
                customer = self._find_customer_by_user_id(customer_id)
            else:
                customer = stripe.Customer.retrieve(customer_id, api_key=self.api_key)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                return PaymentResult.fail("Customer not found", ResultCode.CUSTOMER_NOT_FOUND)
            return PaymentResult.fail(_error_message(e), ResultCode.CUSTOMER_FETCH_FAILED)
        except stripe.StripeError as e:
            return PaymentResult.fail(_error_message(e), ResultCode.CUSTOMER_FETCH_FAILED)

        if customer is None:
            return PaymentResult.fail("Customer not found", ResultCode.CUSTOMER_NOT_FOUND)
        if _get(customer, "deleted"):
            return PaymentResult.fail("Customer has been deleted", ResultCode.CUSTOMER_DELETED)
        return PaymentResult.ok(self._to_customer(customer))

    def update_customer(self, customer_id, updates):
        params = {k: v for k, v in updates.items() if k in ("email", "name", "metadata") and v}
        try:
            customer = stripe.Customer.modify(customer_id, api_key=self.api_key, **params)
        except stripe.StripeError as e:
            return PaymentResult.fail(
                f"Failed to update customer: {_error_message(e)}",
                ResultCode.CUSTOMER_UPDATE_FAILED,
            )
        return PaymentResult.ok(self._to_customer(customer))

    # ──────────────────────────────────────────
    # Checkout
    # ──────────────────────────────────────────

    def create_checkout_session(self, data):
        """Create a subscription Checkout Session.

        userId and tier go on the session AND on subscription_data so the
        tier survives onto the Subscription object Stripe creates.
        """
        tier = data.tier or DEFAULT_TIER
        metadata = {"userId": data.user_id, "tier": tier, **data.metadata}
        subscription_data = {"metadata": dict(metadata)}
        if data.trial_days:
            subscription_data["trial_period_days"] = data.trial_days

        try:
            session = stripe.checkout.Session.create(
                api_key=self.api_key,
                customer=data.customer_id,
                mode="subscription",
                locale=map_locale(data.locale),
                line_items=[{"price": data.price_id, "quantity": 1}],
                success_url=_with_session_id(data.success_url),
                cancel_url=data.cancel_url,
                metadata=metadata,
                subscription_data=subscription_data,
                allow_promotion_codes=True,
                billing_address_collection="auto",
            )
        except stripe.StripeError as e:
            if is_customer_mode_mismatch(e):
                logger.warning(
                    f"Stripe customer {data.customer_id} does not exist in "
                    f"{self.environment} mode: {e}"
                )
                return PaymentResult.fail(
                    "Customer belongs to a different Stripe mode",
                    ResultCode.CUSTOMER_MODE_MISMATCH,
                )
            logger.error(f"Stripe checkout session failed for user {data.user_id}: {e}")
            return PaymentResult.fail(
                f"Failed to create checkout session: {_error_message(e)}",
                ResultCode.CHECKOUT_SESSION_FAILED,
            )

        return PaymentResult.ok(CheckoutSessionData(
            id=_get(session, "id"),
            url=_get(session, "url"),
            provider=self.name,
            expires_at=_ts(_get(session, "expires_at")),
            metadata=metadata,
        ))

    def retrieve_checkout_session(self, session_id):
        try:
            session = stripe.checkout.Session.retrieve(
                session_id,
                api_key=self.api_key,
                expand=["subscription", "customer"],
            )
        except stripe.StripeError as e:
            logger.warning(f"Failed to retrieve checkout session {session_id}: {e}")
            return PaymentResult.fail(
                f"Failed to retrieve checkout session: {_error_message(e)}",
                ResultCode.CHECKOUT_SESSION_FAILED,
            )

        return PaymentResult.ok(CompletedCheckout(
            id=_get(session, "id") or session_id,
            status=_get(session, "status"),
            payment_status=_get(session, "payment_status"),
            customer_id=_expandable_id(_get(session, "customer")),
            subscription_id=_expandable_id(_get(session, "subscription")),
            metadata=dict(_get(session, "metadata") or {}),
        ))

    # ──────────────────────────────────────────
    # Subscriptions
    # ──────────────────────────────────────────

    def _resolve_tier(self, sub, price, product, slot):
        """Return (tier, source) for a subscription's price.

        Order: configured price table, product metadata, price lookup key,
        subscription metadata, then DEFAULT_TIER with a warning.
        """
        if slot is not None:
            return slot.tier, "price_table"

        if product is not None and not isinstance(product, str):
            tier = (_get(product, "metadata") or {}).get("tier")
            if tier in TIERS:
                return tier, "product_metadata"

        lookup_key = (_get(price, "lookup_key") or "").lower()
        for candidate in TIERS:
            if candidate in lookup_key:
                return candidate, "lookup_key"

        tier = (_get(sub, "metadata") or {}).get("tier")
        if tier in TIERS:
            return tier, "subscription_metadata"

        logger.warning(
            f"Could not resolve tier for subscription {_get(sub, 'id')} "
            f"(price {_get(price, 'id')}); falling back to '{DEFAULT_TIER}'"
        )
        return DEFAULT_TIER, "fallback"

    def _to_subscription(self, sub):
        item = _first_item(sub)
        price = _get(item, "price") or {}
        product = _get(price, "product")
        price_id = _get(price, "id")
        subscription_id = _get(sub, "id")
        customer_id = _expandable_id(_get(sub, "customer"))

        slot = self.price_table.slot_for_price(price_id)
        tier, tier_source = self._resolve_tier(sub, price, product, slot)
        interval = slot.interval if slot else _interval_from_recurring(_get(price, "recurring"))

        return PaymentSubscription(
            id=subscription_id,
            customer_id=customer_id,
            provider_subscription_id=subscription_id,
            provider=self.name,
            status=map_status(_get(sub, "status")),
            plan_id=slot.plan_id if slot else (price_id or ""),
            currency=(_get(price, "currency") or "usd").upper(),
            amount=_get(price, "unit_amount") or 0,
            interval=interval,
            current_period_start=_extract_period(sub, "current_period_start"),
            current_period_end=_extract_period(sub, "current_period_end"),
            # Stripe uses cancel_at_period_end OR a future cancel_at
            cancel_at_period_end=bool(_get(sub, "cancel_at_period_end")) or _get(sub, "cancel_at") is not None,
            trial_end=_ts(_get(sub, "trial_end")),
            metadata={
                "stripeSubscriptionId": subscription_id,
                "stripeCustomerId": customer_id,
                "tier": tier,
                "tierSource": tier_source,
                "priceId": price_id,
                "productId": _expandable_id(product),
                "cancelAt": _ts(_get(sub, "cancel_at")),
            },
        )

    def get_subscription(self, subscription_id):
        try:
            sub = stripe.Subscription.retrieve(
                subscription_id,
                api_key=self.api_key,
                expand=["customer", "items.data.price.product"],
            )
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                return PaymentResult.fail("Subscription not found", ResultCode.SUBSCRIPTION_NOT_FOUND)
            return PaymentResult.fail(_error_message(e), ResultCode.SUBSCRIPTION_FETCH_FAILED)
        except stripe.StripeError as e:
            return PaymentResult.fail(_error_message(e), ResultCode.SUBSCRIPTION_FETCH_FAILED)

        return PaymentResult.ok(self._to_subscription(sub))

    def cancel_subscription(self, subscription_id, immediate=False):
        try:
            if immediate:
                stripe.Subscription.cancel(subscription_id, api_key=self.api_key)
            else:
                stripe.Subscription.modify(
                    subscription_id, api_key=self.api_key, cancel_at_period_end=True,
                )
        except stripe.StripeError as e:
            return PaymentResult.fail(
                f"Failed to cancel subscription: {_error_message(e)}",
                ResultCode.SUBSCRIPTION_CANCEL_FAILED,
            )
        return self.get_subscription(subscription_id)

    def resume_subscription(self, subscription_id):
        try:
            stripe.Subscription.modify(
                subscription_id, api_key=self.api_key, cancel_at_period_end=False,
            )
        except stripe.StripeError as e:
            return PaymentResult.fail(
                f"Failed to resume subscription: {_error_message(e)}",
                ResultCode.SUBSCRIPTION_RESUME_FAILED,
            )
        return self.get_subscription(subscription_id)

    def change_subscription_plan(self, subscription_id, new_plan_id):
        """Swap the subscription's price; accepts a plan id or a configured price id."""
        slot = self.price_table.slot_for_plan(new_plan_id) or self.price_table.slot_for_price(new_plan_id)
        if slot is None:
            return PaymentResult.fail(f"Plan {new_plan_id} not found", ResultCode.PLAN_NOT_FOUND)
        price_id = self.price_table.price_id(slot.tier, slot.interval, slot.currency)

        try:
            sub = stripe.Subscription.retrieve(subscription_id, api_key=self.api_key)
            stripe.Subscription.modify(
                subscription_id,
                api_key=self.api_key,
                items=[{"id": _get(_first_item(sub), "id"), "price": price_id}],
                proration_behavior="create_prorations",
                metadata={"tier": slot.tier},
            )
        except stripe.StripeError as e:
            return PaymentResult.fail(
                f"Failed to change subscription plan: {_error_message(e)}",
                ResultCode.SUBSCRIPTION_CHANGE_FAILED,
            )
        return self.get_subscription(subscription_id)

    def find_customer_subscription(self, customer_id):
        """Current subscription for a customer: active first, then trialing."""
        try:
            for status in ("active", "trialing"):
                subs = stripe.Subscription.list(
                    customer=customer_id, status=status, limit=1, api_key=self.api_key,
                )
                data = _get(subs, "data") or []
                if data:
                    return self.get_subscription(_get(data[0], "id"))
        except stripe.StripeError as e:
            return PaymentResult.fail(_error_message(e), ResultCode.SUBSCRIPTION_FETCH_FAILED)

        return PaymentResult.fail(
            "No active subscription found", ResultCode.NO_SUBSCRIPTIONS_FOUND,
        )

    # ──────────────────────────────────────────
    # Plans
    # ──────────────────────────────────────────

    def _retrieve_price(self, price_id):
        return stripe.Price.retrieve(price_id, api_key=self.api_key, expand=["product"])

    def _to_plan(self, slot, price):
        product = _get(price, "product")
        currency = (_get(price, "currency") or "").upper()
        if currency and currency != slot.currency:
            logger.warning(
                f"Price {_get(price, 'id')} is configured as {slot.config_key} "
                f"({slot.currency}) but Stripe reports {currency}"
            )

        product_active = True
        if product is not None and not isinstance(product, str):
            product_active = bool(_get(product, "active", True))

        return PaymentPlan(
            id=slot.plan_id,
            provider=self.name,
            provider_plan_id=_get(price, "id"),
            name=plan_name(slot.tier, slot.currency),
            tier=slot.tier,
            currency=currency or slot.currency,
            amount=_get(price, "unit_amount") or 0,
            interval=slot.interval,
            features=list(PLAN_FEATURES[slot.tier]),
            is_active=bool(_get(price, "active")) and product_active,
            metadata={
                "productId": _expandable_id(product),
                "lookupKey": _get(price, "lookup_key"),
            },
        )

    def get_plans(self, currency=None):
        slots = [
            (slot, price_id)
            for slot, price_id in self.price_table.items()
            if currency is None or slot.currency == currency.upper()
        ]

        plans = []
        failures = 0
        for slot, price_id in slots:
            try:
                price = self._retrieve_price(price_id)
            except stripe.StripeError as e:
                failures += 1
                logger.warning(f"Skipping {slot.config_key} ({price_id}): {e}")
                continue
            plan = self._to_plan(slot, price)
            if plan.is_active:
                plans.append(plan)

        if slots and failures == len(slots):
            return PaymentResult.fail("Failed to fetch plans from Stripe", ResultCode.PLANS_FETCH_FAILED)
        return PaymentResult.ok(plans)

    def get_plan(self, plan_id):
        slot = self.price_table.slot_for_plan(plan_id) or self.price_table.slot_for_price(plan_id)
        if slot is None:
            return PaymentResult.fail(f"Plan {plan_id} not found", ResultCode.PLAN_NOT_FOUND)

        price_id = self.price_table.price_id(slot.tier, slot.interval, slot.currency)
        try:
            price = self._retrieve_price(price_id)
        except stripe.StripeError as e:
            return PaymentResult.fail(_error_message(e), ResultCode.PLANS_FETCH_FAILED)

        plan = self._to_plan(slot, price)
        if not plan.is_active:
            return PaymentResult.fail(f"Plan {plan_id} is not active", ResultCode.PLAN_NOT_FOUND)
        return PaymentResult.ok(plan)

    # ──────────────────────────────────────────
    # Webhooks
    # ──────────────────────────────────────────

    def verify_webhook(self, payload, signature, secret=None):
        """Check the Stripe-Signature header against the raw, unparsed body."""
        secret = secret or self.webhook_secret
        if not signature or not secret:
            return False
        try:
            stripe.Webhook.construct_event(payload, signature, secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Stripe webhook signature verification failed: {e}")
            return False
        return True

    def is_webhook_event(self, payload):
        return (
            isinstance(payload, dict)
            and isinstance(payload.get("type"), str)
            and isinstance(payload.get("data"), dict)
        )

    def to_webhook_event(self, payload, signature=None):
        return WebhookEvent(
            id=payload.get("id") or "",
            provider=self.name,
            type=payload["type"],
            data=payload.get("data") or {},
            timestamp=_ts(payload.get("created")),
            signature=signature,
        )

    def process_webhook(self, event):
        normalized = EVENT_TYPE_MAP.get(event.type)
        if normalized is None:
            return PaymentResult.fail(
                f"Unsupported Stripe event type: {event.type}",
                ResultCode.UNSUPPORTED_EVENT_TYPE,
            )

        obj = event.data.get("object") or {}
        subscription_id, customer_id = _event_references(event.type, obj)
        changes = {
            "eventId": event.id,
            "eventType": event.type,
            "timestamp": _iso(event.timestamp),
            "customerId": customer_id,
            "subscriptionId": subscription_id,
        }
        if event.type.startswith("invoice."):
            changes["invoiceId"] = _get(obj, "id")
            changes["amount"] = (
                _get(obj, "amount_paid")
                if normalized == WebhookEventType.PAYMENT_SUCCEEDED
                else _get(obj, "amount_due")
            )

        # Vendor truth: refetch rather than trusting the (possibly stale) payload
        subscription = None
        if subscription_id and normalized in SUBSCRIPTION_EVENT_TYPES:
            result = self.get_subscription(subscription_id)
            if not result.success:
                return PaymentResult.fail(
                    f"Could not fetch subscription {subscription_id}: {result.error}",
                    ResultCode.WEBHOOK_PROCESSING_FAILED,
                )
            subscription = result.data

        customer = None
        if normalized == WebhookEventType.CUSTOMER_UPDATED:
            customer = self._to_customer(obj)

        return PaymentResult.ok(WebhookProcessingResult(
            type=normalized,
            subscription=subscription,
            customer=customer,
            changes=changes,
        ))

    # ──────────────────────────────────────────
    # Customer Portal
    # ──────────────────────────────────────────

    def get_customer_portal_url(self, customer_id, return_url):
        try:
            session = stripe.billing_portal.Session.create(
                api_key=self.api_key, customer=customer_id, return_url=return_url,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe portal session failed for customer {customer_id}: {e}")
            return PaymentResult.fail(
                f"Failed to create billing portal session: {_error_message(e)}",
                ResultCode.BILLING_PORTAL_FAILED,
            )
        return PaymentResult.ok(_get(session, "url"))

    # ──────────────────────────────────────────
    # Pix (one-time prepaid access)
    # ──────────────────────────────────────────

    def create_one_time_checkout(self, data, now=None):
        """Create a Pix Checkout Session buying fixed-duration access.

        The access expiry is computed here and written to both the session
        and the PaymentIntent metadata, then returned to the caller.
        """
        now = now or datetime.now(timezone.utc)
        interval = BillingInterval(data.interval)
        access_expires_at = compute_access_expiry(now, interval)
        metadata = {
            "userId": data.user_id,
            "tier": data.tier,
            "interval": interval.value,
            "paymentMethod": data.payment_method,
            "accessExpiresAt": access_expires_at.isoformat(),
        }

        params = {
            "mode": "payment",
            "payment_method_types": [data.payment_method],
            "line_items": [{
                "price_data": {
                    "currency": data.currency.lower(),
                    "product_data": {
                        "name": plan_name(data.tier, data.currency.upper()),
                        "description": PIX_DESCRIPTIONS[interval],
                    },
                    "unit_amount": data.amount,
                },
                "quantity": 1,
            }],
            "success_url": _with_session_id(data.success_url, extra="pix=true"),
            "cancel_url": data.cancel_url,
            "metadata": metadata,
            "payment_intent_data": {"metadata": dict(metadata)},
            "expires_at": int((now + PIX_SESSION_TTL).timestamp()),
            "locale": map_locale(data.locale or "pt-BR"),
        }
        if data.customer_id:
            params["customer"] = data.customer_id

        try:
            session = stripe.checkout.Session.create(api_key=self.api_key, **params)
        except stripe.StripeError as e:
            logger.error(f"Pix checkout failed for user {data.user_id}: {e}")
            return PaymentResult.fail(
                f"Failed to create Pix checkout: {_error_message(e)}",
                ResultCode.PIX_CHECKOUT_FAILED,
            )

        return PaymentResult.ok(OneTimeCheckout(
            id=_get(session, "id"),
            url=_get(session, "url"),
            payment_intent_id=_expandable_id(_get(session, "payment_intent")),
            expires_at=_ts(_get(session, "expires_at")),
            access_expires_at=access_expires_at,
        ))

    def verify_one_time_payment(self, session_id):
        try:
            session = stripe.checkout.Session.retrieve(
                session_id, api_key=self.api_key, expand=["payment_intent"],
            )
        except stripe.StripeError as e:
            return PaymentResult.fail(
                f"Failed to verify Pix payment: {_error_message(e)}",
                ResultCode.PIX_VERIFICATION_FAILED,
            )

        if _get(session, "payment_status") != "paid":
            return PaymentResult.fail("Payment not completed", ResultCode.PAYMENT_NOT_COMPLETED)

        metadata = dict(_get(session, "metadata") or {})
        expires_raw = metadata.get("accessExpiresAt")
        try:
            access_expires_at = datetime.fromisoformat(expires_raw) if expires_raw else None
        except ValueError:
            logger.warning(f"Pix session {session_id} has unparseable accessExpiresAt {expires_raw!r}")
            access_expires_at = None

        return PaymentResult.ok(OneTimePaymentVerification(
            session_id=_get(session, "id") or session_id,
            status=_get(session, "payment_status"),
            payment_intent_id=_expandable_id(_get(session, "payment_intent")),
            user_id=metadata.get("userId"),
            tier=metadata.get("tier"),
            interval=metadata.get("interval"),
            access_expires_at=access_expires_at,
            amount=_get(session, "amount_total"),
            currency=(_get(session, "currency") or "brl").upper(),
            customer_id=_expandable_id(_get(session, "customer")),
        ))
