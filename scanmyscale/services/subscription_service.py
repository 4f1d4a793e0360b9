"""Subscription service — checkout and reconciliation orchestration.

Responsible for:
- Plan listing for the resolved market
- Checkout creation, including the customer-mode-mismatch self-heal
- Post-redirect session verification with the ownership check
- Pix one-time checkout + verification (prepaid access)
- Customer portal, cancel, resume and manual resync
- Entitlements derived from the denormalized user fields

Provider adapters return PaymentResult; this module turns failures into
BillingError subclasses that the blueprints render as JSON.
"""

import logging
from dataclasses import replace
from datetime import datetime, timezone

from flask import current_app

from scanmyscale.errors import (
    InvalidRequestError,
    NotFoundError,
    OwnershipError,
    PaymentNotCompletedError,
    ProviderUnavailableError,
    UpstreamError,
)
from scanmyscale.markets import get_market
from scanmyscale.payments.base import (
    Capability,
    CreateCheckoutData,
    CreateCustomerData,
    OneTimeCheckoutData,
)
from scanmyscale.payments.manager import get_payment_manager
from scanmyscale.payments.pricing import make_plan_id
from scanmyscale.payments.types import (
    DEFAULT_TIER,
    TIERS,
    BillingInterval,
    ResultCode,
    SubscriptionStatus,
)
from scanmyscale.services import storage_service

logger = logging.getLogger(__name__)

PIX_SUBSCRIPTION_PREFIX = "pix_"
PIX_CURRENCY = "BRL"

ENTITLEMENTS = {
    "free": {
        "scansPerDay": 3,
        "historyDays": 7,
        "advancedAnalytics": False,
        "goalTracking": False,
        "dataExport": False,
        "aiInsights": False,
        "socialSharing": False,
        "prioritySupport": False,
    },
    "starter": {
        "scansPerDay": None,
        "historyDays": 30,
        "advancedAnalytics": False,
        "goalTracking": False,
        "dataExport": False,
        "aiInsights": False,
        "socialSharing": False,
        "prioritySupport": False,
    },
    "premium": {
        "scansPerDay": None,
        "historyDays": None,
        "advancedAnalytics": True,
        "goalTracking": True,
        "dataExport": True,
        "aiInsights": False,
        "socialSharing": False,
        "prioritySupport": True,
    },
    "pro": {
        "scansPerDay": None,
        "historyDays": None,
        "advancedAnalytics": True,
        "goalTracking": True,
        "dataExport": True,
        "aiInsights": True,
        "socialSharing": True,
        "prioritySupport": True,
    },
}
ENTITLEMENTS["admin"] = ENTITLEMENTS["pro"]

ACCESS_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────

def _iso(value):
    return value.isoformat() if value else None


def _aware(value):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _base_url():
    return current_app.config["APP_BASE_URL"].rstrip("/")


def _provider_for_market(market):
    result = get_payment_manager().get_provider_for_market(market)
    if not result.success:
        logger.error(result.error)
        raise ProviderUnavailableError(code=result.code)
    return result.data


def _provider_for_user(user, market=None):
    """The provider holding the user's subscription, else the market's provider."""
    if user.payment_provider:
        provider = get_payment_manager().get_provider(user.payment_provider)
        if provider is not None:
            return provider
    return _provider_for_market(market or get_market(None))


def _require(provider, capability, operation):
    if not provider.supports(capability):
        raise InvalidRequestError(
            f"{operation} is not available for this payment provider",
            code=ResultCode.NOT_SUPPORTED_BY_PROVIDER,
        )


def is_prepaid(user):
    return bool(user.provider_subscription_id) and user.provider_subscription_id.startswith(
        PIX_SUBSCRIPTION_PREFIX
    )


def has_active_access(user, now=None):
    """True while the user's paid tier is usable.

    Active/trialing subscriptions count until subscription_ends_at (prepaid
    access expiry or a scheduled cancellation). A canceled subscription
    keeps access until its ends_at.
    """
    now = now or datetime.now(timezone.utc)
    ends_at = _aware(user.subscription_ends_at)

    if user.subscription_tier == "admin":
        return True
    if user.subscription_status in ACCESS_STATUSES:
        return ends_at is None or ends_at > now
    if user.subscription_status == SubscriptionStatus.CANCELED.value:
        return ends_at is not None and ends_at > now
    return False


def effective_tier(user, now=None):
    tier = user.subscription_tier or "free"
    if tier == "free" or not has_active_access(user, now):
        return "free"
    return tier


def status_body(user, subscription=None, now=None):
    tier = effective_tier(user, now)
    return {
        "tier": tier,
        "subscriptionTier": user.subscription_tier,
        "status": user.subscription_status,
        "provider": user.payment_provider,
        "currentPeriodEnd": _iso(user.subscription_current_period_end),
        "endsAt": _iso(user.subscription_ends_at),
        "isPrepaid": is_prepaid(user),
        "entitlements": dict(ENTITLEMENTS.get(tier, ENTITLEMENTS["free"])),
        "subscription": subscription.to_dict() if subscription else None,
    }


def apply_subscription(user, subscription):
    """Write vendor-fetched subscription state onto the user row.

    Every field is overwritten from the subscription, so re-applying the
    same subscription (webhook redelivery, webhook racing verify-session)
    leaves the row unchanged.
    """
    ends_at = None
    if subscription.cancel_at_period_end or subscription.status == SubscriptionStatus.CANCELED:
        ends_at = subscription.metadata.get("cancelAt") or subscription.current_period_end

    tier = subscription.tier
    if tier not in TIERS:
        logger.warning(
            f"Subscription {subscription.id} carries no known tier ({tier!r}); "
            f"storing '{DEFAULT_TIER}'"
        )
        tier = DEFAULT_TIER

    return storage_service.update_user_subscription(
        user.id,
        payment_provider=subscription.provider,
        provider_customer_id=subscription.customer_id or user.provider_customer_id,
        provider_subscription_id=subscription.provider_subscription_id,
        subscription_status=subscription.status,
        subscription_tier=tier,
        subscription_current_period_end=subscription.current_period_end,
        subscription_ends_at=ends_at,
    )


def _create_and_store_customer(provider, user):
    has_name = bool(user.first_name or user.last_name)
    result = provider.create_customer(CreateCustomerData(
        email=user.email,
        user_id=user.id,
        name=user.display_name if has_name else None,
    ))
    if not result.success:
        logger.error(f"Customer creation failed for user {user.id}: {result.error}")
        raise UpstreamError(code=result.code)

    customer_id = result.data.provider_id
    storage_service.update_user_provider_info(user.id, provider.name, customer_id)
    return customer_id


def _check_session_ownership(user, session):
    """Reject a session whose customer is not the user's stored customer.

    The stored provider_customer_id was written before checkout was
    created, so the client cannot forge it. A diverging metadata userId
    is only logged while the customer id matches.
    """
    if not user.provider_customer_id or session.customer_id != user.provider_customer_id:
        logger.warning(
            f"Ownership check failed: user {user.id} (customer "
            f"{user.provider_customer_id}) presented session {session.id} "
            f"belonging to customer {session.customer_id}"
        )
        raise OwnershipError()

    metadata_user_id = session.metadata.get("userId")
    if metadata_user_id and metadata_user_id != user.id:
        logger.warning(
            f"Session {session.id} metadata userId {metadata_user_id} differs from "
            f"user {user.id}; customer id matches, continuing"
        )


# ──────────────────────────────────────────────
# Plans & status
# ──────────────────────────────────────────────

def list_plans(market):
    provider = _provider_for_market(market)
    result = provider.get_plans(currency=market.currency)
    if not result.success:
        logger.error(f"Plan listing failed for market {market.id}: {result.error}")
        raise UpstreamError(code=result.code)

    order = {tier: i for i, tier in enumerate(TIERS)}
    intervals = {interval: i for i, interval in enumerate(BillingInterval)}
    plans = sorted(result.data, key=lambda p: (order.get(p.tier, 99), intervals.get(p.interval, 99)))
    return {
        "plans": [plan.to_dict() for plan in plans],
        "market": market.id,
        "currency": market.currency,
        "provider": provider.name,
    }


def get_status(user, now=None):
    """Subscription status + entitlements, with live vendor state when available."""
    subscription = None
    if user.provider_subscription_id and not is_prepaid(user) and user.payment_provider:
        provider = get_payment_manager().get_provider(user.payment_provider)
        if provider is not None:
            result = provider.get_subscription(user.provider_subscription_id)
            if result.success:
                subscription = result.data
            else:
                logger.info(
                    f"Live subscription lookup failed for user {user.id}: {result.code}"
                )
    return status_body(user, subscription, now)


# ──────────────────────────────────────────────
# Hosted checkout
# ──────────────────────────────────────────────

def create_checkout(user, plan_id, market, locale=None):
    """Create a hosted checkout session for plan_id.

    The customer id is stored before the session is created. If the
    vendor rejects the stored customer as belonging to the other key
    mode, exactly one replacement customer is created and stored, and
    checkout is retried once.
    """
    if not plan_id:
        raise InvalidRequestError("planId is required")
    if not user.email:
        raise InvalidRequestError("An email address is required to subscribe")

    provider = _provider_for_market(market)
    _require(provider, Capability.HOSTED_CHECKOUT, "Checkout")

    customer_id = user.provider_customer_id if user.payment_provider == provider.name else None
    if not customer_id:
        customer_id = _create_and_store_customer(provider, user)

    plan_result = provider.get_plan(plan_id)
    metadata = {"market": market.id}
    if plan_result.success:
        price_id = plan_result.data.provider_plan_id
        tier = plan_result.data.tier
    else:
        logger.warning(
            f"Plan lookup for {plan_id} failed ({plan_result.code}); using it as a "
            f"price id with tier '{DEFAULT_TIER}'"
        )
        price_id = plan_id
        tier = DEFAULT_TIER
        metadata["tierSource"] = "fallback"

    base_url = _base_url()
    data = CreateCheckoutData(
        customer_id=customer_id,
        plan_id=plan_id,
        price_id=price_id,
        user_id=user.id,
        success_url=f"{base_url}/subscription/success",
        cancel_url=f"{base_url}/pricing",
        tier=tier,
        trial_days=current_app.config.get("SUBSCRIPTION_TRIAL_DAYS") or None,
        locale=locale or market.locale,
        metadata=metadata,
    )

    result = provider.create_checkout_session(data)
    if not result.success and result.code == ResultCode.CUSTOMER_MODE_MISMATCH:
        logger.warning(
            f"Stored customer {customer_id} for user {user.id} is from another "
            f"key mode; creating a replacement and retrying checkout"
        )
        data = replace(data, customer_id=_create_and_store_customer(provider, user))
        result = provider.create_checkout_session(data)

    if not result.success:
        logger.error(f"Checkout failed for user {user.id} plan {plan_id}: {result.error}")
        raise UpstreamError(code=result.code)

    session = result.data
    logger.info(f"Checkout session {session.id} created for user {user.id} ({tier})")
    return {"sessionId": session.id, "url": session.url, "provider": session.provider}


def verify_checkout_session(user, session_id, market):
    """Reconcile a completed checkout after the user returns from it.

    The session is re-fetched from the vendor. Ownership is checked
    before anything else; then the session must be complete and paid.
    """
    if not session_id:
        raise InvalidRequestError("sessionId is required")

    provider = _provider_for_user(user, market)
    _require(provider, Capability.CHECKOUT_VERIFICATION, "Checkout verification")

    result = provider.retrieve_checkout_session(session_id)
    if not result.success:
        raise NotFoundError("Checkout session not found", code=result.code)
    session = result.data

    _check_session_ownership(user, session)

    if not session.is_paid:
        raise PaymentNotCompletedError(code=ResultCode.PAYMENT_NOT_COMPLETED)
    if not session.subscription_id:
        raise InvalidRequestError("Checkout session has no subscription")

    sub_result = provider.get_subscription(session.subscription_id)
    if not sub_result.success:
        logger.error(
            f"Subscription {session.subscription_id} fetch failed after checkout "
            f"{session_id}: {sub_result.error}"
        )
        raise UpstreamError(code=sub_result.code)
    subscription = sub_result.data

    if subscription.metadata.get("tierSource") == "fallback":
        logger.warning(
            f"Session {session_id}: price {subscription.metadata.get('priceId')} "
            f"is not in the price table, tier stored as fallback '{subscription.tier}'"
        )

    user = apply_subscription(user, subscription)
    logger.info(
        f"Verified checkout {session_id} for user {user.id}: "
        f"{subscription.tier} ({subscription.status.value})"
    )
    return {"success": True, **status_body(user, subscription)}


# ──────────────────────────────────────────────
# Pix (one-time prepaid access)
# ──────────────────────────────────────────────

def create_pix_checkout(user, tier, interval, market):
    if not current_app.config.get("PIX_ENABLED"):
        raise InvalidRequestError("Pix payments are not available", code=ResultCode.NOT_SUPPORTED_BY_PROVIDER)
    if market.currency != PIX_CURRENCY:
        raise InvalidRequestError("Pix payments are only available in Brazil")
    if tier not in TIERS:
        raise InvalidRequestError(f"Invalid tier: {tier}")
    try:
        interval = BillingInterval(interval)
    except ValueError:
        raise InvalidRequestError(f"Invalid interval: {interval}")

    provider = _provider_for_market(market)
    _require(provider, Capability.ONE_TIME_PAYMENT, "Pix payment")

    plan_result = provider.get_plan(make_plan_id(tier, interval, PIX_CURRENCY))
    if not plan_result.success:
        raise NotFoundError("Plan not available", code=plan_result.code)

    base_url = _base_url()
    customer_id = user.provider_customer_id if user.payment_provider == provider.name else None
    result = provider.create_one_time_checkout(OneTimeCheckoutData(
        customer_id=customer_id,
        user_id=user.id,
        tier=tier,
        interval=interval.value,
        amount=plan_result.data.amount,
        success_url=f"{base_url}/subscription/success",
        cancel_url=f"{base_url}/pricing",
        currency=PIX_CURRENCY,
        locale=market.locale,
    ))
    if not result.success:
        logger.error(f"Pix checkout failed for user {user.id}: {result.error}")
        raise UpstreamError(code=result.code)

    checkout = result.data
    logger.info(f"Pix checkout {checkout.id} created for user {user.id} ({tier}/{interval.value})")
    return {
        "sessionId": checkout.id,
        "url": checkout.url,
        "expiresAt": _iso(checkout.expires_at),
        "accessExpiresAt": _iso(checkout.access_expires_at),
    }


def verify_pix(user, session_id, market):
    """Grant prepaid access once a Pix session is paid.

    The session's embedded userId must be the requesting user. Repeat
    calls rewrite the same fields and never add a second history row.
    """
    if not session_id:
        raise InvalidRequestError("sessionId is required")

    provider = _provider_for_market(market)
    _require(provider, Capability.ONE_TIME_PAYMENT, "Pix payment")

    result = provider.verify_one_time_payment(session_id)
    if not result.success:
        if result.code == ResultCode.PAYMENT_NOT_COMPLETED:
            raise PaymentNotCompletedError(code=result.code)
        raise NotFoundError("Payment session not found", code=result.code)
    payment = result.data

    if payment.user_id != user.id:
        logger.warning(
            f"Ownership check failed: user {user.id} presented Pix session "
            f"{session_id} created for user {payment.user_id}"
        )
        raise OwnershipError()

    if payment.tier not in TIERS or payment.access_expires_at is None:
        logger.error(f"Pix session {session_id} is missing tier or access expiry metadata")
        raise InvalidRequestError("Payment session is missing access details")

    expires_at = payment.access_expires_at
    # Sessions paid without an expanded PaymentIntent are keyed by session id
    payment_ref = payment.payment_intent_id or payment.session_id
    user = storage_service.update_user_subscription(
        user.id,
        payment_provider=provider.name,
        provider_subscription_id=f"{PIX_SUBSCRIPTION_PREFIX}{payment_ref}",
        subscription_status=SubscriptionStatus.ACTIVE,
        subscription_tier=payment.tier,
        subscription_current_period_end=expires_at,
        subscription_ends_at=expires_at,
    )

    if payment.payment_intent_id:
        storage_service.record_payment(
            user_id=user.id,
            payment_intent_id=payment.payment_intent_id,
            amount=payment.amount,
            currency=payment.currency,
            status="succeeded",
            payment_method="pix",
            tier=payment.tier,
            interval=payment.interval,
            expires_at=expires_at,
            metadata={"sessionId": payment.session_id},
        )

    logger.info(f"Pix access granted to user {user.id}: {payment.tier} until {expires_at.isoformat()}")
    return {"success": True, "accessExpiresAt": expires_at.isoformat(), **status_body(user)}


# ──────────────────────────────────────────────
# Manage
# ──────────────────────────────────────────────

def create_portal_session(user, market):
    if not user.provider_customer_id:
        raise NotFoundError("No billing account found. Please subscribe first.")

    provider = _provider_for_user(user, market)
    _require(provider, Capability.BILLING_PORTAL, "Billing portal")

    result = provider.get_customer_portal_url(user.provider_customer_id, f"{_base_url()}/account")
    if not result.success:
        logger.error(f"Portal session failed for user {user.id}: {result.error}")
        raise UpstreamError(code=result.code)
    return {"url": result.data}


def _managed_subscription_id(user):
    if not user.provider_subscription_id or is_prepaid(user):
        raise NotFoundError("No active subscription found")
    return user.provider_subscription_id


def _raise_for_management_failure(user, result):
    if result.code == ResultCode.NOT_SUPPORTED_BY_PROVIDER:
        raise InvalidRequestError(
            "This subscription is managed through the app store where it was purchased",
            code=result.code,
        )
    logger.error(f"Subscription change failed for user {user.id}: {result.error}")
    raise UpstreamError(code=result.code)


def cancel_subscription(user, market=None, immediate=False):
    subscription_id = _managed_subscription_id(user)
    provider = _provider_for_user(user, market)

    result = provider.cancel_subscription(subscription_id, immediate=immediate)
    if not result.success:
        _raise_for_management_failure(user, result)

    user = apply_subscription(user, result.data)
    logger.info(f"Subscription {subscription_id} canceled for user {user.id} (immediate={immediate})")
    return status_body(user, result.data)


def resume_subscription(user, market=None):
    subscription_id = _managed_subscription_id(user)
    provider = _provider_for_user(user, market)

    result = provider.resume_subscription(subscription_id)
    if not result.success:
        _raise_for_management_failure(user, result)

    user = apply_subscription(user, result.data)
    logger.info(f"Subscription {subscription_id} resumed for user {user.id}")
    return status_body(user, result.data)


def sync_subscription(user, market=None):
    """Manual resync: re-fetch the customer's subscription from the vendor.

    Repairs any missed webhook or partial write. Prepaid (Pix) access has
    no vendor subscription and is left untouched.
    """
    if not user.provider_customer_id:
        raise NotFoundError("No billing account found. Please subscribe first.")

    provider = _provider_for_user(user, market)
    _require(provider, Capability.SUBSCRIPTION_SYNC, "Subscription sync")

    result = provider.find_customer_subscription(user.provider_customer_id)
    if result.success:
        user = apply_subscription(user, result.data)
        logger.info(f"Synced subscription for user {user.id}: {result.data.tier} ({result.data.status.value})")
        return {"synced": True, **status_body(user, result.data)}

    if result.code not in (ResultCode.NO_SUBSCRIPTIONS_FOUND, ResultCode.SUBSCRIPTION_NOT_FOUND):
        logger.error(f"Subscription sync failed for user {user.id}: {result.error}")
        raise UpstreamError(code=result.code)

    if not is_prepaid(user) and user.provider_subscription_id:
        user = storage_service.update_user_subscription(
            user.id,
            provider_subscription_id=None,
            subscription_status=SubscriptionStatus.INACTIVE,
            subscription_tier="free",
            subscription_current_period_end=None,
            subscription_ends_at=None,
        )
        logger.info(f"No vendor subscription for user {user.id}; cleared local subscription")
    return {"synced": True, **status_body(user)}
