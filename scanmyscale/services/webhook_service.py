"""Webhook service — applies verified vendor events to user subscriptions.

Responsible for:
- Idempotency via the webhook_events table
- Handing events to the provider adapter for normalization
- Finding the user by stored provider customer id (never by email)
- Applying subscription / invoice changes as idempotent upserts

Signature verification happens in the webhooks blueprint, against the raw
body, before anything here runs.
"""

import logging

from sqlalchemy.exc import IntegrityError

from scanmyscale.extensions import db
from scanmyscale.models.webhook_event import WebhookEvent as WebhookEventRecord
from scanmyscale.payments.types import (
    ProviderName,
    ResultCode,
    SubscriptionStatus,
    WebhookEventType,
)
from scanmyscale.services import storage_service
from scanmyscale.services.subscription_service import apply_subscription

logger = logging.getLogger(__name__)


def is_duplicate(provider_name, event_id):
    if not event_id:
        return False
    return WebhookEventRecord.query.filter_by(
        provider=provider_name, event_id=event_id
    ).first() is not None


def _record_event(provider_name, event):
    if not event.id:
        return
    db.session.add(WebhookEventRecord(
        provider=provider_name,
        event_id=event.id,
        event_type=event.type,
    ))
    try:
        db.session.commit()
    except IntegrityError:
        # A concurrent delivery of the same event recorded it first
        db.session.rollback()
        logger.info(f"Webhook event {provider_name}:{event.id} already recorded")


def handle_webhook_event(provider, event):
    """Process a verified, normalized-shape webhook event.

    Returns (success: bool, message: str). A False result makes the route
    answer 500 so the vendor redelivers; redelivery is safe because
    processed events are skipped and every write is an overwrite.
    """
    if is_duplicate(provider.name, event.id):
        logger.info(f"Duplicate {provider.name} webhook event {event.id}, skipping")
        return True, "already_processed"

    result = provider.process_webhook(event)
    if not result.success:
        if result.code == ResultCode.UNSUPPORTED_EVENT_TYPE:
            logger.info(f"Ignoring {provider.name} event {event.id} ({event.type})")
            _record_event(provider.name, event)
            return True, "ignored"
        logger.error(f"{provider.name} webhook {event.id} ({event.type}) failed: {result.error}")
        return False, "processing_failed"

    try:
        _apply(provider, result.data)
    except Exception as e:
        logger.error(f"Error applying {provider.name} event {event.type}: {e}", exc_info=True)
        db.session.rollback()
        return False, "processing_failed"

    _record_event(provider.name, event)
    return True, "processed"


# ──────────────────────────────────────────────
# Application
# ──────────────────────────────────────────────

def _find_user(provider, processing):
    customer_id = processing.customer_id
    user = storage_service.get_user_by_provider_customer_id(customer_id)
    if user is None and provider.name == ProviderName.REVENUECAT.value:
        # RevenueCat's app_user_id is our own user id
        user = storage_service.get_user(customer_id)
    return user


def _is_current_subscription(user, processing):
    subscription_id = processing.changes.get("subscriptionId")
    return not subscription_id or subscription_id == user.provider_subscription_id


def _apply(provider, processing):
    event_type = processing.type
    user = _find_user(provider, processing)
    if user is None:
        logger.warning(
            f"{provider.name} {event_type.value}: no user for customer {processing.customer_id}"
        )
        return

    if processing.subscription is not None:
        apply_subscription(user, processing.subscription)
        logger.info(
            f"Applied {event_type.value} for user {user.id}: "
            f"{processing.subscription.tier} ({processing.subscription.status.value})"
        )
        return

    if event_type == WebhookEventType.PAYMENT_FAILED:
        if _is_current_subscription(user, processing) and user.subscription_status != SubscriptionStatus.PAST_DUE.value:
            storage_service.update_user_subscription(user.id, subscription_status=SubscriptionStatus.PAST_DUE)
            logger.info(f"User {user.id} moved to past_due after failed payment")
        return

    if event_type == WebhookEventType.PAYMENT_SUCCEEDED:
        if _is_current_subscription(user, processing) and user.subscription_status == SubscriptionStatus.PAST_DUE.value:
            storage_service.update_user_subscription(user.id, subscription_status=SubscriptionStatus.ACTIVE)
            logger.info(f"User {user.id} restored to active after successful payment")
        return

    if event_type == WebhookEventType.CUSTOMER_UPDATED:
        logger.info(f"{provider.name} customer {processing.customer_id} updated for user {user.id}")
        return

    logger.info(
        f"{provider.name} {event_type.value} for user {user.id} carried no subscription; nothing to apply"
    )
