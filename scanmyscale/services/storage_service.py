"""Storage service — user + payment history persistence.

Responsible for:
- User lookups (by id, email, provider customer id)
- Writing provider identity and denormalized subscription fields
- Insert-once payment history rows

Every write is a single-row change committed immediately, so callers can
treat each function as one atomic upsert.
"""

import logging
from enum import Enum

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from scanmyscale.extensions import db
from scanmyscale.models.payment_history import PaymentHistory
from scanmyscale.models.user import User

logger = logging.getLogger(__name__)

SUBSCRIPTION_FIELDS = frozenset({
    "payment_provider",
    "provider_customer_id",
    "provider_subscription_id",
    "provider_metadata",
    "subscription_status",
    "subscription_tier",
    "subscription_current_period_end",
    "subscription_ends_at",
})


def get_user(user_id):
    if not user_id:
        return None
    return db.session.get(User, user_id)


def get_user_by_email(email):
    if not email:
        return None
    return User.query.filter(func.lower(User.email) == email.strip().lower()).first()


def get_user_by_provider_customer_id(customer_id):
    if not customer_id:
        return None
    return User.query.filter_by(provider_customer_id=customer_id).first()


def update_user_provider_info(user_id, provider, customer_id,
                              subscription_id=None, metadata=None):
    """Store which provider/customer a user pays through.

    Called before a checkout session is created, so the stored customer id
    can later prove the session belongs to this user.
    """
    user = get_user(user_id)
    if user is None:
        raise ValueError(f"User {user_id} not found")

    user.payment_provider = provider
    user.provider_customer_id = customer_id
    if subscription_id is not None:
        user.provider_subscription_id = subscription_id
    if metadata:
        user.provider_metadata = {**(user.provider_metadata or {}), **metadata}

    db.session.commit()
    logger.info(f"Stored {provider} customer {customer_id} for user {user_id}")
    return user


def update_user_subscription(user_id, **fields):
    """Write exactly the subscription fields passed (None clears a field).

    Last write wins: callers always pass vendor-fetched values, so applying
    the same update twice leaves the row unchanged.
    """
    unknown = set(fields) - SUBSCRIPTION_FIELDS
    if unknown:
        raise ValueError(f"Unknown subscription fields: {', '.join(sorted(unknown))}")

    user = get_user(user_id)
    if user is None:
        raise ValueError(f"User {user_id} not found")

    for name, value in fields.items():
        if isinstance(value, Enum):
            value = value.value
        setattr(user, name, value)

    db.session.commit()
    logger.info(
        f"Updated subscription for user {user_id}: "
        f"tier={user.subscription_tier} status={user.subscription_status}"
    )
    return user


def record_payment(user_id, payment_intent_id, amount, currency, status,
                   payment_method, tier=None, interval=None, expires_at=None,
                   invoice_id=None, metadata=None):
    """Insert a payment_history row once per PaymentIntent.

    Returns (row, created). A repeat call for the same payment_intent_id
    returns the existing row with created=False.
    """
    existing = PaymentHistory.query.filter_by(payment_intent_id=payment_intent_id).first()
    if existing:
        return existing, False

    row = PaymentHistory(
        user_id=user_id,
        payment_intent_id=payment_intent_id,
        invoice_id=invoice_id,
        amount=amount or 0,
        currency=(currency or "BRL").upper(),
        status=status,
        payment_method=payment_method,
        tier=tier,
        interval=interval,
        expires_at=expires_at,
        metadata_=metadata or {},
    )
    db.session.add(row)
    try:
        db.session.commit()
    except IntegrityError:
        # Concurrent verify for the same intent won the insert
        db.session.rollback()
        return PaymentHistory.query.filter_by(payment_intent_id=payment_intent_id).first(), False

    logger.info(f"Recorded {payment_method} payment {payment_intent_id} for user {user_id}")
    return row, True
