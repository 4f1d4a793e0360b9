"""User model.

Holds profile info plus the denormalized subscription fields read by
entitlement checks. Vendor state stays the source of truth; these columns
are a cache refreshed from webhooks, session verification and manual sync.
Flask-Login integration via UserMixin.
"""

import uuid

from flask_login import UserMixin

from scanmyscale.extensions import db


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=True)
    first_name = db.Column(db.String(255))
    last_name = db.Column(db.String(255))
    locale = db.Column(db.String(10), default="en")

    # --- Subscription (denormalized) ---
    subscription_tier = db.Column(
        db.String(20), nullable=False, default="free"
    )  # free | starter | premium | pro | admin
    subscription_status = db.Column(
        db.String(20), nullable=False, default="inactive"
    )  # active | inactive | canceled | past_due | pending | trialing | paused
    payment_provider = db.Column(db.String(20), nullable=True)
    provider_customer_id = db.Column(db.String(255), nullable=True, index=True)
    provider_subscription_id = db.Column(db.String(255), nullable=True, index=True)
    provider_metadata = db.Column(db.JSON, default=dict)
    subscription_current_period_end = db.Column(
        db.DateTime(timezone=True), nullable=True
    )
    subscription_ends_at = db.Column(
        db.DateTime(timezone=True), nullable=True
    )

    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    payments = db.relationship(
        "PaymentHistory", back_populates="user", lazy="dynamic"
    )

    @property
    def display_name(self):
        full_name = " ".join(p for p in (self.first_name, self.last_name) if p)
        return full_name or self.email

    def __repr__(self):
        return f"<User {self.email}>"
