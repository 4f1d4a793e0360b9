"""Webhook event model (idempotency table).

Every processed webhook is recorded by (provider, event_id). Before
processing, the handler checks this table; a hit returns 200 immediately so
vendor retries never double-apply an event.
"""

import uuid

from scanmyscale.extensions import db


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"
    __table_args__ = (
        db.UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
    )

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    provider = db.Column(db.String(20), nullable=False)  # stripe | revenuecat
    event_id = db.Column(db.String(255), nullable=False)  # e.g. "evt_1Abc..."
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "customer.subscription.updated"
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<WebhookEvent {self.provider}:{self.event_id} ({self.event_type})>"
