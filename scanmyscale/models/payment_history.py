"""Payment history model.

Audit trail for one-time (Pix) purchases. One row per PaymentIntent;
payment_intent_id is unique so re-verifying a session never double-inserts.
"""

import uuid

from scanmyscale.extensions import db


class PaymentHistory(db.Model):
    __tablename__ = "payment_history"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    payment_intent_id = db.Column(db.String(255), unique=True, nullable=False)
    invoice_id = db.Column(db.String(255), nullable=True)
    amount = db.Column(db.Integer, nullable=False)  # minor units (centavos)
    currency = db.Column(db.String(3), nullable=False, default="BRL")
    status = db.Column(db.String(20), nullable=False)  # succeeded | failed | pending
    payment_method = db.Column(db.String(20), nullable=False)  # pix | card
    tier = db.Column(db.String(20), nullable=True)
    interval = db.Column(db.String(20), nullable=True)  # month | semiannual | year
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # named metadata_ to avoid the SQLAlchemy declarative attribute clash
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="payments")

    def __repr__(self):
        return f"<PaymentHistory {self.payment_intent_id} {self.status}>"
