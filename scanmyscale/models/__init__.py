# Models package: import all models here so Alembic can discover them.

from scanmyscale.models.user import User  # noqa: F401
from scanmyscale.models.payment_history import PaymentHistory  # noqa: F401
from scanmyscale.models.webhook_event import WebhookEvent  # noqa: F401
