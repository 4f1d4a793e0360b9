"""Placeholder adapters for Brazilian gateways (MercadoPago, Pagar.me, PagSeguro).

They register and route like real providers so market config can point at
them, but every operation fails with NOT_IMPLEMENTED and webhooks never
verify.
"""

import logging

from scanmyscale.payments.base import PaymentProvider
from scanmyscale.payments.types import PaymentResult, ProviderName, ResultCode, WebhookEvent

logger = logging.getLogger(__name__)


class GatewayStubProvider(PaymentProvider):
    display_name = ""

    def __init__(self):
        self.api_key = None
        self.environment = "sandbox"

    def initialize(self, config):
        if not config.api_key:
            raise ValueError(f"{self.display_name} credentials are required")
        self.api_key = config.api_key
        self.environment = config.environment
        logger.info(f"{self.display_name} provider initialized (stub)")

    def _not_implemented(self, operation):
        return PaymentResult.fail(
            f"{self.display_name} {operation} not yet implemented",
            ResultCode.NOT_IMPLEMENTED,
        )

    def create_customer(self, data):
        return self._not_implemented("customer creation")

    def get_customer(self, customer_id):
        return self._not_implemented("customer retrieval")

    def update_customer(self, customer_id, updates):
        return self._not_implemented("customer update")

    def create_checkout_session(self, data):
        return self._not_implemented("checkout")

    def get_subscription(self, subscription_id):
        return self._not_implemented("subscription retrieval")

    def cancel_subscription(self, subscription_id, immediate=False):
        return self._not_implemented("subscription cancellation")

    def resume_subscription(self, subscription_id):
        return self._not_implemented("subscription resume")

    def change_subscription_plan(self, subscription_id, new_plan_id):
        return self._not_implemented("plan change")

    def get_plans(self, currency=None):
        return self._not_implemented("plan listing")

    def get_plan(self, plan_id):
        return self._not_implemented("plan retrieval")

    def verify_webhook(self, payload, signature, secret=None):
        return False

    def is_webhook_event(self, payload):
        return False

    def to_webhook_event(self, payload, signature=None):
        return WebhookEvent(
            id=str(payload.get("id", "")),
            provider=self.name,
            type=str(payload.get("type", "")),
            data=payload,
            signature=signature,
        )

    def process_webhook(self, event):
        return self._not_implemented("webhook processing")


class MercadoPagoProvider(GatewayStubProvider):
    name = ProviderName.MERCADOPAGO.value
    display_name = "MercadoPago"
    supported_currencies = ("BRL", "ARS", "USD")
    supported_countries = ("BR", "AR", "MX", "CO", "CL", "PE")


class PagarmeProvider(GatewayStubProvider):
    name = ProviderName.PAGARME.value
    display_name = "Pagar.me"
    supported_currencies = ("BRL",)
    supported_countries = ("BR",)


class PagseguroProvider(GatewayStubProvider):
    name = ProviderName.PAGSEGURO.value
    display_name = "PagSeguro"
    supported_currencies = ("BRL",)
    supported_countries = ("BR",)
