"""Payment provider registry + router.

Responsible for:
- Registering initialized adapters by name (one bad adapter never blocks the rest)
- Routing a market to its configured provider
- Legacy locale/country routing with a default-provider fallback
- Building the app's manager from Flask config at startup

One manager is built per app in create_app() and stored in
app.extensions["payments"]; route handlers read it from there.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from flask import current_app

from scanmyscale.markets import MARKETS, MarketConfig, get_market
from scanmyscale.payments.base import PaymentProvider, ProviderConfig
from scanmyscale.payments.pricing import PriceTable
from scanmyscale.payments.revenuecat_provider import RevenueCatProvider
from scanmyscale.payments.stripe_provider import StripeProvider
from scanmyscale.payments.stub_providers import (
    MercadoPagoProvider,
    PagarmeProvider,
    PagseguroProvider,
)
from scanmyscale.payments.types import PaymentResult, ResultCode

logger = logging.getLogger(__name__)

EXTENSION_KEY = "payments"


@dataclass(frozen=True)
class RoutingRule:
    locale: str
    country: str
    currency: str
    provider: str


DEFAULT_ROUTING_RULES = (
    RoutingRule("en-US", "US", "USD", "stripe"),
    RoutingRule("en", "US", "USD", "stripe"),
    # Legacy locale routing priced Brazil in USD; market routing uses BRL
    RoutingRule("pt-BR", "BR", "USD", "stripe"),
    RoutingRule("pt", "BR", "USD", "stripe"),
)


class PaymentProviderManager:
    def __init__(self, markets=None, routing_rules=DEFAULT_ROUTING_RULES, default_provider="revenuecat"):
        self._providers = {}
        markets = markets if markets is not None else MARKETS
        self._market_providers = {m.id: m.payment_provider for m in markets.values()}
        self._routing_rules = list(routing_rules)
        self._default_provider = default_provider

    # ──────────────────────────────────────────
    # Registration
    # ──────────────────────────────────────────

    def register_provider(self, provider: PaymentProvider, config: ProviderConfig) -> bool:
        """Initialize then store an adapter.

        Returns False (and logs) when initialization fails, leaving every
        other registered provider untouched.
        """
        try:
            provider.initialize(config)
        except Exception as e:
            logger.error(f"Failed to register payment provider '{provider.name}': {e}", exc_info=True)
            return False

        self._providers[provider.name] = provider
        logger.info(f"Registered payment provider '{provider.name}'")
        return True

    def set_routing_rules(self, rules):
        self._routing_rules = list(rules)

    def set_default_provider(self, name):
        self._default_provider = name

    @property
    def default_provider(self):
        return self._default_provider

    # ──────────────────────────────────────────
    # Lookup
    # ──────────────────────────────────────────

    def get_provider(self, name) -> Optional[PaymentProvider]:
        return self._providers.get(name)

    def get_registered_providers(self):
        return list(self._providers)

    def is_provider_registered(self, name) -> bool:
        return name in self._providers

    def get_provider_for_market(self, market) -> PaymentResult:
        """Configured provider for a market (MarketConfig or market id).

        Pure lookup: no fallback beyond the market's own assignment.
        """
        market_id = market.id if isinstance(market, MarketConfig) else market
        provider_name = self._market_providers.get(market_id)
        provider = self._providers.get(provider_name) if provider_name else None
        if provider is None:
            return PaymentResult.fail(
                f"Payment provider '{provider_name}' not found for market '{market_id}'",
                ResultCode.PROVIDER_NOT_FOUND,
            )
        return PaymentResult.ok(provider)

    def get_currency_for_market(self, market) -> str:
        if isinstance(market, MarketConfig):
            return market.currency
        return get_market(market).currency

    def _match_rule(self, locale, country=None):
        if country:
            for rule in self._routing_rules:
                if rule.locale == locale and rule.country == country:
                    return rule
        for rule in self._routing_rules:
            if rule.locale == locale:
                return rule
        return None

    def get_provider_for_locale(self, locale, country=None) -> PaymentResult:
        """Legacy routing: exact locale+country, then locale, then the default provider."""
        rule = self._match_rule(locale, country)
        provider_name = rule.provider if rule else self._default_provider
        provider = self._providers.get(provider_name)
        if provider is None:
            return PaymentResult.fail(
                f"Payment provider '{provider_name}' not found for locale '{locale}'",
                ResultCode.PROVIDER_NOT_FOUND,
            )
        return PaymentResult.ok(provider)

    def get_currency_for_locale(self, locale, country=None) -> str:
        rule = self._match_rule(locale, country)
        return rule.currency if rule else "USD"


# ──────────────────────────────────────────────
# App wiring
# ──────────────────────────────────────────────

def _environment_for_stripe_key(secret_key):
    return "production" if secret_key.startswith("sk_live_") else "sandbox"


def build_payment_manager(config, revenuecat_sleep=None) -> PaymentProviderManager:
    """Build and populate a manager from a Flask config mapping.

    Adapters without credentials are skipped; an adapter that fails to
    initialize is logged and skipped.
    """
    manager = PaymentProviderManager(
        default_provider=config.get("DEFAULT_PAYMENT_PROVIDER") or "revenuecat",
    )
    environment = config.get("PAYMENT_ENVIRONMENT") or "sandbox"

    stripe_key = config.get("STRIPE_SECRET_KEY")
    if stripe_key:
        manager.register_provider(StripeProvider(), ProviderConfig(
            api_key=stripe_key,
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET"),
            environment=_environment_for_stripe_key(stripe_key),
            metadata={"price_table": PriceTable.from_config(config)},
        ))
    else:
        logger.warning("STRIPE_SECRET_KEY not set; Stripe provider disabled")

    revenuecat_key = config.get("REVENUECAT_API_KEY")
    if revenuecat_key:
        provider = RevenueCatProvider(sleep=revenuecat_sleep) if revenuecat_sleep else RevenueCatProvider()
        manager.register_provider(provider, ProviderConfig(
            api_key=revenuecat_key,
            webhook_secret=config.get("REVENUECAT_WEBHOOK_SECRET"),
            environment=environment,
            metadata={
                "base_url": config.get("REVENUECAT_BASE_URL"),
                "timeout": config.get("REVENUECAT_TIMEOUT"),
                "max_retries": config.get("REVENUECAT_MAX_RETRIES", 3),
            },
        ))

    for provider_cls, key in (
        (MercadoPagoProvider, "MERCADOPAGO_ACCESS_TOKEN"),
        (PagarmeProvider, "PAGARME_API_KEY"),
        (PagseguroProvider, "PAGSEGURO_TOKEN"),
    ):
        if config.get(key):
            manager.register_provider(provider_cls(), ProviderConfig(
                api_key=config[key], environment=environment,
            ))

    logger.info(f"Payment providers ready: {', '.join(manager.get_registered_providers()) or 'none'}")
    return manager


def get_payment_manager() -> PaymentProviderManager:
    return current_app.extensions[EXTENSION_KEY]
