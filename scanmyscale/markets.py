"""Market configuration.

Two storefronts share one backend: ScanMyScale (US, USD) and FotoPeso
(Brazil, BRL). Each market names the payment provider that serves it;
PaymentProviderManager routes on that field.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarketConfig:
    id: str
    name: str
    brand_name: str
    domain: str
    locale: str
    language: str
    country: str
    currency: str
    payment_provider: str
    timezone: str
    is_active: bool = True

    def to_dict(self):
        return asdict(self)


MARKETS = {
    "us": MarketConfig(
        id="us",
        name="United States",
        brand_name="ScanMyScale",
        domain="scanmyscale.com",
        locale="en-US",
        language="en",
        country="US",
        currency="USD",
        payment_provider="stripe",
        timezone="America/New_York",
    ),
    "br": MarketConfig(
        id="br",
        name="Brasil",
        brand_name="FotoPeso",
        domain="fotopeso.com.br",
        locale="pt-BR",
        language="pt",
        country="BR",
        currency="BRL",
        payment_provider="stripe",
        timezone="America/Sao_Paulo",
    ),
}

DEFAULT_MARKET_ID = "us"

DOMAIN_TO_MARKET = {
    "scanmyscale.com": "us",
    "www.scanmyscale.com": "us",
    "fotopeso.com.br": "br",
    "www.fotopeso.com.br": "br",
    # Local development
    "localhost": "us",
    "localhost:5000": "us",
    "127.0.0.1:5000": "us",
}


def get_market(market_id) -> MarketConfig:
    """Return the market for an id, falling back to the default market."""
    return MARKETS.get((market_id or "").lower(), MARKETS[DEFAULT_MARKET_ID])


def get_market_by_domain(host) -> Optional[MarketConfig]:
    if not host:
        return None
    host = host.strip().lower()
    market_id = DOMAIN_TO_MARKET.get(host) or DOMAIN_TO_MARKET.get(host.split(":")[0])
    return MARKETS.get(market_id) if market_id else None


def resolve_market(request) -> MarketConfig:
    """Resolve the market for an incoming request.

    Order:
        1. ?m=br|us override (testing / shared links)
        2. X-Forwarded-Host (first entry) or Host, looked up by domain
        3. A fotopeso host or Referer
        4. Accept-Language mentioning Portuguese / Brazil
        5. Default market
    """
    override = (request.args.get("m") or "").lower()
    if override in MARKETS:
        return MARKETS[override]

    forwarded = request.headers.get("X-Forwarded-Host", "")
    host = forwarded.split(",")[0].strip() if forwarded else request.headers.get("Host", "")
    market = get_market_by_domain(host)
    if market is not None:
        return market

    referer = request.headers.get("Referer", "")
    if "fotopeso" in host.lower() or "fotopeso" in referer.lower():
        return MARKETS["br"]

    accept_language = request.headers.get("Accept-Language", "")
    if "pt" in accept_language.lower() or "BR" in accept_language:
        return MARKETS["br"]

    return MARKETS[DEFAULT_MARKET_ID]
