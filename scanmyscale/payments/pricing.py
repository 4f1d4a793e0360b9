"""Price table and plan catalog metadata.

Responsible for:
- The 18 configured Stripe price slots (tier x interval x currency)
- Mapping a Stripe price ID back to its tier (exact match only)
- Plan IDs, display names and feature lists
- Calendar-month access expiry for one-time purchases
"""

from dataclasses import dataclass

from dateutil.relativedelta import relativedelta

from scanmyscale.payments.types import TIERS, BillingInterval

CURRENCIES = ("USD", "BRL")

# Config key suffixes, e.g. STRIPE_PRICE_PRO_BRL_SEMESTR
INTERVAL_SUFFIXES = {
    BillingInterval.MONTH: "",
    BillingInterval.SEMIANNUAL: "_SEMESTR",
    BillingInterval.YEAR: "_ANUAL",
}
CURRENCY_SUFFIXES = {"USD": "", "BRL": "_BRL"}

INTERVAL_MONTHS = {
    BillingInterval.MONTH: 1,
    BillingInterval.SEMIANNUAL: 6,
    BillingInterval.YEAR: 12,
}

BRAND_BY_CURRENCY = {"USD": "ScanMyScale", "BRL": "FotoPeso"}
TIER_LABELS = {
    "USD": {"starter": "Starter", "premium": "Premium", "pro": "Pro"},
    "BRL": {"starter": "Básico", "premium": "Premium", "pro": "Pro"},
}

PLAN_FEATURES = {
    "starter": [
        "Unlimited weight scans",
        "30-day history",
        "Basic progress charts",
        "Email support",
    ],
    "premium": [
        "Everything in Starter",
        "Unlimited history",
        "Advanced analytics",
        "Goal tracking & trends",
        "Data export (CSV/PDF)",
        "Priority support",
    ],
    "pro": [
        "Everything in Premium",
        "AI insights & recommendations",
        "Social sharing features",
        "Custom progress images",
        "Advanced integrations",
        "24/7 priority support",
    ],
}


@dataclass(frozen=True)
class PriceSlot:
    tier: str
    interval: BillingInterval
    currency: str

    @property
    def config_key(self):
        return (
            f"STRIPE_PRICE_{self.tier.upper()}"
            f"{CURRENCY_SUFFIXES[self.currency]}"
            f"{INTERVAL_SUFFIXES[self.interval]}"
        )

    @property
    def plan_id(self):
        return make_plan_id(self.tier, self.interval, self.currency)


PRICE_SLOTS = tuple(
    PriceSlot(tier, interval, currency)
    for currency in CURRENCIES
    for tier in TIERS
    for interval in BillingInterval
)


def make_plan_id(tier, interval, currency):
    interval = BillingInterval(interval)
    return f"{tier}_{interval.value}_{currency.lower()}"


def plan_name(tier, currency):
    brand = BRAND_BY_CURRENCY.get(currency, BRAND_BY_CURRENCY["USD"])
    labels = TIER_LABELS.get(currency, TIER_LABELS["USD"])
    return f"{brand} {labels.get(tier, tier.title())}"


def compute_access_expiry(start, interval):
    """Return start + 1/6/12 calendar months for the purchased interval.

    Month-end dates clamp to the last day of the target month
    (Jan 31 + 1 month -> Feb 28/29).
    """
    months = INTERVAL_MONTHS[BillingInterval(interval)]
    return start + relativedelta(months=months)


class PriceTable:
    """Configured Stripe price IDs, keyed by PriceSlot.

    Lookups are exact-match; an unknown price ID resolves to None so the
    caller can decide (and log) the fallback.
    """

    def __init__(self, price_ids=None):
        self._by_slot = {
            slot: price_id for slot, price_id in (price_ids or {}).items() if price_id
        }
        self._by_price = {price_id: slot for slot, price_id in self._by_slot.items()}
        self._by_plan = {slot.plan_id: slot for slot in self._by_slot}

    @classmethod
    def from_config(cls, config):
        """Build from a mapping holding STRIPE_PRICE_* keys (Flask config)."""
        return cls({slot: config.get(slot.config_key) for slot in PRICE_SLOTS})

    def __len__(self):
        return len(self._by_slot)

    def items(self):
        return list(self._by_slot.items())

    def price_id(self, tier, interval, currency):
        return self._by_slot.get(PriceSlot(tier, BillingInterval(interval), currency.upper()))

    def slot_for_price(self, price_id):
        return self._by_price.get(price_id)

    def slot_for_plan(self, plan_id):
        return self._by_plan.get(plan_id)

    def tier_for_price(self, price_id):
        slot = self._by_price.get(price_id)
        return slot.tier if slot else None
