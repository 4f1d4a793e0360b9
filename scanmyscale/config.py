import os

from scanmyscale.payments.pricing import PRICE_SLOTS


def _flag(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:5000")

    # --- Stripe ---
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_PUBLISHABLE_KEY = os.environ.get("STRIPE_PUBLISHABLE_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")

    # --- RevenueCat ---
    REVENUECAT_API_KEY = os.environ.get("REVENUECAT_API_KEY")
    REVENUECAT_WEBHOOK_SECRET = os.environ.get("REVENUECAT_WEBHOOK_SECRET")
    REVENUECAT_BASE_URL = os.environ.get("REVENUECAT_BASE_URL", "https://api.revenuecat.com")
    REVENUECAT_TIMEOUT = float(os.environ.get("REVENUECAT_TIMEOUT", 30))
    REVENUECAT_MAX_RETRIES = int(os.environ.get("REVENUECAT_MAX_RETRIES", 3))

    # --- Brazilian gateways (stub adapters, registered only when set) ---
    MERCADOPAGO_ACCESS_TOKEN = os.environ.get("MERCADOPAGO_ACCESS_TOKEN")
    PAGARME_API_KEY = os.environ.get("PAGARME_API_KEY")
    PAGSEGURO_TOKEN = os.environ.get("PAGSEGURO_TOKEN")

    # --- Routing ---
    DEFAULT_PAYMENT_PROVIDER = os.environ.get("DEFAULT_PAYMENT_PROVIDER", "revenuecat")
    PAYMENT_ENVIRONMENT = os.environ.get("PAYMENT_ENVIRONMENT", "sandbox")
    SUBSCRIPTION_TRIAL_DAYS = int(os.environ.get("SUBSCRIPTION_TRIAL_DAYS", 0))
    PIX_ENABLED = _flag("PIX_ENABLED", "true")

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Session / cookies ---
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    REMEMBER_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_SAMESITE = "Lax"

    # --- WTF / CSRF ---
    WTF_CSRF_ENABLED = True

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
            "APP_BASE_URL",
        ]
        if os.environ.get("REVENUECAT_API_KEY"):
            required.append("REVENUECAT_WEBHOOK_SECRET")
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


# STRIPE_PRICE_{TIER}[_BRL][_SEMESTR|_ANUAL]: 18 price IDs
for _slot in PRICE_SLOTS:
    setattr(Config, _slot.config_key, os.environ.get(_slot.config_key))


class DevConfig(Config):
    """Local development."""

    DEBUG = True
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False


class TestConfig(Config):
    """Testing — in-memory SQLite, CSRF disabled, fake vendor credentials."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    STRIPE_PUBLISHABLE_KEY = "pk_test_fake"
    REVENUECAT_API_KEY = "rc_test_fake"
    REVENUECAT_WEBHOOK_SECRET = "rc_webhook_test_secret"
    REVENUECAT_BASE_URL = "https://api.revenuecat.test"
    MERCADOPAGO_ACCESS_TOKEN = None
    PAGARME_API_KEY = None
    PAGSEGURO_TOKEN = None
    APP_BASE_URL = "http://localhost:5000"
    PIX_ENABLED = True
    SUBSCRIPTION_TRIAL_DAYS = 0
    WTF_CSRF_ENABLED = False  # disable CSRF for test requests
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


# Deterministic fake price IDs, e.g. price_pro_brl_year_test
for _slot in PRICE_SLOTS:
    setattr(
        TestConfig,
        _slot.config_key,
        f"price_{_slot.tier}_{_slot.currency.lower()}_{_slot.interval.value}_test",
    )


class ProdConfig(Config):
    """Production."""

    DEBUG = False
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
