import os
import logging

import click
from flask import Flask, jsonify
from flask_wtf.csrf import CSRFError

from scanmyscale.config import config_by_name
from scanmyscale.extensions import db, migrate, login_manager, csrf, limiter
from scanmyscale.payments.manager import EXTENSION_KEY, build_payment_manager


def create_app(config_name=None, payment_manager=None):
    """Application factory.

    `payment_manager` replaces the manager built from config (tests inject
    one with mock adapters).
    """

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from scanmyscale import models  # noqa: F401

    # --- Payment providers ---
    if payment_manager is None:
        payment_manager = build_payment_manager(app.config)
    app.extensions[EXTENSION_KEY] = payment_manager

    # --- Market middleware ---
    from scanmyscale.middleware.market import init_market_middleware
    init_market_middleware(app)

    # --- Register blueprints ---
    from scanmyscale.blueprints.subscription import subscription_bp
    from scanmyscale.blueprints.webhooks import webhooks_bp

    app.register_blueprint(subscription_bp)
    app.register_blueprint(webhooks_bp)

    # Exempt webhooks from CSRF; signature verification needs the raw body
    csrf.exempt(webhooks_bp)

    # --- Error handlers ---
    @app.errorhandler(CSRFError)
    def csrf_failed(e):
        app.logger.warning(f"CSRF failed: {e.description}")
        return jsonify({"error": e.description, "code": "CSRF_FAILED"}), 400

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": "Too many requests. Please slow down."}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Something went wrong. Please try again."}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("verify-stripe-prices")
    def verify_stripe_prices():
        """Verify the 18 configured Stripe price IDs exist and match their slot.

        Checks key mode (Live/Test) against each price's livemode, and the
        price's currency and recurring interval against the config key.
        Run with prod env vars to confirm Live prices; run with test vars for Test mode.
        """
        import stripe as _stripe

        from scanmyscale.payments.pricing import INTERVAL_MONTHS, PRICE_SLOTS

        api_key = app.config.get("STRIPE_SECRET_KEY")
        if not api_key:
            click.echo("ERROR: STRIPE_SECRET_KEY is not set.")
            return
        key_mode = "Live" if api_key.startswith("sk_live_") else "Test"
        click.echo(f"Stripe key mode: {key_mode}")
        click.echo("")

        problems = 0
        for slot in PRICE_SLOTS:
            price_id = app.config.get(slot.config_key)
            if not price_id:
                click.echo(f"  {slot.config_key}: (not set)")
                problems += 1
                continue
            try:
                price = _stripe.Price.retrieve(price_id, api_key=api_key, expand=["product"])
            except _stripe.InvalidRequestError as e:
                click.echo(f"  {slot.config_key}: {price_id}")
                click.echo(f"    ERROR: {e}")
                problems += 1
                continue

            livemode = getattr(price, "livemode", "?")
            currency = (getattr(price, "currency", None) or "").upper()
            recurring = getattr(price, "recurring", None)
            months = 0
            if recurring is not None:
                count = getattr(recurring, "interval_count", 1) or 1
                months = count * (12 if getattr(recurring, "interval", None) == "year" else 1)
            product = getattr(price, "product", None)
            product_active = "?" if isinstance(product, str) else getattr(product, "active", "?")

            click.echo(f"  {slot.config_key}: {price_id}")
            click.echo(
                f"    livemode={livemode}, active={getattr(price, 'active', '?')}, "
                f"product_active={product_active}, currency={currency}, months={months}"
            )
            if livemode is True and key_mode != "Live":
                click.echo("    WARNING: This price is Live but your key is Test.")
                problems += 1
            elif livemode is False and key_mode == "Live":
                click.echo("    WARNING: This price is Test but your key is Live.")
                problems += 1
            if currency != slot.currency:
                click.echo(f"    WARNING: Expected currency {slot.currency}.")
                problems += 1
            if months != INTERVAL_MONTHS[slot.interval]:
                click.echo(f"    WARNING: Expected a {slot.interval.value} price.")
                problems += 1

        click.echo("")
        click.echo(f"{problems} problem(s) found." if problems else "All prices look good.")

    @app.cli.command("payment-providers")
    def payment_providers():
        """List registered payment providers, their capabilities and market routing."""
        from scanmyscale.markets import MARKETS

        manager = app.extensions[EXTENSION_KEY]
        click.echo(f"Default provider: {manager.default_provider}")
        click.echo("")
        for name in manager.get_registered_providers():
            provider = manager.get_provider(name)
            capabilities = ", ".join(sorted(c.value for c in provider.capabilities)) or "none"
            click.echo(f"  {name}: currencies={','.join(provider.supported_currencies)} capabilities={capabilities}")
        click.echo("")
        for market in MARKETS.values():
            result = manager.get_provider_for_market(market)
            routed = result.data.name if result.success else f"UNAVAILABLE ({result.error})"
            click.echo(f"  market {market.id} ({market.domain}, {market.currency}) -> {routed}")

    @app.cli.command("sync-subscription")
    @click.option("--email", required=True, help="Email of the user to resync")
    def sync_subscription(email):
        """Re-fetch a user's subscription from the vendor and store it.

        Usage:
            flask sync-subscription --email someone@example.com
        """
        from scanmyscale.errors import BillingError
        from scanmyscale.services import storage_service, subscription_service

        user = storage_service.get_user_by_email(email)
        if user is None:
            click.echo(f"No user with email {email}")
            return

        try:
            result = subscription_service.sync_subscription(user)
        except BillingError as e:
            click.echo(f"Sync failed: {e.message}")
            return

        click.echo(f"Synced {email}: tier={result['tier']} status={result['status']}")
