"""Webhooks blueprint — /api/webhooks/*

Receives Stripe and RevenueCat webhook events. CSRF-exempt.
The raw body is read with request.get_data() and verified before it is
parsed; Stripe signatures cover the exact bytes sent.
"""

import json
import logging

from flask import Blueprint, current_app, jsonify, request

from scanmyscale.payments.manager import get_payment_manager
from scanmyscale.payments.types import ProviderName
from scanmyscale.services.webhook_service import handle_webhook_event

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")


def _ingest(provider, payload, signature):
    """Parse, shape-check and process an already-verified body."""
    try:
        body = json.loads(payload)
    except ValueError:
        logger.warning(f"{provider.name} webhook body is not valid JSON")
        return jsonify({"error": "Invalid payload"}), 400

    if not provider.is_webhook_event(body):
        logger.warning(f"{provider.name} webhook has an unexpected shape")
        return jsonify({"error": "Invalid webhook format"}), 400

    event = provider.to_webhook_event(body, signature)
    success, message = handle_webhook_event(provider, event)

    if success:
        return jsonify({"status": message}), 200
    else:
        logger.error(f"{provider.name} webhook processing failed: {message}")
        return jsonify({"error": message}), 500


@webhooks_bp.route("/stripe", methods=["POST"])
def stripe_webhook():
    """Receive and process Stripe webhook events.

    1. Get raw body (required for signature verification)
    2. Verify signature with STRIPE_WEBHOOK_SECRET
    3. Process (idempotent via webhook_events table)
    4. Return 200 to acknowledge receipt; non-2xx makes Stripe retry
    """
    payload = request.get_data()
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("Webhook received without Stripe-Signature header")
        return jsonify({"error": "Missing signature"}), 400

    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    provider = get_payment_manager().get_provider(ProviderName.STRIPE.value)
    if provider is None or not secret:
        logger.error("Stripe webhook received but Stripe is not configured")
        return jsonify({"error": "Webhook not configured"}), 500

    # --- Verify signature ---
    if not provider.verify_webhook(payload, sig_header, secret):
        return jsonify({"error": "Invalid signature"}), 400

    return _ingest(provider, payload, sig_header)


@webhooks_bp.route("/revenuecat", methods=["POST"])
def revenuecat_webhook():
    """Receive RevenueCat events, authenticated by a shared-secret Authorization header."""
    payload = request.get_data()
    auth_header = request.headers.get("Authorization")

    secret = current_app.config.get("REVENUECAT_WEBHOOK_SECRET")
    provider = get_payment_manager().get_provider(ProviderName.REVENUECAT.value)
    if provider is None or not secret:
        logger.error("RevenueCat webhook received but RevenueCat is not configured")
        return jsonify({"error": "Webhook not configured"}), 500

    if not provider.verify_webhook(payload, auth_header, secret):
        logger.warning("RevenueCat webhook failed authorization")
        return jsonify({"error": "Unauthorized"}), 401

    return _ingest(provider, payload, auth_header)
