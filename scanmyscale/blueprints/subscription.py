"""Subscription blueprint — /api/*

JSON API for plans, checkout and subscription management. The market
comes from g.market (set by the market middleware).

Routes:
- GET  /api/csrf-token                    — token to send as X-CSRFToken on POSTs
- GET  /api/plans                         — plans for the resolved market (public)
- GET  /api/subscription/status           — tier, status, entitlements
- POST /api/subscription/checkout         — hosted checkout session for a planId
- POST /api/subscription/verify-session   — reconcile a completed checkout
- POST /api/subscription/pix-checkout     — Pix one-time checkout (BRL only)
- POST /api/subscription/verify-pix       — grant prepaid access after Pix payment
- POST /api/subscription/portal           — vendor-hosted billing portal URL
- POST /api/subscription/cancel           — cancel (at period end unless immediate)
- POST /api/subscription/resume           — undo a scheduled cancellation
- POST /api/subscription/sync             — manual resync from the vendor
"""

import logging

from flask import Blueprint, g, jsonify, request
from flask_login import current_user, login_required
from flask_wtf.csrf import generate_csrf

from scanmyscale.errors import BillingError, PaymentProviderError
from scanmyscale.extensions import limiter
from scanmyscale.services import subscription_service

logger = logging.getLogger(__name__)

subscription_bp = Blueprint("subscription", __name__, url_prefix="/api")

GENERIC_ERROR = "Something went wrong. Please try again."


def _body():
    return request.get_json(silent=True) or {}


@subscription_bp.errorhandler(BillingError)
def handle_billing_error(e):
    return jsonify(e.to_dict()), e.status_code


@subscription_bp.errorhandler(PaymentProviderError)
def handle_provider_error(e):
    logger.error(f"Payment provider error on {request.path}: {e}", exc_info=True)
    return jsonify({"error": GENERIC_ERROR}), 500


# ──────────────────────────────────────────────
# CSRF
# ──────────────────────────────────────────────

@subscription_bp.route("/csrf-token")
def csrf_token():
    """Session-bound CSRF token. POST routes expect it in the X-CSRFToken header."""
    return jsonify({"csrfToken": generate_csrf()}), 200


# ──────────────────────────────────────────────
# Plans & status
# ──────────────────────────────────────────────

@subscription_bp.route("/plans")
def plans():
    return jsonify(subscription_service.list_plans(g.market)), 200


@subscription_bp.route("/subscription/status")
@login_required
def status():
    return jsonify(subscription_service.get_status(current_user)), 200


# ──────────────────────────────────────────────
# Hosted checkout
# ──────────────────────────────────────────────

@subscription_bp.route("/subscription/checkout", methods=["POST"])
@login_required
@limiter.limit("10 per minute", methods=["POST"])
def checkout():
    """Create a checkout session. Body: {"planId": ..., "locale": optional}."""
    data = _body()
    result = subscription_service.create_checkout(
        current_user,
        plan_id=data.get("planId"),
        market=g.market,
        locale=data.get("locale"),
    )
    return jsonify(result), 200


@subscription_bp.route("/subscription/verify-session", methods=["POST"])
@login_required
def verify_session():
    """Body: {"sessionId": ...}. The session is re-fetched from the vendor."""
    data = _body()
    result = subscription_service.verify_checkout_session(
        current_user, data.get("sessionId"), g.market,
    )
    return jsonify(result), 200


# ──────────────────────────────────────────────
# Pix
# ──────────────────────────────────────────────

@subscription_bp.route("/subscription/pix-checkout", methods=["POST"])
@login_required
@limiter.limit("10 per minute", methods=["POST"])
def pix_checkout():
    """Body: {"tier": starter|premium|pro, "interval": month|semiannual|year}."""
    data = _body()
    result = subscription_service.create_pix_checkout(
        current_user,
        tier=data.get("tier"),
        interval=data.get("interval") or "month",
        market=g.market,
    )
    return jsonify(result), 200


@subscription_bp.route("/subscription/verify-pix", methods=["POST"])
@login_required
def verify_pix():
    data = _body()
    result = subscription_service.verify_pix(current_user, data.get("sessionId"), g.market)
    return jsonify(result), 200


# ──────────────────────────────────────────────
# Manage
# ──────────────────────────────────────────────

@subscription_bp.route("/subscription/portal", methods=["POST"])
@login_required
def portal():
    return jsonify(subscription_service.create_portal_session(current_user, g.market)), 200


@subscription_bp.route("/subscription/cancel", methods=["POST"])
@login_required
def cancel():
    immediate = bool(_body().get("immediate", False))
    result = subscription_service.cancel_subscription(current_user, g.market, immediate=immediate)
    return jsonify(result), 200


@subscription_bp.route("/subscription/resume", methods=["POST"])
@login_required
def resume():
    return jsonify(subscription_service.resume_subscription(current_user, g.market)), 200


@subscription_bp.route("/subscription/sync", methods=["POST"])
@login_required
def sync():
    return jsonify(subscription_service.sync_subscription(current_user, g.market)), 200
