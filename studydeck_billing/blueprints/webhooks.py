"""Webhooks blueprint — /stripe/webhooks

Receives Stripe webhook events. CSRF-exempt, skipped by the entitlement
middleware, and reachable with or without a trailing slash (no redirect).
Raw body is required for signature verification.
"""

import logging

import stripe
from flask import Blueprint, jsonify, request

from studydeck_billing.services.webhook_service import (
    handle_webhook_event,
    verify_webhook_signature,
)

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/stripe")


@webhooks_bp.route("/webhooks", methods=["POST"], strict_slashes=False)
def stripe_webhook():
    """Receive and process Stripe webhook events.

    1. Get raw body (required for signature verification)
    2. Verify signature with STRIPE_WEBHOOK_SECRET
    3. Pass to handle_webhook_event (claim-first dedup via provider_events)
    4. 200 for processed / duplicate / ignored, 500 only for storage errors
    """
    payload = request.get_data()
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning(f"Webhook without Stripe-Signature header from {request.remote_addr}")
        return jsonify({"error": "Missing signature"}), 400

    # --- Verify signature ---
    try:
        event = verify_webhook_signature(payload, sig_header)
    except (stripe.error.SignatureVerificationError, ValueError) as e:
        logger.warning(f"Webhook signature verification failed from {request.remote_addr}: {e}")
        return jsonify({"error": "Invalid signature"}), 400

    # --- Process event (idempotent) ---
    success, message = handle_webhook_event(event, payload)

    if success:
        return jsonify({"status": message}), 200
    logger.error(f"Webhook processing failed: {message}")
    return jsonify({"error": message}), 500
