"""Subscription blueprint — /api/subscription/*, /api/notifications/*

JSON endpoints for the signed-in user. Reads come from the local record
only; nothing here waits on the payment provider except cancel and sync.

Route Map:
  GET  /api/subscription                      — Feature-gating view
  POST /api/subscription/cancel               — Cancel at period end
  POST /api/subscription/sync                 — Reconcile now
  GET  /api/subscription/trial-eligibility    — Has the trial been used?
  POST /api/notifications/payment-failure     — Checkout payment failed
"""

from flask import Blueprint, jsonify
from flask_login import current_user, login_required

from studydeck_billing.decorators import same_origin_required
from studydeck_billing.extensions import limiter
from studydeck_billing.services import subscription_service
from studydeck_billing.services.subscription_store import get_record, serialize_gating

subscription_bp = Blueprint("subscription", __name__, url_prefix="/api")


@subscription_bp.route("/subscription", methods=["GET"])
@login_required
def get_subscription():
    record = get_record(current_user.id, create=False)
    return jsonify(serialize_gating(record))


@subscription_bp.route("/subscription/cancel", methods=["POST"])
@login_required
@same_origin_required
def cancel_subscription():
    payload, status = subscription_service.cancel_subscription(current_user.id)
    return jsonify(payload), status


@subscription_bp.route("/subscription/sync", methods=["POST"])
@login_required
@same_origin_required
@limiter.limit("6 per minute")
def sync_subscription():
    payload, status = subscription_service.sync_user_subscription(current_user.id)
    return jsonify(payload), status


@subscription_bp.route("/subscription/trial-eligibility", methods=["GET"])
@login_required
def trial_eligibility():
    payload, status = subscription_service.trial_eligibility(current_user.id)
    return jsonify(payload), status


@subscription_bp.route("/notifications/payment-failure", methods=["POST"])
@login_required
@same_origin_required
@limiter.limit("5 per hour")
def payment_failure():
    payload, status = subscription_service.report_payment_failure(current_user.id)
    return jsonify(payload), status
