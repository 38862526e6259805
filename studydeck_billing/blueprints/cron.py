"""Cron blueprint — /api/cron/*

Scheduled job triggers for an external scheduler. Each is protected by
CRON_SECRET and guarded against overlapping runs (job_runs watermark).
The same jobs are available as Flask CLI commands.
"""

from flask import Blueprint, jsonify, request

from studydeck_billing.decorators import cron_secret_required
from studydeck_billing.services.reconciliation_service import (
    normalize_expired_subscriptions,
    run_subscription_sync,
)
from studydeck_billing.services.reminder_service import process_reminders

cron_bp = Blueprint("cron", __name__, url_prefix="/api/cron")


@cron_bp.route("/subscription-sync", methods=["GET"])
@cron_secret_required
def subscription_sync():
    return jsonify(run_subscription_sync())


@cron_bp.route("/normalize-subscriptions", methods=["GET"])
@cron_secret_required
def normalize_subscriptions():
    return jsonify(normalize_expired_subscriptions())


@cron_bp.route("/subscription-reminders", methods=["GET"])
@cron_secret_required
def subscription_reminders():
    dry_run = request.args.get("dry_run", "").lower() in ("1", "true", "yes")
    return jsonify(process_reminders(dry_run=dry_run))
