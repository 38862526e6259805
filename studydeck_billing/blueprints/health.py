"""Health blueprint — /api/health/billing

Configuration presence checks only; never calls the provider and never
echoes secret values.
"""

from flask import Blueprint, current_app, jsonify

health_bp = Blueprint("health", __name__, url_prefix="/api/health")

CRITICAL_SETTINGS = (
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "STRIPE_MONTHLY_PRICE_ID",
    "STRIPE_YEARLY_PRICE_ID",
    "APP_BASE_URL",
)
OPTIONAL_SETTINGS = ("CRON_SECRET", "MAIL_USERNAME", "MAIL_PASSWORD")


@health_bp.route("/billing", methods=["GET"])
def billing_health():
    checks = {name: bool(current_app.config.get(name)) for name in CRITICAL_SETTINGS}
    ok = all(checks.values())
    checks.update(
        {name: bool(current_app.config.get(name)) for name in OPTIONAL_SETTINGS}
    )
    checks["PROVIDER_DIRECT_CANCEL_ENABLED"] = bool(
        current_app.config.get("PROVIDER_DIRECT_CANCEL_ENABLED")
    )
    return jsonify({"ok": ok, "checks": checks}), 200 if ok else 500
