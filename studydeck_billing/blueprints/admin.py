"""Admin blueprint — /admin/*

Support tooling for subscription records. All routes protected by
@admin_required.

Route Map:
  GET  /admin/users/<id>/subscription         — Raw record dump
  POST /admin/users/<id>/reset-subscription   — Reset to free (row kept)
"""

import logging

from flask import Blueprint, abort, jsonify, request
from flask_login import current_user
from sqlalchemy.orm.exc import StaleDataError

from studydeck_billing.decorators import admin_required
from studydeck_billing.extensions import db
from studydeck_billing.models.user import User
from studydeck_billing.services.audit_service import record_audit
from studydeck_billing.services.subscription_store import (
    get_record,
    reset_subscription as reset_record,
    serialize_record,
)

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


def _get_user_or_404(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        abort(404)
    return user


@admin_bp.route("/users/<user_id>/subscription", methods=["GET"])
@admin_required
def view_subscription(user_id):
    user = _get_user_or_404(user_id)
    record = get_record(user.id, create=False)
    return jsonify({
        "user": {"id": user.id, "email": user.email},
        "subscription": serialize_record(record) if record else None,
    })


@admin_bp.route("/users/<user_id>/reset-subscription", methods=["POST"])
@admin_required
def reset_subscription(user_id):
    user = _get_user_or_404(user_id)
    data = request.get_json(silent=True) or {}
    reset_trial = bool(data.get("reset_trial") or data.get("resetTrial"))

    record = get_record(user.id)
    try:
        reset_record(record, reset_trial=reset_trial)
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        return jsonify({"error": "Record changed concurrently, retry."}), 409

    record_audit(
        "subscription.admin_reset",
        user_id=user.id,
        metadata={"admin_id": current_user.id, "reset_trial": reset_trial},
    )
    logger.info(f"Admin {current_user.email} reset subscription for {user.email}")
    return jsonify({"success": True, "subscription": serialize_record(record)})
