"""Auth blueprint — /auth/*

JSON session auth over Flask-Login: signup, login, logout.
These routes stay under Flask-WTF CSRF protection; browser clients fetch
a token from /auth/csrf-token and send it as the X-CSRFToken header.
Signup creates the user's `free` subscription record in the same commit.
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required, logout_user, login_user
from flask_wtf.csrf import generate_csrf
from werkzeug.security import check_password_hash, generate_password_hash

from studydeck_billing.extensions import db, limiter
from studydeck_billing.models.user import User
from studydeck_billing.services.audit_service import record_audit
from studydeck_billing.services.subscription_store import get_record, serialize_gating

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _user_payload(user):
    return {
        "id": user.id,
        "email": user.email,
        "fullName": user.full_name,
        "isAdmin": user.is_admin,
        "subscription": serialize_gating(get_record(user.id, create=False)),
    }


def _json_body():
    return request.get_json(silent=True) or {}


# ──────────────────────────────────────────────
# GET /auth/csrf-token
# ──────────────────────────────────────────────

@auth_bp.route("/csrf-token", methods=["GET"])
def csrf_token():
    return jsonify({"csrfToken": generate_csrf()})


# ──────────────────────────────────────────────
# POST /auth/signup
# ──────────────────────────────────────────────

@auth_bp.route("/signup", methods=["POST"])
@limiter.limit("10 per minute")
def signup():
    data = _json_body()
    email = (data.get("email") or "").lower().strip()
    password = data.get("password") or ""
    full_name = (data.get("full_name") or data.get("fullName") or "").strip()

    # --- Validation ---
    errors = []
    if not email or "@" not in email:
        errors.append("A valid email is required.")
    if not password:
        errors.append("Password is required.")
    elif len(password) < 8:
        errors.append("Password must be at least 8 characters.")
    if email and User.query.filter_by(email=email).first():
        errors.append("An account with this email already exists.")

    if errors:
        return jsonify({"error": errors[0], "errors": errors}), 400

    # --- Create user + free subscription record ---
    user = User(
        email=email,
        password_hash=generate_password_hash(password),
        full_name=full_name or None,
    )
    db.session.add(user)
    db.session.flush()  # get user.id
    get_record(user.id)
    db.session.commit()

    login_user(user)
    record_audit("user.signed_up", user_id=user.id)
    logger.info(f"New user signed up: {email}")
    return jsonify(_user_payload(user)), 201


# ──────────────────────────────────────────────
# POST /auth/login
# ──────────────────────────────────────────────

@auth_bp.route("/login", methods=["POST"])
@limiter.limit("15 per minute")
def login():
    data = _json_body()
    email = (data.get("email") or "").lower().strip()
    password = data.get("password") or ""

    if not email or not password:
        return jsonify({"error": "Email and password are required."}), 400

    user = User.query.filter_by(email=email).first()
    if user is None or not check_password_hash(user.password_hash, password):
        return jsonify({"error": "Invalid email or password."}), 401
    if not user.is_active:
        return jsonify({"error": "Your account has been deactivated."}), 403

    login_user(user, remember=bool(data.get("remember")))
    return jsonify(_user_payload(user))


# ──────────────────────────────────────────────
# POST /auth/logout, GET /auth/me
# ──────────────────────────────────────────────

@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"success": True})


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    return jsonify(_user_payload(current_user))
