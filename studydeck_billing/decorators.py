"""
Custom route decorators for access control.

- admin_required: ensures user is logged in AND has is_admin=True.
- same_origin_required: rejects JSON mutations whose Origin/Referer is not
  one of ours (session-cookie endpoints without a CSRF form token).
- cron_secret_required: shared-secret check for scheduled job endpoints.
"""

import hmac
import logging
from functools import wraps
from urllib.parse import urlparse

from flask import abort, current_app, jsonify, request
from flask_login import current_user, login_required

logger = logging.getLogger(__name__)


def admin_required(f):
    """Require login + is_admin flag."""

    @wraps(f)
    @login_required
    def decorated(*args, **kwargs):
        if not current_user.is_admin:
            abort(403)
        return f(*args, **kwargs)

    return decorated


def _origin_of(url):
    parsed = urlparse(url or "")
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}".lower()


def allowed_origins():
    origins = {_origin_of(current_app.config.get("APP_BASE_URL"))}
    origins.add(_origin_of(request.host_url))
    for extra in (current_app.config.get("CSRF_ALLOWED_ORIGINS") or "").split(","):
        origins.add(_origin_of(extra.strip()))
    origins.discard(None)
    return origins


def same_origin_required(f):
    """Require an Origin (or Referer) header from an allowed origin."""

    @wraps(f)
    def decorated(*args, **kwargs):
        origin = request.headers.get("Origin") or _origin_of(request.headers.get("Referer"))
        if not origin or _origin_of(origin) not in allowed_origins():
            logger.warning(f"Rejected cross-origin {request.method} {request.path} from {origin!r}")
            return jsonify({"error": "Forbidden"}), 403
        return f(*args, **kwargs)

    return decorated


def cron_secret_required(f):
    """Require `Authorization: Bearer <CRON_SECRET>` or `?secret=`.

    With no CRON_SECRET configured the endpoint is open outside production
    and refuses to run in production.
    """

    @wraps(f)
    def decorated(*args, **kwargs):
        secret = current_app.config.get("CRON_SECRET")
        if not secret:
            if current_app.config.get("APP_ENV") == "production":
                logger.error("CRON_SECRET not configured — refusing cron request")
                return jsonify({"error": "Cron secret not configured"}), 500
            return f(*args, **kwargs)

        auth = request.headers.get("Authorization", "")
        provided = auth[len("Bearer "):] if auth.startswith("Bearer ") else request.args.get("secret", "")
        if not provided or not hmac.compare_digest(provided.encode(), secret.encode()):
            logger.warning(f"Unauthorized cron request to {request.path}")
            return jsonify({"error": "Unauthorized"}), 401
        return f(*args, **kwargs)

    return decorated
