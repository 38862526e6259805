"""
Shared Flask extensions for the billing API.

Instances live here unbound so models, services and blueprints can import
them; create_app() binds each one with init_app().
"""

from flask import jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager
from flask_wtf.csrf import CSRFProtect
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

db = SQLAlchemy()
migrate = Migrate()
csrf = CSRFProtect()

# Backend comes from RATELIMIT_STORAGE_URI; only the sync, signup, login
# and payment-failure routes carry limits.
limiter = Limiter(key_func=get_remote_address, default_limits=[])

# Session cookies are dropped if the client's IP/user agent changes.
login_manager = LoginManager()
login_manager.session_protection = "strong"


@login_manager.user_loader
def load_user(user_id):
    from studydeck_billing.models.user import User

    user = db.session.get(User, user_id)
    # Deactivated accounts lose their existing sessions too.
    return user if user is not None and user.is_active else None


@login_manager.unauthorized_handler
def unauthorized():
    """No login page to redirect to: billing clients get a JSON 401."""
    return jsonify({"error": "Unauthorized"}), 401
