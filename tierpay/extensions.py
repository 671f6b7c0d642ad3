"""
Deferred extension instances.

Created here, bound to the app in create_app() via init_app().
"""

from flask import jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],  # No global limit, limits are per route
    storage_uri="memory://",
)


@login_manager.request_loader
def load_user_from_request(request):
    """Resolve the Bearer token issued by the identity provider to a Profile.

    Imports lazily to avoid circular deps.
    """
    from tierpay.services.auth_service import load_profile_from_token

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return load_profile_from_token(auth_header[7:])


@login_manager.unauthorized_handler
def unauthorized():
    """API-only app: answer with JSON instead of redirecting to a login page."""
    return jsonify({
        "success": False,
        "error": "Authentication required",
        "errorCode": "UNAUTHORIZED",
    }), 401
