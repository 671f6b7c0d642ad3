"""
Custom route decorators for access control.

- admin_required: ensures the caller is authenticated AND has is_admin=True.
"""

from functools import wraps

from flask import jsonify
from flask_login import current_user, login_required


def admin_required(f):
    """Require an authenticated profile with the is_admin flag."""

    @wraps(f)
    @login_required
    def decorated(*args, **kwargs):
        if not current_user.is_admin:
            return jsonify({
                "success": False,
                "error": "Forbidden",
                "errorCode": "FORBIDDEN",
            }), 403
        return f(*args, **kwargs)

    return decorated
