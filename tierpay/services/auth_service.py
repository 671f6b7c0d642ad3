"""Auth service — signed bearer tokens for API callers.

Tokens are itsdangerous URL-safe timed signatures over the profile id,
keyed with SECRET_KEY. The identity provider issues them; issue_auth_token()
is here for that side and for tests.
"""

import logging

from flask import current_app
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from tierpay.extensions import db
from tierpay.models.profile import Profile

logger = logging.getLogger(__name__)


def _serializer():
    return URLSafeTimedSerializer(
        current_app.config["SECRET_KEY"],
        salt=current_app.config["AUTH_TOKEN_SALT"],
    )


def issue_auth_token(profile_id):
    return _serializer().dumps({"profile_id": profile_id})


def load_profile_from_token(token):
    """Return the active Profile a token belongs to, or None."""
    try:
        data = _serializer().loads(
            token, max_age=current_app.config["AUTH_TOKEN_MAX_AGE"]
        )
    except SignatureExpired:
        logger.info("Rejected expired auth token")
        return None
    except BadSignature:
        logger.warning("Rejected auth token with bad signature")
        return None

    profile_id = data.get("profile_id") if isinstance(data, dict) else None
    if not profile_id:
        return None

    profile = db.session.get(Profile, profile_id)
    if profile is None or not profile.is_active:
        return None
    return profile
