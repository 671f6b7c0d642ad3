"""Profile service — the tier write performed when an upgrade completes.

The orchestrator only knows the ProfileStore interface. The default
DatabaseProfileStore writes the local profiles table in the caller's
session, so the tier change commits atomically with the completed
transaction. Another store (e.g. an identity-provider client) can be put on
app.extensions["profile_store"].
"""

import logging

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from tierpay.extensions import db
from tierpay.models.profile import Profile
from tierpay.services.errors import TierUpdateError

logger = logging.getLogger(__name__)


class ProfileStore:
    def set_user_tier(self, user_id, new_tier, subject_type="creator"):
        raise NotImplementedError


class DatabaseProfileStore(ProfileStore):
    def set_user_tier(self, user_id, new_tier, subject_type="creator"):
        """Set the profile's tier for a membership type. Flushes, never commits.

        Raises TierUpdateError when the profile is missing or the write fails.
        """
        profile = db.session.get(Profile, user_id)
        if profile is None:
            raise TierUpdateError(f"Profile {user_id} not found")

        try:
            with db.session.begin_nested():
                if subject_type == "member":
                    profile.member_tier = new_tier
                else:
                    profile.tier = new_tier
                db.session.flush()
        except SQLAlchemyError as e:
            logger.error(f"Tier write failed for profile {user_id}: {e}")
            raise TierUpdateError("Failed to update profile tier")

        logger.info(f"Profile {user_id} {subject_type} tier set to {new_tier}")
        return profile


def init_profile_store(app):
    app.extensions["profile_store"] = DatabaseProfileStore()


def get_profile_store():
    return current_app.extensions["profile_store"]
