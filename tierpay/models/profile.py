"""Profile model.

Local projection of the identity provider's user: contact details and the
tier currently held for each membership type. Flask-Login integration via
UserMixin (profiles are resolved from Bearer tokens, see auth_service).
"""

import uuid

from flask_login import UserMixin

from tierpay.extensions import db


class Profile(UserMixin, db.Model):
    __tablename__ = "profiles"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)
    display_name = db.Column(db.String(255))
    phone_number = db.Column(db.String(50))
    tier = db.Column(db.String(50), nullable=False, default="free")  # creator tier
    member_tier = db.Column(db.String(50), nullable=True)  # null = not a member
    is_admin = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    transactions = db.relationship(
        "PaymentTransaction", back_populates="profile", lazy="dynamic"
    )

    def tier_for(self, subject_type):
        """Return the tier held for a membership type (creator | member)."""
        return self.member_tier if subject_type == "member" else self.tier

    def __repr__(self):
        return f"<Profile {self.email}>"
