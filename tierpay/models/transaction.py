"""Payment transaction model.

One row per attempted tier upgrade. payment_transactions.status is the
single source of truth for where a charge stands.

Status lifecycle (forward-only):
    pending -> processing -> completed | failed | cancelled
    pending -> failed | cancelled
    completed -> refunded

Store-enforced invariants:
    - at most one pending/processing row per (subject_type, user_id, target_tier)
    - at most one pending/processing row per idempotency_key
Both are partial unique indexes, so terminal rows never block a retry.
"""

import uuid

from tierpay.extensions import db

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"
REFUNDED = "refunded"

STATUSES = [PENDING, PROCESSING, COMPLETED, FAILED, CANCELLED, REFUNDED]
ACTIVE_STATUSES = (PENDING, PROCESSING)
TERMINAL_STATUSES = (COMPLETED, FAILED, CANCELLED, REFUNDED)

ALLOWED_TRANSITIONS = {
    PENDING: (PROCESSING, FAILED, CANCELLED),
    PROCESSING: (COMPLETED, FAILED, CANCELLED),
    COMPLETED: (REFUNDED,),
    FAILED: (),
    CANCELLED: (),
    REFUNDED: (),
}

# Timestamp column stamped (exactly once) when a status is entered.
STATUS_TIMESTAMPS = {
    PROCESSING: "processing_started_at",
    COMPLETED: "completed_at",
    FAILED: "failed_at",
    CANCELLED: "cancelled_at",
    REFUNDED: "refunded_at",
}

SUBJECT_TYPES = ("creator", "member")
BILLING_CYCLES = ("monthly", "annual")

_ACTIVE_WHERE = "status IN ('pending', 'processing')"


def can_transition(from_status, to_status):
    return to_status in ALLOWED_TRANSITIONS.get(from_status, ())


class PaymentTransaction(db.Model):
    __tablename__ = "payment_transactions"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("profiles.id"), nullable=False
    )
    subject_type = db.Column(
        db.String(20), nullable=False, default="creator"
    )  # creator | member

    # --- Economic facts (immutable once set) ---
    previous_tier = db.Column(db.String(50), nullable=False)
    target_tier = db.Column(db.String(50), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(10), nullable=False, default="USD")
    billing_cycle = db.Column(db.String(20), nullable=False)  # monthly | annual

    # --- Routing ---
    payment_method = db.Column(
        db.String(50), nullable=False
    )  # card | mobile_money | express_pay
    gateway = db.Column(db.String(50), nullable=False)  # eversend | flutterwave

    # --- Identity ---
    idempotency_key = db.Column(db.String(255), nullable=False, index=True)
    provider_reference = db.Column(db.String(255), nullable=True, index=True)
    provider_session_id = db.Column(db.String(255), nullable=True)
    checkout_url = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(50), nullable=False, default=PENDING)

    # --- Timestamps (each set once, on its transition) ---
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    initiated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    processing_started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Diagnostics ---
    error_code = db.Column(db.String(100), nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    error_details = db.Column(db.JSON, nullable=True)
    verification_count = db.Column(
        db.Integer, nullable=False, default=0
    )  # client status polls
    verification_attempts = db.Column(
        db.Integer, nullable=False, default=0
    )  # reconciliation re-checks against the gateway
    last_verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    next_retry_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # --- Tier application (completed but tier_applied_at null = inconsistency) ---
    tier_applied_at = db.Column(db.DateTime(timezone=True), nullable=True)
    tier_update_error = db.Column(db.Text, nullable=True)

    # --- Request metadata ---
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.Text, nullable=True)
    contact = db.Column(db.JSON, default=dict)  # email, phone_number, display_name

    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_payment_transactions_amount"),
        db.Index(
            "ix_payment_transactions_subject_user_status",
            "subject_type",
            "user_id",
            "status",
        ),
        db.Index(
            "uq_payment_transactions_active_upgrade",
            "subject_type",
            "user_id",
            "target_tier",
            unique=True,
            postgresql_where=db.text(_ACTIVE_WHERE),
            sqlite_where=db.text(_ACTIVE_WHERE),
        ),
        db.Index(
            "uq_payment_transactions_active_idempotency_key",
            "idempotency_key",
            unique=True,
            postgresql_where=db.text(_ACTIVE_WHERE),
            sqlite_where=db.text(_ACTIVE_WHERE),
        ),
        db.Index(
            "ix_payment_transactions_status_retry",
            "status",
            "next_retry_at",
        ),
    )

    # --- Relationships ---
    profile = db.relationship("Profile", back_populates="transactions")

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def to_dict(self):
        return {
            "transactionId": self.id,
            "status": self.status,
            "subjectType": self.subject_type,
            "previousTier": self.previous_tier,
            "targetTier": self.target_tier,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "billingCycle": self.billing_cycle,
            "paymentMethod": self.payment_method,
            "gateway": self.gateway,
            "checkoutUrl": self.checkout_url,
            "errorCode": self.error_code,
            "error": self.error_message,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "completedAt": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
        }

    def __repr__(self):
        return f"<PaymentTransaction {self.id} {self.target_tier} ({self.status})>"
