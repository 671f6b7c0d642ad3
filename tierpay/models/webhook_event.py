"""Payment webhook event model (idempotency table).

Every gateway notification is recorded by (gateway, event_id) before any
transaction is touched. A second delivery of the same event id hits the
unique constraint. It is absorbed when the first delivery was processed or
skipped; a failed event, or one abandoned mid-flight, is reclaimed and run
again.

Processing status: received -> processing -> processed | failed | skipped.
Rows are never changed once they reach processed or skipped.
"""

import uuid

from tierpay.extensions import db

RECEIVED = "received"
PROCESSING = "processing"
PROCESSED = "processed"
FAILED = "failed"
SKIPPED = "skipped"

# A redelivery of an event in one of these is a no-op
SETTLED_STATUSES = (PROCESSED, SKIPPED)


class PaymentWebhookEvent(db.Model):
    __tablename__ = "payment_webhook_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    gateway = db.Column(db.String(50), nullable=False)  # eversend | flutterwave
    event_id = db.Column(db.String(255), nullable=False)
    event_type = db.Column(db.String(100), nullable=False)
    transaction_id = db.Column(
        db.String(36), db.ForeignKey("payment_transactions.id"), nullable=True
    )
    provider_reference = db.Column(db.String(255), nullable=True)
    reported_status = db.Column(db.String(50), nullable=True)

    payload = db.Column(db.JSON, nullable=False)
    signature = db.Column(db.String(512), nullable=True)
    signature_verified = db.Column(db.Boolean, nullable=False, default=False)

    status = db.Column(db.String(50), nullable=False, default=RECEIVED)
    error_message = db.Column(db.Text, nullable=True)
    received_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.UniqueConstraint(
            "gateway", "event_id", name="uq_payment_webhook_events_gateway_event"
        ),
        db.Index("ix_payment_webhook_events_status", "status"),
        db.Index("ix_payment_webhook_events_transaction_id", "transaction_id"),
    )

    def __repr__(self):
        return f"<PaymentWebhookEvent {self.gateway}:{self.event_id} ({self.status})>"
