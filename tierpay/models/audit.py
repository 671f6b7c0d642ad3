"""Payment audit log model.

Append-only record of every transition attempt on a payment transaction,
including rejected ones. Each entry is hash-chained to the previous entry
of the same transaction (sequence 1, 2, ...), so edits or deletions made
outside the ORM show up when the chain is verified.
"""

import uuid

from sqlalchemy import event

from tierpay.extensions import db

ACTIONS = ["init", "verify", "complete", "fail", "retry", "cancel", "refund"]


class AuditImmutableError(RuntimeError):
    pass


class PaymentAuditEntry(db.Model):
    __tablename__ = "payment_audit_log"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    transaction_id = db.Column(
        db.String(36), db.ForeignKey("payment_transactions.id"), nullable=False
    )
    user_id = db.Column(db.String(36), nullable=True)
    subject_type = db.Column(db.String(20), nullable=True)
    action = db.Column(db.String(50), nullable=False)  # see ACTIONS
    previous_status = db.Column(db.String(50), nullable=True)
    new_status = db.Column(db.String(50), nullable=True)
    details = db.Column(db.JSON, default=dict)
    sequence = db.Column(db.Integer, nullable=False)
    previous_hash = db.Column(db.String(64), nullable=True)  # null for first entry
    entry_hash = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    __table_args__ = (
        db.UniqueConstraint(
            "transaction_id", "sequence", name="uq_payment_audit_log_tx_sequence"
        ),
        db.Index("ix_payment_audit_log_action", "action"),
        db.Index("ix_payment_audit_log_created_at", "created_at"),
    )

    def __repr__(self):
        return f"<PaymentAuditEntry {self.action} tx={self.transaction_id} #{self.sequence}>"


@event.listens_for(PaymentAuditEntry, "before_update")
def _reject_update(mapper, connection, target):
    raise AuditImmutableError("payment_audit_log entries cannot be updated")


@event.listens_for(PaymentAuditEntry, "before_delete")
def _reject_delete(mapper, connection, target):
    raise AuditImmutableError("payment_audit_log entries cannot be deleted")
