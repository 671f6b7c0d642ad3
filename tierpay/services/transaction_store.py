"""Transaction store — persistence contract for payment transactions.

Responsible for:
- Creating pending rows under the store-enforced uniqueness rules
  (one active upgrade per subject/user/tier, one active row per idempotency key)
- Forward-only status transitions as a conditional UPDATE (compare-and-set),
  so two racing callers can never both move the same row
- Lookups used by the orchestrator, webhook receiver and reconciliation sweep

Only the orchestrator (payment_service) and the reconciliation sweep call the
mutating functions here. Nothing is ever deleted.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from tierpay.extensions import db
from tierpay.models.transaction import (
    ACTIVE_STATUSES,
    COMPLETED,
    PENDING,
    PROCESSING,
    STATUS_TIMESTAMPS,
    PaymentTransaction,
    can_transition,
)
from tierpay.services.errors import (
    DuplicateActiveTransaction,
    InvalidTransition,
    StoreError,
)

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Lookups
# ──────────────────────────────────────────────

def get(transaction_id):
    return db.session.get(PaymentTransaction, transaction_id)


def get_by_provider_reference(gateway, reference):
    if not reference:
        return None
    return (
        PaymentTransaction.query
        .filter_by(gateway=gateway, provider_reference=str(reference))
        .first()
    )


def find_active_by_idempotency_key(idempotency_key):
    return (
        PaymentTransaction.query
        .filter_by(idempotency_key=idempotency_key)
        .filter(PaymentTransaction.status.in_(ACTIVE_STATUSES))
        .first()
    )


def find_active_for(subject_type, user_id, target_tier):
    return (
        PaymentTransaction.query
        .filter_by(
            subject_type=subject_type,
            user_id=user_id,
            target_tier=target_tier,
        )
        .filter(PaymentTransaction.status.in_(ACTIVE_STATUSES))
        .first()
    )


def list_stuck_processing(cutoff, now, limit=100):
    """Processing rows that started before `cutoff` and are due for a re-check."""
    return (
        PaymentTransaction.query
        .filter(PaymentTransaction.status == PROCESSING)
        .filter(PaymentTransaction.processing_started_at < cutoff)
        .filter(or_(
            PaymentTransaction.next_retry_at.is_(None),
            PaymentTransaction.next_retry_at <= now,
        ))
        .order_by(PaymentTransaction.processing_started_at.asc())
        .limit(limit)
        .all()
    )


def list_stale_pending(cutoff, limit=100):
    """Pending rows initiated before `cutoff`: the gateway call never resolved."""
    return (
        PaymentTransaction.query
        .filter(PaymentTransaction.status == PENDING)
        .filter(PaymentTransaction.initiated_at < cutoff)
        .order_by(PaymentTransaction.initiated_at.asc())
        .limit(limit)
        .all()
    )


def is_stale_pending(transaction, cutoff):
    # Compared in SQL; SQLite hands back naive datetimes
    return (
        PaymentTransaction.query
        .filter_by(id=transaction.id, status=PENDING)
        .filter(PaymentTransaction.initiated_at < cutoff)
        .count()
    ) > 0


def list_unapplied_upgrades(limit=100):
    """Completed transactions whose tier was never applied to the profile.

    A non-empty result is the detectable "paid but not upgraded" inconsistency.
    """
    return (
        PaymentTransaction.query
        .filter(PaymentTransaction.status == COMPLETED)
        .filter(PaymentTransaction.tier_applied_at.is_(None))
        .order_by(PaymentTransaction.completed_at.asc())
        .limit(limit)
        .all()
    )


# ──────────────────────────────────────────────
# Writes
# ──────────────────────────────────────────────

def create_pending(**fields):
    """Insert and commit a pending transaction.

    Raises DuplicateActiveTransaction (carrying the existing row) when the
    partial unique indexes reject the insert, StoreError on any other
    database failure.
    """
    transaction = PaymentTransaction(
        status=PENDING,
        initiated_at=datetime.now(timezone.utc),
        **fields,
    )
    try:
        with db.session.begin_nested():
            db.session.add(transaction)
            db.session.flush()
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        existing = find_active_for(
            fields.get("subject_type", "creator"),
            fields["user_id"],
            fields["target_tier"],
        ) or find_active_by_idempotency_key(fields["idempotency_key"])
        if existing is not None:
            logger.info(
                f"Pending insert lost to active tx {existing.id} "
                f"(user={fields['user_id']}, tier={fields['target_tier']})"
            )
            raise DuplicateActiveTransaction(existing)
        logger.error(f"Integrity error creating transaction: {e}")
        raise StoreError("Failed to create transaction record")
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Database error creating transaction: {e}", exc_info=True)
        raise StoreError("Failed to create transaction record")

    logger.info(
        f"Created pending tx {transaction.id} "
        f"({transaction.previous_tier} -> {transaction.target_tier})"
    )
    return transaction


def transition(transaction, new_status, **fields):
    """Move `transaction` from its observed status to `new_status`.

    Issued as UPDATE ... WHERE id = :id AND status = :observed, so the row
    only moves if nobody else moved it first. Stamps the status timestamp.
    Does not commit — the caller commits together with the audit entry.

    Returns True if this call moved the row, False if the row had already
    left the observed status (the caller lost a race).
    Raises InvalidTransition for moves the lifecycle never allows.
    """
    observed = transaction.status
    if not can_transition(observed, new_status):
        raise InvalidTransition(
            f"Transition {observed} -> {new_status} is not allowed",
            details={"from": observed, "to": new_status},
        )

    now = datetime.now(timezone.utc)
    values = dict(fields)
    values["status"] = new_status
    values["updated_at"] = now
    timestamp_column = STATUS_TIMESTAMPS.get(new_status)
    if timestamp_column:
        values[timestamp_column] = now

    result = db.session.execute(
        update(PaymentTransaction)
        .where(PaymentTransaction.id == transaction.id)
        .where(PaymentTransaction.status == observed)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.session.refresh(transaction)

    moved = result.rowcount == 1
    if moved:
        logger.info(f"Tx {transaction.id}: {observed} -> {new_status}")
    else:
        logger.info(
            f"Tx {transaction.id}: {observed} -> {new_status} lost race "
            f"(now {transaction.status})"
        )
    return moved


def increment_counter(transaction, column, **fields):
    """Atomically bump a verification counter (and set any extra fields)."""
    values = dict(fields)
    values[column] = getattr(PaymentTransaction, column) + 1
    db.session.execute(
        update(PaymentTransaction)
        .where(PaymentTransaction.id == transaction.id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.session.refresh(transaction)
    return getattr(transaction, column)


def update_fields(transaction, **fields):
    """Set non-status bookkeeping fields (tier application, retry schedule)."""
    if "status" in fields:
        raise InvalidTransition("Use transition() to change status")
    for name, value in fields.items():
        setattr(transaction, name, value)
    db.session.flush()
    return transaction
