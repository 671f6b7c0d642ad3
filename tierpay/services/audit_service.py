"""Audit service — append-only, hash-chained payment audit trail.

Every transition attempt on a transaction (accepted or rejected) appends one
PaymentAuditEntry. Entries of one transaction form a chain:

    entry_hash = sha256(canonical JSON of the entry incl. previous_hash)

verify_chain() recomputes the hashes and reports gaps, reordering and
content edits.
"""

import hashlib
import json
import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from tierpay.extensions import db
from tierpay.models.audit import ACTIONS, PaymentAuditEntry

logger = logging.getLogger(__name__)

# Concurrent appenders racing for the same sequence number retry this often.
MAX_APPEND_ATTEMPTS = 3


def _normalize_timestamp(value):
    """UTC, naive, microsecond ISO string — identical before and after a DB
    round-trip regardless of whether the backend keeps tzinfo."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="microseconds")


def _json_safe(details):
    return json.loads(json.dumps(details or {}, default=str))


def compute_entry_hash(entry):
    content = {
        "transaction_id": entry.transaction_id,
        "sequence": entry.sequence,
        "user_id": entry.user_id,
        "subject_type": entry.subject_type,
        "action": entry.action,
        "previous_status": entry.previous_status,
        "new_status": entry.new_status,
        "details": entry.details or {},
        "previous_hash": entry.previous_hash,
        "created_at": _normalize_timestamp(entry.created_at),
    }
    canonical = json.dumps(content, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _last_entry(transaction_id):
    return (
        PaymentAuditEntry.query
        .filter_by(transaction_id=transaction_id)
        .order_by(PaymentAuditEntry.sequence.desc())
        .first()
    )


def append_entry(transaction, action, previous_status, new_status, details=None):
    """Append an audit entry for `transaction`.

    Flushes inside a savepoint; the caller owns the commit so the entry lands
    atomically with the transition it describes.
    """
    if action not in ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")

    safe_details = _json_safe(details)

    for attempt in range(1, MAX_APPEND_ATTEMPTS + 1):
        last = _last_entry(transaction.id)
        entry = PaymentAuditEntry(
            transaction_id=transaction.id,
            user_id=transaction.user_id,
            subject_type=transaction.subject_type,
            action=action,
            previous_status=previous_status,
            new_status=new_status,
            details=safe_details,
            sequence=(last.sequence + 1) if last else 1,
            previous_hash=last.entry_hash if last else None,
            created_at=datetime.now(timezone.utc),
        )
        entry.entry_hash = compute_entry_hash(entry)
        try:
            with db.session.begin_nested():
                db.session.add(entry)
                db.session.flush()
            return entry
        except IntegrityError:
            logger.info(
                f"Audit sequence race on tx {transaction.id} "
                f"(attempt {attempt}), retrying"
            )
    raise RuntimeError(f"Could not append audit entry for tx {transaction.id}")


def list_entries(transaction_id):
    return (
        PaymentAuditEntry.query
        .filter_by(transaction_id=transaction_id)
        .order_by(PaymentAuditEntry.sequence.asc())
        .all()
    )


def verify_chain(transaction_id=None):
    """Verify hash chains for one transaction or all of them.

    Returns a list of problem dicts ({transaction_id, sequence, problem});
    an empty list means the trail is intact.
    """
    query = PaymentAuditEntry.query
    if transaction_id:
        query = query.filter_by(transaction_id=transaction_id)
    entries = query.order_by(
        PaymentAuditEntry.transaction_id, PaymentAuditEntry.sequence
    ).all()

    problems = []
    previous = None
    for entry in entries:
        if previous is None or previous.transaction_id != entry.transaction_id:
            expected_sequence, expected_previous_hash = 1, None
        else:
            expected_sequence = previous.sequence + 1
            expected_previous_hash = previous.entry_hash

        if entry.sequence != expected_sequence:
            problems.append({
                "transaction_id": entry.transaction_id,
                "sequence": entry.sequence,
                "problem": f"sequence gap (expected {expected_sequence})",
            })
        if entry.previous_hash != expected_previous_hash:
            problems.append({
                "transaction_id": entry.transaction_id,
                "sequence": entry.sequence,
                "problem": "previous_hash does not match prior entry",
            })
        if compute_entry_hash(entry) != entry.entry_hash:
            problems.append({
                "transaction_id": entry.transaction_id,
                "sequence": entry.sequence,
                "problem": "entry_hash mismatch (content altered)",
            })
        previous = entry

    if problems:
        logger.error(f"Audit chain verification found {len(problems)} problem(s)")
    return problems
