"""Reconciliation service — settles payments the webhooks never settled.

Two jobs, both run from Flask CLI commands on a cron schedule:

- reconcile_stuck_transactions(): transactions stuck in "processing" longer
  than RECONCILE_AFTER_MINUTES are re-checked at their gateway. Final
  answers go through payment_service.reconcile(); unresolved ones are
  rescheduled with exponential backoff and, after RECONCILE_MAX_ATTEMPTS,
  failed with TIMEOUT.
  Pending rows older than PENDING_TIMEOUT_MINUTES never got a gateway
  answer and are failed with TIMEOUT as well.
- retry_tier_updates(): completed transactions whose profile tier write
  failed get the tier re-applied.
"""

import logging
from datetime import datetime, timedelta, timezone

from flask import current_app

from tierpay.extensions import db
from tierpay.models.transaction import PROCESSING
from tierpay.services import audit_service, payment_service, transaction_store
from tierpay.services.errors import TIMEOUT

logger = logging.getLogger(__name__)


def _backoff(attempts, base_minutes):
    """5, 10, 20, 40... minutes for attempts 1, 2, 3, 4 (base 5)."""
    return timedelta(minutes=base_minutes * (2 ** max(attempts - 1, 0)))


def _check_transaction(transaction, now, max_attempts, base_minutes):
    """Re-check one stuck transaction. Returns the summary bucket it lands in."""
    attempts = transaction_store.increment_counter(
        transaction, "verification_attempts", last_verified_at=now
    )
    audit_service.append_entry(
        transaction, "verify", PROCESSING, PROCESSING,
        {"source": "sweep", "attempt": attempts},
    )
    db.session.commit()

    gateway_status = payment_service.poll_gateway(transaction, source="sweep")
    if gateway_status == payment_service.OUTCOME_COMPLETED:
        return "completed"
    if gateway_status == payment_service.OUTCOME_FAILED:
        return "failed"

    if attempts >= max_attempts:
        payment_service.reconcile(
            transaction,
            payment_service.OUTCOME_FAILED,
            reason=f"Payment not confirmed after {attempts} verification attempts",
            source="sweep",
            error_code=TIMEOUT,
        )
        logger.warning(f"Tx {transaction.id} timed out after {attempts} attempts")
        return "timed_out"

    next_retry_at = now + _backoff(attempts, base_minutes)
    transaction_store.update_fields(transaction, next_retry_at=next_retry_at)
    db.session.commit()
    logger.info(
        f"Tx {transaction.id} still unresolved (attempt {attempts}), "
        f"next check {next_retry_at.isoformat()}"
    )
    return "rescheduled"


def reconcile_stuck_transactions(now=None, dry_run=False, limit=100):
    """Sweep stuck processing transactions.

    Args:
        now: reference time (defaults to the current UTC time).
        dry_run: if True, only report the candidates.

    Returns:
        dict: counts for checked / completed / failed / timed_out /
        rescheduled, plus the ids of the transactions checked.
    """
    config = current_app.config
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=config["RECONCILE_AFTER_MINUTES"])

    summary = {
        "checked": 0,
        "completed": 0,
        "failed": 0,
        "timed_out": 0,
        "rescheduled": 0,
        "transaction_ids": [],
    }

    pending_cutoff = now - timedelta(minutes=config["PENDING_TIMEOUT_MINUTES"])
    for transaction in transaction_store.list_stale_pending(pending_cutoff, limit=limit):
        summary["checked"] += 1
        summary["transaction_ids"].append(transaction.id)
        if dry_run:
            continue
        # No provider reference to poll: the gateway call never resolved
        if payment_service.expire_stale_pending(
            transaction, source="sweep", now=now
        ):
            summary["timed_out"] += 1

    candidates = transaction_store.list_stuck_processing(cutoff, now, limit=limit)
    logger.info(f"Reconciliation sweep: {len(candidates)} stuck transaction(s)")

    for transaction in candidates:
        summary["checked"] += 1
        summary["transaction_ids"].append(transaction.id)
        if dry_run:
            continue
        bucket = _check_transaction(
            transaction,
            now,
            config["RECONCILE_MAX_ATTEMPTS"],
            config["RECONCILE_BACKOFF_MINUTES"],
        )
        summary[bucket] += 1

    return summary


def retry_tier_updates(limit=100):
    """Re-apply the tier for completed transactions that never got it.

    Returns {"checked", "applied", "failed"}.
    """
    summary = {"checked": 0, "applied": 0, "failed": 0}

    for transaction in transaction_store.list_unapplied_upgrades(limit=limit):
        summary["checked"] += 1
        error = payment_service.apply_tier(transaction)
        details = {"tier_applied": error is None}
        if error:
            details["tier_update_error"] = error
        audit_service.append_entry(
            transaction, "retry", transaction.status, transaction.status, details
        )
        db.session.commit()

        if error is None:
            summary["applied"] += 1
            logger.info(f"Tx {transaction.id}: tier {transaction.target_tier} applied on retry")
        else:
            summary["failed"] += 1

    return summary
