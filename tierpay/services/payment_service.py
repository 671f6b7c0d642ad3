"""Payment service — orchestrates tier-upgrade payments.

Responsible for:
- Initiating an upgrade: idempotency, validation, pending row, gateway call
- Reconciling a gateway outcome (webhook or poll) into a terminal status,
  applying the tier to the profile in the same unit of work
- User cancellation, refund bookkeeping and client status polls

Every status change goes through transaction_store.transition() and appends
an audit entry in the same commit. Rejected moves are audited too.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation

import bleach
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from tierpay.extensions import db
from tierpay.models.transaction import (
    ACTIVE_STATUSES,
    BILLING_CYCLES,
    CANCELLED,
    COMPLETED,
    FAILED,
    PROCESSING,
    REFUNDED,
    SUBJECT_TYPES,
)
from tierpay.services import audit_service, transaction_store
from tierpay.services.catalog_service import get_price, is_valid_upgrade
from tierpay.services.errors import (
    GATEWAY_ERROR,
    TIMEOUT,
    DuplicateActiveTransaction,
    GatewayError,
    InvalidTransition,
    StoreError,
    TransactionNotFound,
    ValidationError,
)
from tierpay.services.gateway_service import get_registry
from tierpay.services.idempotency_service import current_bucket, derive_idempotency_key
from tierpay.services.profile_service import get_profile_store

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Reconcile outcomes
OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"


def _commit(context):
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Commit failed ({context}): {e}", exc_info=True)
        raise StoreError("Failed to save transaction update")


def _apply_transition(transaction, new_status, action, details=None, **fields):
    """Transition + audit entry (accepted or rejected). Caller commits.

    Returns True if the row moved.
    """
    previous = transaction.status
    details = dict(details or {})
    try:
        moved = transaction_store.transition(transaction, new_status, **fields)
    except InvalidTransition:
        moved = False

    if moved:
        audit_service.append_entry(transaction, action, previous, new_status, details)
    else:
        details.update(rejected=True, attempted_status=new_status)
        audit_service.append_entry(
            transaction, action, previous, transaction.status, details
        )
    return moved


def _sanitize(text):
    """Strip all HTML tags from user input."""
    if text is None:
        return text
    return bleach.clean(text, tags=[], strip=True).strip() or None


def _skip_message(transaction):
    if transaction.is_terminal:
        return f"already_{transaction.status}"
    return f"not_allowed_from_{transaction.status}"


def _get_owned(transaction_id, user_id=None):
    transaction = transaction_store.get(transaction_id)
    if transaction is None or (user_id is not None and transaction.user_id != user_id):
        raise TransactionNotFound("Transaction not found")
    return transaction


# ──────────────────────────────────────────────
# Initiate
# ──────────────────────────────────────────────

def _existing_response(transaction):
    return {
        "success": True,
        "transactionId": transaction.id,
        "checkoutUrl": transaction.checkout_url,
        "status": transaction.status,
        "existing": True,
    }


def _validate_request(profile, subject_type, target_tier, amount, billing_cycle,
                      email):
    """Raise ValidationError for a malformed or non-upgrade request.

    Returns the amount as a Decimal.
    """
    if subject_type not in SUBJECT_TYPES:
        raise ValidationError(f"Unknown membership type: {subject_type}")
    if not target_tier:
        raise ValidationError("Missing required field: targetTier")
    if billing_cycle not in BILLING_CYCLES:
        raise ValidationError(f"Invalid billing cycle: {billing_cycle}")

    current_tier = profile.tier_for(subject_type)
    if not is_valid_upgrade(current_tier, target_tier, subject_type):
        raise ValidationError(
            f"Can only upgrade to a higher tier (current: {current_tier})"
        )

    try:
        amount = Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("Invalid amount")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    expected = get_price(target_tier, billing_cycle, subject_type)
    if amount != expected:
        raise ValidationError(
            f"Amount does not match the {billing_cycle} price of {target_tier}"
        )

    if not email or not EMAIL_RE.match(email):
        raise ValidationError("A valid email address is required")

    return amount


def initiate_payment(profile, target_tier, amount, billing_cycle, payment_method,
                     subject_type="creator", email=None, phone_number=None,
                     display_name=None, ip_address=None, user_agent=None,
                     now=None):
    """Start an upgrade payment for `profile`.

    Returns {"success": True, "transactionId", "checkoutUrl", ...}.
    Raises ValidationError (nothing written), StoreError (nothing sent to a
    gateway) or GatewayError (transaction recorded as failed).
    """
    config = current_app.config

    # --- 1. Idempotency ---
    bucket = current_bucket(now, config["IDEMPOTENCY_BUCKET_SECONDS"])
    idempotency_key = derive_idempotency_key(
        profile.id, target_tier, bucket, subject_type
    )
    existing = transaction_store.find_active_by_idempotency_key(idempotency_key)
    if existing is not None and not expire_stale_pending(existing):
        logger.info(f"Idempotent hit {idempotency_key} -> tx {existing.id}")
        return _existing_response(existing)

    # --- 2. Validation ---
    email = email or profile.email
    amount = _validate_request(
        profile, subject_type, target_tier, amount, billing_cycle, email
    )
    adapter = get_registry().resolve(payment_method)
    gateway_name = adapter.name

    # --- 3. Pending row ---
    pending_fields = dict(
        user_id=profile.id,
        subject_type=subject_type,
        previous_tier=profile.tier_for(subject_type) or "none",
        target_tier=target_tier,
        amount=amount,
        currency=config["DEFAULT_CURRENCY"],
        billing_cycle=billing_cycle,
        payment_method=payment_method,
        gateway=gateway_name,
        idempotency_key=idempotency_key,
        ip_address=ip_address,
        user_agent=user_agent,
        contact={
            "email": email,
            "phone_number": phone_number or profile.phone_number,
            "display_name": _sanitize(display_name) or profile.display_name,
        },
    )
    try:
        transaction = transaction_store.create_pending(**pending_fields)
    except DuplicateActiveTransaction as e:
        if not expire_stale_pending(e.existing):
            return _existing_response(e.existing)
        # The orphaned row no longer holds the active-upgrade slot
        try:
            transaction = transaction_store.create_pending(**pending_fields)
        except DuplicateActiveTransaction as retry:
            return _existing_response(retry.existing)

    # --- 4. Gateway call (no row lock held) ---
    try:
        result = adapter.initiate(transaction)
    except GatewayError as e:
        _apply_transition(
            transaction,
            FAILED,
            "fail",
            details={"gateway": gateway_name, "stage": "initiate", **e.details},
            error_code=e.code,
            error_message=e.message,
            error_details=e.details,
        )
        _commit("initiate failure")
        logger.warning(f"Tx {transaction.id} failed at {gateway_name}: {e.message}")
        raise GatewayError(e.message, details={"transactionId": transaction.id})

    # --- 5. Processing ---
    moved = _apply_transition(
        transaction,
        PROCESSING,
        "init",
        details={"gateway": gateway_name, "reference": result["reference"]},
        provider_reference=result["reference"],
        provider_session_id=result.get("session_id"),
        checkout_url=result["checkout_url"],
    )
    _commit("initiate success")
    if not moved:
        raise InvalidTransition(
            f"Transaction is already {transaction.status}",
            details={"transactionId": transaction.id},
        )

    logger.info(
        f"Tx {transaction.id} processing at {gateway_name} "
        f"(ref {result['reference']})"
    )
    return {
        "success": True,
        "transactionId": transaction.id,
        "checkoutUrl": transaction.checkout_url,
        "status": transaction.status,
    }


# ──────────────────────────────────────────────
# Reconcile (webhook + poll convergence)
# ──────────────────────────────────────────────

def apply_tier(transaction):
    """Write the purchased tier to the profile. Returns an error string or None."""
    try:
        get_profile_store().set_user_tier(
            transaction.user_id, transaction.target_tier, transaction.subject_type
        )
    except Exception as e:
        # Completion still commits; retry_tier_updates() picks it up.
        logger.error(
            f"Tx {transaction.id} completed but tier update failed: {e}",
            exc_info=True,
        )
        transaction_store.update_fields(
            transaction, tier_update_error=str(e)[:500] or e.__class__.__name__
        )
        return str(e) or e.__class__.__name__

    transaction_store.update_fields(
        transaction,
        tier_applied_at=datetime.now(timezone.utc),
        tier_update_error=None,
    )
    return None


def _complete(transaction, provider_transaction_id=None, source="webhook"):
    previous = transaction.status
    details = {"source": source, "provider_transaction_id": provider_transaction_id}
    try:
        moved = transaction_store.transition(transaction, COMPLETED)
    except InvalidTransition:
        moved = False

    if not moved:
        details.update(rejected=True, attempted_status=COMPLETED)
        audit_service.append_entry(
            transaction, "complete", previous, transaction.status, details
        )
        _commit("complete rejected")
        return "skipped", _skip_message(transaction)

    tier_error = apply_tier(transaction)
    details["tier_applied"] = tier_error is None
    if tier_error:
        details["tier_update_error"] = tier_error
    audit_service.append_entry(transaction, "complete", previous, COMPLETED, details)
    _commit("complete")

    logger.info(
        f"Tx {transaction.id} completed via {source}; "
        f"{transaction.subject_type} tier -> {transaction.target_tier}"
        f"{'' if tier_error is None else ' (tier update pending retry)'}"
    )
    return "processed", "completed"


def _fail(transaction, reason=None, error_code=GATEWAY_ERROR, source="webhook"):
    moved = _apply_transition(
        transaction,
        FAILED,
        "fail",
        details={"source": source, "reason": reason},
        error_code=error_code,
        error_message=reason or "Payment failed",
    )
    _commit("fail")
    if not moved:
        return "skipped", _skip_message(transaction)
    logger.info(f"Tx {transaction.id} failed via {source}: {reason}")
    return "processed", "failed"


def reconcile(transaction, outcome, provider_transaction_id=None, reason=None,
              source="webhook", error_code=GATEWAY_ERROR):
    """Drive `transaction` to the terminal state reported by a gateway.

    Safe to call any number of times and concurrently: terminal rows are
    skipped, and a caller that loses the compare-and-set gets "skipped".
    Returns (outcome, message) with outcome "processed" or "skipped".
    """
    if transaction.is_terminal:
        if outcome == OUTCOME_COMPLETED and transaction.status != COMPLETED:
            logger.error(
                f"Payment reported completed for {transaction.status} tx "
                f"{transaction.id} (provider tx {provider_transaction_id})"
            )
        return "skipped", _skip_message(transaction)

    if outcome == OUTCOME_COMPLETED:
        return _complete(transaction, provider_transaction_id, source)
    if outcome == OUTCOME_FAILED:
        return _fail(transaction, reason, error_code=error_code, source=source)
    return "skipped", "status_pending"


def expire_stale_pending(transaction, source="initiate", now=None):
    """Fail a pending transaction whose gateway call never resolved.

    A pending row older than PENDING_TIMEOUT_MINUTES was orphaned by a crash
    or a lost commit after initiation; it is failed with TIMEOUT so the
    upgrade can be started again. Returns True if the row was expired.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=current_app.config["PENDING_TIMEOUT_MINUTES"])
    if not transaction_store.is_stale_pending(transaction, cutoff):
        return False
    outcome, _ = _fail(
        transaction,
        reason="Payment initialization did not complete",
        error_code=TIMEOUT,
        source=source,
    )
    if outcome == "processed":
        logger.warning(f"Tx {transaction.id} expired in pending ({source})")
    return outcome == "processed"


def poll_gateway(transaction, source="poll"):
    """Ask the gateway for the transaction's status and reconcile on a final answer.

    Returns the normalized gateway status, or None when the gateway could not
    be reached.
    """
    adapter = get_registry().get(transaction.gateway)
    if adapter is None or not transaction.provider_reference:
        logger.warning(f"Tx {transaction.id}: cannot poll gateway {transaction.gateway}")
        return None
    try:
        result = adapter.get_status(transaction.provider_reference)
    except GatewayError as e:
        logger.warning(f"Tx {transaction.id}: status check failed: {e.message}")
        return None

    if result["status"] in (OUTCOME_COMPLETED, OUTCOME_FAILED):
        reconcile(
            transaction,
            result["status"],
            provider_transaction_id=result.get("provider_transaction_id"),
            reason=result.get("error"),
            source=source,
        )
    return result["status"]


# ──────────────────────────────────────────────
# Client and admin operations
# ──────────────────────────────────────────────

def get_transaction_status(transaction_id, user_id=None, refresh=False):
    """Return the transaction for a status poll, counting the poll.

    With `refresh`, a processing transaction is re-checked at the gateway.
    """
    transaction = _get_owned(transaction_id, user_id)
    transaction_store.increment_counter(
        transaction, "verification_count",
        last_verified_at=datetime.now(timezone.utc),
    )

    if (
        refresh
        and transaction.status == PROCESSING
        and current_app.config["POLL_REFRESH_ENABLED"]
    ):
        audit_service.append_entry(
            transaction, "verify", PROCESSING, PROCESSING, {"source": "poll"}
        )
        _commit("poll verify")
        poll_gateway(transaction, source="poll")

    _commit("status poll")
    return transaction


def cancel_transaction(transaction_id, user_id):
    """User abandoned checkout: move an active transaction to cancelled.

    A processing transaction is first re-checked at the gateway so a payment
    that already went through is completed rather than cancelled.
    """
    transaction = _get_owned(transaction_id, user_id)
    if transaction.status not in ACTIVE_STATUSES:
        raise InvalidTransition(f"Transaction is already {transaction.status}")

    if transaction.status == PROCESSING:
        gateway_status = poll_gateway(transaction, source="cancel")
        if gateway_status in (OUTCOME_COMPLETED, OUTCOME_FAILED):
            return transaction

    moved = _apply_transition(
        transaction, CANCELLED, "cancel", details={"source": "user"}
    )
    _commit("cancel")
    if not moved:
        raise InvalidTransition(f"Transaction is already {transaction.status}")
    logger.info(f"Tx {transaction.id} cancelled by user {user_id}")
    return transaction


def mark_refunded(transaction_id, reason=None, actor_id=None):
    """Record a refund made at the gateway. Status bookkeeping only; the
    profile tier is left to the membership owner."""
    transaction = _get_owned(transaction_id)
    moved = _apply_transition(
        transaction,
        REFUNDED,
        "refund",
        details={"reason": _sanitize(reason), "actor_id": actor_id},
    )
    _commit("refund")
    if not moved:
        raise InvalidTransition(
            f"Only completed transactions can be refunded (status: {transaction.status})"
        )
    logger.info(f"Tx {transaction.id} marked refunded by {actor_id}")
    return transaction


def list_inconsistencies(limit=100):
    """Completed transactions whose tier was never applied."""
    return transaction_store.list_unapplied_upgrades(limit=limit)
