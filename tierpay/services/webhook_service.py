"""Webhook service — receives gateway notifications.

Flow per delivery:
1. Verify the HMAC signature over the raw body (no DB write if it fails)
2. Parse with the gateway's adapter
3. Record the event, deduplicated by (gateway, event_id); a redelivery of a
   failed or abandoned event reclaims it and runs again
4. Resolve the transaction by provider reference
5. Hand the outcome to payment_service.reconcile()

Event rows move received -> processing -> processed | failed | skipped and
are never touched again once processed or skipped.
"""

import json
import logging
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from tierpay.extensions import db
from tierpay.models import webhook_event as event_status
from tierpay.models.webhook_event import PaymentWebhookEvent
from tierpay.services import payment_service, transaction_store
from tierpay.services.errors import SignatureError, StoreError, ValidationError
from tierpay.services.gateway_service import get_registry

logger = logging.getLogger(__name__)

# Outcomes returned to the blueprint
PROCESSED = "processed"
SKIPPED = "skipped"
FAILED = "failed"


def _finish(event, status, error_message=None):
    event.status = status
    event.error_message = error_message
    event.processed_at = datetime.now(timezone.utc)
    db.session.commit()


def _reclaim_event(gateway_name, parsed, payload, signature):
    """Take over an already-recorded event so this delivery can run it again.

    Processed and skipped events are settled. A failed event is reclaimed
    straight away; a received or processing one only once it is older than
    WEBHOOK_STALE_MINUTES (its worker died). The claim is a conditional
    UPDATE on the observed status, so one redelivery wins a race.
    Returns the event reset to received, or None.
    """
    existing = PaymentWebhookEvent.query.filter_by(
        gateway=gateway_name, event_id=parsed["event_id"]
    ).first()
    if existing is None or existing.status in event_status.SETTLED_STATUSES:
        return None

    now = datetime.now(timezone.utc)
    observed = existing.status
    claim = (
        update(PaymentWebhookEvent)
        .where(PaymentWebhookEvent.id == existing.id)
        .where(PaymentWebhookEvent.status == observed)
    )
    if observed != event_status.FAILED:
        stale_before = now - timedelta(
            minutes=current_app.config["WEBHOOK_STALE_MINUTES"]
        )
        claim = claim.where(PaymentWebhookEvent.received_at < stale_before)

    result = db.session.execute(
        claim.values(
            status=event_status.RECEIVED,
            event_type=parsed["event_type"],
            provider_reference=parsed["reference"],
            reported_status=parsed["status"],
            payload=payload,
            signature=signature,
            signature_verified=True,
            transaction_id=None,
            error_message=None,
            received_at=now,
            processed_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    if result.rowcount != 1:
        return None

    db.session.refresh(existing)
    logger.info(
        f"Reclaimed {observed} {gateway_name} event {parsed['event_id']} "
        f"for redelivery"
    )
    return existing


def _record_event(gateway_name, parsed, payload, signature):
    """Insert the event row.

    Returns None if the event was already received and is settled or still
    being worked on elsewhere.
    """
    event = PaymentWebhookEvent(
        gateway=gateway_name,
        event_id=parsed["event_id"],
        event_type=parsed["event_type"],
        provider_reference=parsed["reference"],
        reported_status=parsed["status"],
        payload=payload,
        signature=signature,
        signature_verified=True,
        status=event_status.RECEIVED,
    )
    try:
        with db.session.begin_nested():
            db.session.add(event)
            db.session.flush()
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return _reclaim_event(gateway_name, parsed, payload, signature)
    return event


def receive_webhook(gateway_name, raw_body, signature):
    """Process one webhook delivery.

    Returns (outcome, message) with outcome "processed", "skipped" or
    "failed". Raises SignatureError for a missing or wrong signature and
    ValidationError for an unknown gateway or unparseable body.
    """
    adapter = get_registry().get(gateway_name)
    if adapter is None:
        raise ValidationError(f"Unknown gateway: {gateway_name}")

    # --- 1. Signature ---
    if not adapter.verify_signature(raw_body, signature):
        logger.warning(
            f"Rejected {gateway_name} webhook: invalid signature "
            f"({(signature or 'missing')[:8]}...)"
        )
        raise SignatureError("Invalid signature")

    # --- 2. Parse ---
    try:
        payload = json.loads(raw_body)
        parsed = adapter.parse_webhook(payload)
    except (ValueError, TypeError, AttributeError) as e:
        logger.warning(f"Unparseable {gateway_name} webhook: {e}")
        raise ValidationError("Invalid webhook payload")

    # --- 3. Dedupe ---
    event = _record_event(gateway_name, parsed, payload, signature)
    if event is None:
        logger.info(f"Duplicate {gateway_name} event {parsed['event_id']}, skipping")
        return SKIPPED, "duplicate_event"

    event.status = event_status.PROCESSING
    db.session.commit()

    # --- 4. Resolve transaction ---
    transaction = transaction_store.get_by_provider_reference(
        gateway_name, parsed["reference"]
    )
    if transaction is None:
        logger.error(
            f"{gateway_name} event {parsed['event_id']}: no transaction for "
            f"reference {parsed['reference']}"
        )
        _finish(event, event_status.FAILED, "Transaction not found for reference")
        return FAILED, "transaction_not_found"

    event.transaction_id = transaction.id

    if parsed["status"] not in (
        payment_service.OUTCOME_COMPLETED, payment_service.OUTCOME_FAILED
    ):
        _finish(event, event_status.SKIPPED, "Informational status")
        return SKIPPED, "status_pending"

    # --- 5. Reconcile (terminal transactions come back as skipped) ---
    try:
        outcome, message = payment_service.reconcile(
            transaction,
            parsed["status"],
            provider_transaction_id=parsed.get("provider_transaction_id"),
            reason=parsed.get("reason"),
            source=f"webhook:{gateway_name}",
        )
    except StoreError as e:
        # The reconciliation sweep settles the transaction later.
        _finish(event, event_status.FAILED, e.message)
        raise
    if outcome == PROCESSED:
        _finish(event, event_status.PROCESSED)
    else:
        _finish(event, event_status.SKIPPED, message)

    logger.info(
        f"{gateway_name} event {parsed['event_id']} for tx {transaction.id}: "
        f"{outcome} ({message})"
    )
    return outcome, message
