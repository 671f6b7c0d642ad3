"""Admin blueprint — /admin/payments/*

Operator views over the payment store. All routes protected by the
@admin_required decorator.

Route Map:
  GET  /admin/payments/transactions                 — Recent transactions (?status=)
  GET  /admin/payments/transactions/<id>            — Transaction + audit trail
  POST /admin/payments/transactions/<id>/refund     — Record a gateway refund
  GET  /admin/payments/inconsistencies              — Paid but tier not applied
  POST /admin/payments/reconcile                    — Run the stuck-transaction sweep
  POST /admin/payments/retry-tier-updates           — Re-apply failed tier writes
  GET  /admin/payments/webhook-events               — Recent webhook events (?status=)
  GET  /admin/payments/audit/verify                 — Verify the audit hash chain
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user

from tierpay.blueprints.payments import error_response
from tierpay.decorators import admin_required
from tierpay.models.transaction import STATUSES, PaymentTransaction
from tierpay.models.webhook_event import PaymentWebhookEvent
from tierpay.services import audit_service, payment_service, reconciliation_service
from tierpay.services import transaction_store
from tierpay.services.errors import PaymentsError, TransactionNotFound

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin/payments")


def _limit_arg(default=50, maximum=500):
    try:
        return max(1, min(int(request.args.get("limit", default)), maximum))
    except ValueError:
        return default


def _audit_entry_dict(entry):
    return {
        "sequence": entry.sequence,
        "action": entry.action,
        "previousStatus": entry.previous_status,
        "newStatus": entry.new_status,
        "details": entry.details,
        "entryHash": entry.entry_hash,
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
    }


# ══════════════════════════════════════════════
#  TRANSACTIONS
# ══════════════════════════════════════════════

@admin_bp.route("/transactions")
@admin_required
def transactions():
    query = PaymentTransaction.query
    status = request.args.get("status")
    if status:
        if status not in STATUSES:
            return jsonify({"success": False, "error": f"Unknown status: {status}"}), 400
        query = query.filter_by(status=status)
    rows = query.order_by(PaymentTransaction.created_at.desc()).limit(_limit_arg()).all()
    return jsonify({
        "success": True,
        "transactions": [
            {**tx.to_dict(), "userId": tx.user_id, "tierAppliedAt": (
                tx.tier_applied_at.isoformat() if tx.tier_applied_at else None
            )}
            for tx in rows
        ],
    }), 200


@admin_bp.route("/transactions/<transaction_id>")
@admin_required
def transaction_detail(transaction_id):
    transaction = transaction_store.get(transaction_id)
    if transaction is None:
        return error_response(TransactionNotFound("Transaction not found"))
    return jsonify({
        "success": True,
        "transaction": {
            **transaction.to_dict(),
            "userId": transaction.user_id,
            "providerReference": transaction.provider_reference,
            "verificationCount": transaction.verification_count,
            "verificationAttempts": transaction.verification_attempts,
            "tierUpdateError": transaction.tier_update_error,
        },
        "audit": [
            _audit_entry_dict(entry)
            for entry in audit_service.list_entries(transaction.id)
        ],
    }), 200


@admin_bp.route("/transactions/<transaction_id>/refund", methods=["POST"])
@admin_required
def refund(transaction_id):
    data = request.get_json(silent=True) or {}
    try:
        transaction = payment_service.mark_refunded(
            transaction_id,
            reason=(data.get("reason") or "").strip() or None,
            actor_id=current_user.id,
        )
    except PaymentsError as e:
        return error_response(e)
    return jsonify({"success": True, **transaction.to_dict()}), 200


# ══════════════════════════════════════════════
#  RECONCILIATION
# ══════════════════════════════════════════════

@admin_bp.route("/inconsistencies")
@admin_required
def inconsistencies():
    """Completed payments whose profile tier was never written."""
    rows = payment_service.list_inconsistencies(limit=_limit_arg())
    return jsonify({
        "success": True,
        "count": len(rows),
        "transactions": [
            {
                **tx.to_dict(),
                "userId": tx.user_id,
                "tierUpdateError": tx.tier_update_error,
            }
            for tx in rows
        ],
    }), 200


@admin_bp.route("/reconcile", methods=["POST"])
@admin_required
def reconcile():
    dry_run = request.args.get("dry_run", "").lower() in ("1", "true", "yes")
    summary = reconciliation_service.reconcile_stuck_transactions(dry_run=dry_run)
    logger.info(f"Admin {current_user.id} ran reconciliation: {summary}")
    return jsonify({"success": True, "dryRun": dry_run, **summary}), 200


@admin_bp.route("/retry-tier-updates", methods=["POST"])
@admin_required
def retry_tier_updates():
    summary = reconciliation_service.retry_tier_updates()
    return jsonify({"success": True, **summary}), 200


@admin_bp.route("/webhook-events")
@admin_required
def webhook_events():
    query = PaymentWebhookEvent.query
    status = request.args.get("status")
    if status:
        query = query.filter_by(status=status)
    rows = query.order_by(PaymentWebhookEvent.received_at.desc()).limit(_limit_arg()).all()
    return jsonify({
        "success": True,
        "events": [
            {
                "gateway": event.gateway,
                "eventId": event.event_id,
                "eventType": event.event_type,
                "transactionId": event.transaction_id,
                "providerReference": event.provider_reference,
                "reportedStatus": event.reported_status,
                "status": event.status,
                "error": event.error_message,
                "receivedAt": event.received_at.isoformat() if event.received_at else None,
            }
            for event in rows
        ],
    }), 200


@admin_bp.route("/audit/verify")
@admin_required
def verify_audit():
    problems = audit_service.verify_chain(request.args.get("transaction_id"))
    return jsonify({
        "success": True,
        "intact": not problems,
        "problems": problems,
    }), 200
