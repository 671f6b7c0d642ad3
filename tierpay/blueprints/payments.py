"""Payments blueprint — /api/payments/*

Tier-upgrade payments for the authenticated profile. JSON in, JSON out.

Route Map:
  POST /api/payments/initiate                      — Start an upgrade payment
  GET  /api/payments/transactions/<id>             — Status poll (?refresh=1 re-checks the gateway)
  POST /api/payments/transactions/<id>/cancel      — Abandon checkout
  GET  /api/payments/tiers                         — Tier catalog with prices
"""

import logging
from decimal import Decimal

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from tierpay.extensions import limiter
from tierpay.services import payment_service
from tierpay.services.catalog_service import (
    CATALOGS,
    get_billing_period_months,
    get_next_tier,
    list_tiers,
)
from tierpay.services.errors import (
    DB_ERROR,
    GATEWAY_ERROR,
    NOT_FOUND,
    VALIDATION_FAILED,
    InvalidTransition,
    PaymentsError,
)

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")

HTTP_STATUS_BY_CODE = {
    VALIDATION_FAILED: 400,
    NOT_FOUND: 404,
    DB_ERROR: 503,
    GATEWAY_ERROR: 502,
}


def error_response(error):
    """Translate a PaymentsError into the {success, error, errorCode} body."""
    body = {"success": False, "error": error.message, "errorCode": error.code}
    transaction_id = error.details.get("transactionId")
    if transaction_id:
        body["transactionId"] = transaction_id
    status = 409 if isinstance(error, InvalidTransition) else (
        HTTP_STATUS_BY_CODE.get(error.code, 500)
    )
    return jsonify(body), status


@payments_bp.route("/initiate", methods=["POST"])
@limiter.limit("5 per minute", methods=["POST"])
@login_required
def initiate():
    """Start an upgrade payment.

    Body: {targetTier, amount, billingCycle, paymentMethod,
           membershipType?, email?, phoneNumber?, displayName?}
    """
    data = request.get_json(silent=True) or {}

    try:
        result = payment_service.initiate_payment(
            current_user,
            target_tier=(data.get("targetTier") or "").strip(),
            amount=data.get("amount"),
            billing_cycle=data.get("billingCycle") or "monthly",
            payment_method=data.get("paymentMethod"),
            subject_type=data.get("membershipType") or "creator",
            email=(data.get("email") or "").strip() or None,
            phone_number=data.get("phoneNumber"),
            display_name=data.get("displayName"),
            ip_address=request.remote_addr,
            user_agent=request.headers.get("User-Agent"),
        )
    except PaymentsError as e:
        logger.info(f"Initiate rejected for {current_user.id}: {e.code} {e.message}")
        return error_response(e)

    return jsonify(result), 200


@payments_bp.route("/transactions/<transaction_id>", methods=["GET"])
@login_required
def transaction_status(transaction_id):
    refresh = request.args.get("refresh", "").lower() in ("1", "true", "yes")
    try:
        transaction = payment_service.get_transaction_status(
            transaction_id, user_id=current_user.id, refresh=refresh
        )
    except PaymentsError as e:
        return error_response(e)
    return jsonify({"success": True, **transaction.to_dict()}), 200


@payments_bp.route("/transactions/<transaction_id>/cancel", methods=["POST"])
@login_required
def cancel(transaction_id):
    try:
        transaction = payment_service.cancel_transaction(
            transaction_id, user_id=current_user.id
        )
    except PaymentsError as e:
        return error_response(e)
    return jsonify({"success": True, **transaction.to_dict()}), 200


@payments_bp.route("/tiers", methods=["GET"])
def tiers():
    """Public price list for both membership types.

    Each tier carries the tier above it (the upgrade a client should offer)
    and the annual price spread over its billing period.
    """
    annual_months = get_billing_period_months("annual")
    return jsonify({
        subject_type: [
            {
                "tier": name,
                "ordinal": catalog[name]["ordinal"],
                "monthly": str(catalog[name]["monthly"]),
                "annual": str(catalog[name]["annual"]),
                "annualPerMonth": str(
                    (catalog[name]["annual"] / annual_months).quantize(Decimal("0.01"))
                ),
                "nextTier": get_next_tier(name, subject_type),
            }
            for name in list_tiers(subject_type)
        ]
        for subject_type, catalog in CATALOGS.items()
    }), 200
