"""Webhooks blueprint — /webhooks/<gateway>

Receives Eversend and Flutterwave payment notifications.
Raw body is required for signature verification.
"""

import logging

from flask import Blueprint, jsonify, request

from tierpay.extensions import limiter
from tierpay.services.errors import SignatureError, StoreError, ValidationError
from tierpay.services.gateway_service import get_registry
from tierpay.services.webhook_service import receive_webhook

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")


@webhooks_bp.route("/<gateway_name>", methods=["POST"])
@limiter.limit("120 per minute")
def gateway_webhook(gateway_name):
    """Receive and process a gateway webhook.

    1. Get raw body (required for signature verification)
    2. Read the gateway's signature header
    3. Pass to receive_webhook (idempotent via payment_webhook_events)
    4. Return 200 for processed/skipped/unknown-reference so the gateway
       does not retry, 400 for a bad signature or body
    """
    adapter = get_registry().get(gateway_name)
    if adapter is None:
        return jsonify({"error": "Unknown gateway"}), 404

    payload = request.get_data()
    signature = request.headers.get(adapter.signature_header)

    if not signature:
        logger.warning(f"{gateway_name} webhook received without {adapter.signature_header}")
        return jsonify({"error": "Missing signature"}), 400

    try:
        outcome, message = receive_webhook(gateway_name, payload, signature)
    except SignatureError:
        return jsonify({"error": "Invalid signature"}), 400
    except ValidationError as e:
        return jsonify({"error": e.message}), 400
    except StoreError as e:
        logger.error(f"{gateway_name} webhook processing failed: {e.message}")
        return jsonify({"error": "Processing failed"}), 500

    return jsonify({"status": outcome, "message": message}), 200
