"""Gateway service — adapter contract and payment-method routing.

Each payment provider has one adapter (eversend_service, flutterwave_service)
normalizing that provider's API into one internal shape:

    initiate(transaction)  -> {"reference", "checkout_url", "session_id", "status"}
    get_status(reference)  -> {"reference", "status", "provider_transaction_id", "error"}
    parse_webhook(payload) -> {"event_id", "event_type", "reference", "status",
                               "reason", "provider_transaction_id"}
    verify_signature(raw_body, signature) -> bool

`status` is always one of "completed", "failed", "pending".

The GatewayRegistry maps a payment method to exactly one adapter. It lives
on app.extensions["payment_gateways"] so tests can swap in fake adapters.
"""

import hashlib
import hmac
import logging

from flask import current_app

from tierpay.services.errors import GatewayError, ValidationError

logger = logging.getLogger(__name__)

COMPLETED = "completed"
FAILED = "failed"
PENDING = "pending"

_STATUS_MAP = {
    "completed": COMPLETED,
    "complete": COMPLETED,
    "success": COMPLETED,
    "successful": COMPLETED,
    "succeeded": COMPLETED,
    "paid": COMPLETED,
    "failed": FAILED,
    "failure": FAILED,
    "declined": FAILED,
    "error": FAILED,
    "cancelled": FAILED,
    "canceled": FAILED,
    "expired": FAILED,
}


def normalize_status(raw_status):
    """Map a provider status string to completed / failed / pending."""
    return _STATUS_MAP.get(str(raw_status or "").strip().lower(), PENDING)


class GatewayAdapter:
    """Base class for provider adapters. Subclasses set `name` and
    `signature_header` and implement the provider calls."""

    name = None
    signature_header = None

    def __init__(self, api_url, secret_key, webhook_secret, timeout=15,
                 app_base_url=None):
        self.api_url = (api_url or "").rstrip("/")
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self.app_base_url = (app_base_url or "").rstrip("/")

    def _require_key(self):
        if not self.secret_key:
            logger.error(f"{self.name}: API key not configured")
            raise GatewayError("Payment service not configured")

    def initiate(self, transaction):
        raise NotImplementedError

    def get_status(self, reference):
        raise NotImplementedError

    def parse_webhook(self, payload):
        raise NotImplementedError

    def verify_signature(self, raw_body, signature):
        """HMAC-SHA256 (hex) over the raw request body, compared in constant time."""
        if not signature or not self.webhook_secret:
            return False
        if isinstance(raw_body, str):
            raw_body = raw_body.encode("utf-8")
        expected = hmac.new(
            self.webhook_secret.encode("utf-8"), raw_body, hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(
            expected.encode("utf-8"), signature.strip().encode("utf-8")
        )


class GatewayRegistry:
    """Pure lookup: payment method -> gateway name -> adapter."""

    def __init__(self, adapters, method_map):
        self.adapters = {adapter.name: adapter for adapter in adapters}
        self.method_map = dict(method_map)

    def gateway_for(self, payment_method):
        gateway_name = self.method_map.get(payment_method)
        if gateway_name is None:
            raise ValidationError(f"Unsupported payment method: {payment_method}")
        return gateway_name

    def get(self, gateway_name):
        return self.adapters.get(gateway_name)

    def resolve(self, payment_method):
        gateway_name = self.gateway_for(payment_method)
        adapter = self.get(gateway_name)
        if adapter is None:
            logger.error(f"No adapter registered for gateway {gateway_name}")
            raise GatewayError("Payment service not configured")
        return adapter


def build_registry(config):
    """Build the default registry (Eversend + Flutterwave) from app config."""
    from tierpay.services.eversend_service import EversendGateway
    from tierpay.services.flutterwave_service import FlutterwaveGateway

    timeout = config.get("GATEWAY_TIMEOUT_SECONDS", 15)
    app_base_url = config.get("APP_BASE_URL")
    adapters = [
        EversendGateway(
            api_url=config.get("EVERSEND_API_URL"),
            secret_key=config.get("EVERSEND_API_KEY"),
            webhook_secret=config.get("EVERSEND_WEBHOOK_SECRET"),
            timeout=timeout,
            app_base_url=app_base_url,
        ),
        FlutterwaveGateway(
            api_url=config.get("FLUTTERWAVE_API_URL"),
            secret_key=config.get("FLUTTERWAVE_SECRET_KEY"),
            webhook_secret=config.get("FLUTTERWAVE_WEBHOOK_SECRET"),
            timeout=timeout,
            app_base_url=app_base_url,
        ),
    ]
    return GatewayRegistry(adapters, config.get("PAYMENT_METHOD_GATEWAYS", {}))


def init_gateways(app):
    """Attach the gateway registry to the app."""
    app.extensions["payment_gateways"] = build_registry(app.config)


def get_registry():
    return current_app.extensions["payment_gateways"]
