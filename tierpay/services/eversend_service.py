"""Eversend adapter — card and mobile money collections.

API calls:
- POST /collections/checkout        create a hosted checkout for a charge
- GET  /collections/<reference>     current status of a collection

Webhooks are signed with HMAC-SHA256 over the raw body in the
X-Eversend-Signature header.
"""

import logging

import requests

from tierpay.services.errors import GatewayError
from tierpay.services.gateway_service import GatewayAdapter, normalize_status

logger = logging.getLogger(__name__)


def _unwrap(body):
    """Eversend wraps most responses in {"code": ..., "data": {...}}."""
    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        return body["data"]
    return body if isinstance(body, dict) else {}


class EversendGateway(GatewayAdapter):
    name = "eversend"
    signature_header = "X-Eversend-Signature"

    def _headers(self, idempotency_key=None):
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def initiate(self, transaction):
        self._require_key()
        contact = transaction.contact or {}
        body = {
            "amount": str(transaction.amount),
            "currency": transaction.currency,
            "email": contact.get("email"),
            "phoneNumber": contact.get("phone_number"),
            "customerName": contact.get("display_name"),
            "description": f"Membership Upgrade - TX{transaction.id[:8]}",
            "externalId": transaction.id,
            "redirectUrl": f"{self.app_base_url}/membership-callback",
            "metadata": {
                "transactionId": transaction.id,
                "type": "membership-upgrade",
                "targetTier": transaction.target_tier,
            },
        }

        try:
            resp = requests.post(
                f"{self.api_url}/collections/checkout",
                json=body,
                headers=self._headers(idempotency_key=transaction.id),
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            logger.warning(f"Eversend initiate timed out for tx {transaction.id}")
            raise GatewayError(
                "The payment provider did not respond in time. Please try again.",
                details={"gateway": self.name, "reason": "timeout"},
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Eversend initiate request failed for tx {transaction.id}: {e}")
            raise GatewayError(
                "Payment service error",
                details={"gateway": self.name, "reason": "connection"},
            )

        try:
            data = _unwrap(resp.json())
        except ValueError:
            data = {}

        if not resp.ok:
            logger.warning(
                f"Eversend rejected tx {transaction.id}: HTTP {resp.status_code}"
            )
            raise GatewayError(
                "Payment initialization failed",
                details={
                    "gateway": self.name,
                    "http_status": resp.status_code,
                    "provider_message": data.get("message"),
                },
            )

        reference = data.get("reference")
        checkout_url = data.get("checkoutLink") or data.get("paymentLink")
        if not reference or not checkout_url:
            logger.warning(f"Eversend response for tx {transaction.id} missing reference/link")
            raise GatewayError(
                "Payment initialization failed",
                details={"gateway": self.name, "reason": "malformed_response"},
            )

        return {
            "reference": str(reference),
            "checkout_url": checkout_url,
            "session_id": str(data.get("sessionId") or reference),
            "status": normalize_status(data.get("status")),
        }

    def get_status(self, reference):
        self._require_key()
        try:
            resp = requests.get(
                f"{self.api_url}/collections/{reference}",
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            logger.warning(f"Eversend status check timed out for {reference}")
            raise GatewayError(
                "Status check timed out",
                details={"gateway": self.name, "reason": "timeout"},
            )
        except requests.exceptions.RequestException as e:
            logger.warning(f"Eversend status check failed for {reference}: {e}")
            raise GatewayError(
                "Status check failed",
                details={"gateway": self.name, "reason": "connection"},
            )

        if resp.status_code == 404:
            # Checkout created but the customer never paid
            return {
                "reference": reference,
                "status": "pending",
                "provider_transaction_id": None,
                "error": None,
            }

        try:
            data = _unwrap(resp.json())
        except ValueError:
            data = {}

        if not resp.ok:
            raise GatewayError(
                "Status check failed",
                details={"gateway": self.name, "http_status": resp.status_code},
            )

        status = normalize_status(data.get("status"))
        return {
            "reference": str(data.get("reference") or reference),
            "status": status,
            "provider_transaction_id": data.get("transactionId"),
            "error": data.get("reason") if status == "failed" else None,
        }

    def parse_webhook(self, payload):
        """Normalize an Eversend webhook body.

        Shape: {"eventId", "eventType", "reference", "status", "amount",
                "reason", "transactionId"}
        Raises ValueError when required fields are missing.
        """
        reference = payload.get("reference")
        raw_status = payload.get("status")
        if not reference or not raw_status:
            raise ValueError("Missing required fields: reference, status")

        event_id = payload.get("eventId") or payload.get("id")
        if not event_id:
            # Older payloads carry no event id; one status per reference.
            event_id = f"{reference}:{raw_status}"

        return {
            "event_id": str(event_id),
            "event_type": payload.get("eventType") or "transaction_status_updated",
            "reference": str(reference),
            "status": normalize_status(raw_status),
            "reason": payload.get("reason") or payload.get("message"),
            "provider_transaction_id": payload.get("transactionId"),
        }
