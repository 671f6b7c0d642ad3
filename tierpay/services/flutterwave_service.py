"""Flutterwave adapter — express pay (hosted Standard checkout).

API calls:
- POST /v3/payments                                   create a payment link
- GET  /v3/transactions/verify_by_reference?tx_ref=   status by our tx_ref

Our transaction id is sent as `tx_ref` and Flutterwave echoes it back in
webhooks, so tx_ref is the provider reference stored on the transaction.
"""

import logging

import requests

from tierpay.services.errors import GatewayError
from tierpay.services.gateway_service import GatewayAdapter, normalize_status

logger = logging.getLogger(__name__)

PAYMENT_OPTIONS = "card,mobilemoney,ussd,banktransfer"


class FlutterwaveGateway(GatewayAdapter):
    name = "flutterwave"
    signature_header = "flutterwave-signature"

    def _headers(self):
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def initiate(self, transaction):
        self._require_key()
        contact = transaction.contact or {}
        body = {
            "tx_ref": transaction.id,
            "amount": str(transaction.amount),
            "currency": transaction.currency,
            "payment_options": PAYMENT_OPTIONS,
            "redirect_url": f"{self.app_base_url}/membership-callback",
            "customer": {
                "email": contact.get("email"),
                "name": contact.get("display_name"),
                "phonenumber": contact.get("phone_number"),
            },
            "customizations": {
                "title": "Membership Upgrade",
                "description": f"Upgrade to {transaction.target_tier}",
            },
            "meta": {
                "transactionId": transaction.id,
                "type": "membership-upgrade",
            },
        }

        try:
            resp = requests.post(
                f"{self.api_url}/v3/payments",
                json=body,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            logger.warning(f"Flutterwave initiate timed out for tx {transaction.id}")
            raise GatewayError(
                "The payment provider did not respond in time. Please try again.",
                details={"gateway": self.name, "reason": "timeout"},
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Flutterwave initiate request failed for tx {transaction.id}: {e}")
            raise GatewayError(
                "Payment service error",
                details={"gateway": self.name, "reason": "connection"},
            )

        try:
            data = resp.json()
        except ValueError:
            data = {}

        link = (data.get("data") or {}).get("link")
        if not resp.ok or data.get("status") != "success" or not link:
            logger.warning(
                f"Flutterwave rejected tx {transaction.id}: HTTP {resp.status_code}"
            )
            raise GatewayError(
                "Payment initialization failed",
                details={
                    "gateway": self.name,
                    "http_status": resp.status_code,
                    "provider_message": data.get("message"),
                },
            )

        return {
            "reference": transaction.id,
            "checkout_url": link,
            "session_id": None,
            "status": "pending",
        }

    def get_status(self, reference):
        self._require_key()
        try:
            resp = requests.get(
                f"{self.api_url}/v3/transactions/verify_by_reference",
                params={"tx_ref": reference},
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            logger.warning(f"Flutterwave status check timed out for {reference}")
            raise GatewayError(
                "Status check timed out",
                details={"gateway": self.name, "reason": "timeout"},
            )
        except requests.exceptions.RequestException as e:
            logger.warning(f"Flutterwave status check failed for {reference}: {e}")
            raise GatewayError(
                "Status check failed",
                details={"gateway": self.name, "reason": "connection"},
            )

        try:
            data = resp.json()
        except ValueError:
            data = {}

        if resp.status_code in (400, 404) and data.get("status") == "error":
            # "No transaction was found for this id": customer has not paid yet
            return {
                "reference": reference,
                "status": "pending",
                "provider_transaction_id": None,
                "error": None,
            }
        if not resp.ok:
            raise GatewayError(
                "Status check failed",
                details={"gateway": self.name, "http_status": resp.status_code},
            )

        payment = data.get("data") or {}
        status = normalize_status(payment.get("status"))
        provider_id = payment.get("id")
        return {
            "reference": str(payment.get("tx_ref") or reference),
            "status": status,
            "provider_transaction_id": str(provider_id) if provider_id else None,
            "error": payment.get("processor_response") if status == "failed" else None,
        }

    def parse_webhook(self, payload):
        """Normalize a Flutterwave webhook body.

        Shape: {"event": "charge.completed",
                "data": {"id", "tx_ref", "flw_ref", "status", "amount",
                         "processor_response"}}
        Raises ValueError when required fields are missing.
        """
        data = payload.get("data") or {}
        provider_id = data.get("id")
        tx_ref = data.get("tx_ref")
        raw_status = data.get("status")
        if not tx_ref or not raw_status:
            raise ValueError("Missing required fields: data.tx_ref, data.status")

        event_id = payload.get("id") or (
            f"{provider_id}:{raw_status}" if provider_id else f"{tx_ref}:{raw_status}"
        )

        status = normalize_status(raw_status)
        return {
            "event_id": str(event_id),
            "event_type": payload.get("event") or "charge.completed",
            "reference": str(tx_ref),
            "status": status,
            "reason": data.get("processor_response") if status == "failed" else None,
            "provider_transaction_id": str(provider_id) if provider_id else None,
        }
