"""Tests for the gateway adapters and the gateway registry.

Covers:
- Payment method routing (default map, unknown methods, overrides)
- Eversend / Flutterwave initiate, status and webhook normalization
- Timeouts and provider errors surfacing as GatewayError
- HMAC signature verification
"""

import hashlib
import hmac
from unittest.mock import MagicMock, patch

import pytest
import requests

from tierpay.services.errors import GatewayError, ValidationError
from tierpay.services.eversend_service import EversendGateway
from tierpay.services.flutterwave_service import FlutterwaveGateway
from tierpay.services.gateway_service import (
    GatewayRegistry,
    get_registry,
    normalize_status,
)

from conftest import make_transaction


def _response(status_code=200, body=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 300
    resp.json.return_value = body if body is not None else {}
    return resp


def _eversend():
    return EversendGateway(
        api_url="https://eversend.test/v1",
        secret_key="ev_key",
        webhook_secret="ev_secret",
        timeout=2,
        app_base_url="https://app.test",
    )


def _flutterwave():
    return FlutterwaveGateway(
        api_url="https://flutterwave.test",
        secret_key="flw_key",
        webhook_secret="flw_secret",
        timeout=2,
        app_base_url="https://app.test",
    )


class TestRegistry:
    """Tests for payment method -> adapter routing."""

    def test_default_mapping(self, app):
        registry = get_registry()
        assert registry.resolve("card").name == "eversend"
        assert registry.resolve("mobile_money").name == "eversend"
        assert registry.resolve("express_pay").name == "flutterwave"

    def test_unknown_method_is_validation_error(self, app):
        with pytest.raises(ValidationError):
            get_registry().resolve("bitcoin")

    def test_mapping_to_missing_adapter_is_gateway_error(self):
        registry = GatewayRegistry([_eversend()], {"express_pay": "flutterwave"})
        with pytest.raises(GatewayError):
            registry.resolve("express_pay")

    def test_normalize_status(self):
        assert normalize_status("SUCCESSFUL") == "completed"
        assert normalize_status("success") == "completed"
        assert normalize_status("declined") == "failed"
        assert normalize_status("initiated") == "pending"
        assert normalize_status(None) == "pending"


class TestSignature:
    """HMAC-SHA256 over the raw body."""

    def test_valid_signature(self):
        body = b'{"reference": "r1"}'
        sig = hmac.new(b"ev_secret", body, hashlib.sha256).hexdigest()
        assert _eversend().verify_signature(body, sig) is True

    def test_wrong_secret_rejected(self):
        body = b'{"reference": "r1"}'
        sig = hmac.new(b"other", body, hashlib.sha256).hexdigest()
        assert _eversend().verify_signature(body, sig) is False

    def test_tampered_body_rejected(self):
        sig = hmac.new(b"ev_secret", b'{"status": "failed"}', hashlib.sha256).hexdigest()
        assert _eversend().verify_signature(b'{"status": "completed"}', sig) is False

    def test_missing_signature_rejected(self):
        assert _eversend().verify_signature(b"{}", None) is False
        assert _eversend().verify_signature(b"{}", "") is False

    def test_missing_secret_rejects_everything(self):
        adapter = _eversend()
        adapter.webhook_secret = None
        assert adapter.verify_signature(b"{}", "abc") is False


class TestEversend:
    """Tests for the Eversend adapter."""

    @patch("tierpay.services.eversend_service.requests.post")
    def test_initiate_success(self, mock_post, seed_data):
        tx = make_transaction(seed_data["creator_id"], status="pending")
        mock_post.return_value = _response(200, {
            "code": 200,
            "data": {"reference": "EV-123", "checkoutLink": "https://pay.eversend.test/EV-123"},
        })

        result = _eversend().initiate(tx)

        assert result["reference"] == "EV-123"
        assert result["checkout_url"] == "https://pay.eversend.test/EV-123"
        _, kwargs = mock_post.call_args
        assert kwargs["timeout"] == 2
        assert kwargs["json"]["externalId"] == tx.id
        assert kwargs["headers"]["Idempotency-Key"] == tx.id
        assert mock_post.call_args[0][0] == "https://eversend.test/v1/collections/checkout"

    @patch("tierpay.services.eversend_service.requests.post")
    def test_initiate_accepts_payment_link(self, mock_post, seed_data):
        tx = make_transaction(seed_data["creator_id"], status="pending")
        mock_post.return_value = _response(200, {
            "reference": "EV-9", "paymentLink": "https://pay.eversend.test/EV-9",
        })
        assert _eversend().initiate(tx)["checkout_url"] == "https://pay.eversend.test/EV-9"

    @patch("tierpay.services.eversend_service.requests.post")
    def test_initiate_timeout(self, mock_post, seed_data):
        tx = make_transaction(seed_data["creator_id"], status="pending")
        mock_post.side_effect = requests.exceptions.Timeout()

        with pytest.raises(GatewayError) as exc:
            _eversend().initiate(tx)
        assert exc.value.code == "GATEWAY_ERROR"
        assert exc.value.details["reason"] == "timeout"

    @patch("tierpay.services.eversend_service.requests.post")
    def test_initiate_http_error(self, mock_post, seed_data):
        tx = make_transaction(seed_data["creator_id"], status="pending")
        mock_post.return_value = _response(422, {"message": "Invalid phone"})

        with pytest.raises(GatewayError) as exc:
            _eversend().initiate(tx)
        assert exc.value.details["http_status"] == 422
        assert "Invalid phone" not in exc.value.message

    @patch("tierpay.services.eversend_service.requests.post")
    def test_initiate_malformed_response(self, mock_post, seed_data):
        tx = make_transaction(seed_data["creator_id"], status="pending")
        mock_post.return_value = _response(200, {"data": {"reference": "EV-1"}})
        with pytest.raises(GatewayError):
            _eversend().initiate(tx)

    def test_initiate_without_key(self, seed_data):
        tx = make_transaction(seed_data["creator_id"], status="pending")
        adapter = _eversend()
        adapter.secret_key = None
        with pytest.raises(GatewayError):
            adapter.initiate(tx)

    @patch("tierpay.services.eversend_service.requests.get")
    def test_get_status(self, mock_get):
        mock_get.return_value = _response(200, {
            "data": {"reference": "EV-1", "status": "successful", "transactionId": "T-77"},
        })
        result = _eversend().get_status("EV-1")
        assert result["status"] == "completed"
        assert result["provider_transaction_id"] == "T-77"
        assert mock_get.call_args[0][0] == "https://eversend.test/v1/collections/EV-1"

    @patch("tierpay.services.eversend_service.requests.get")
    def test_get_status_not_found_is_pending(self, mock_get):
        mock_get.return_value = _response(404, {})
        assert _eversend().get_status("EV-1")["status"] == "pending"

    @patch("tierpay.services.eversend_service.requests.get")
    def test_get_status_connection_error(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError()
        with pytest.raises(GatewayError):
            _eversend().get_status("EV-1")

    def test_parse_webhook(self):
        parsed = _eversend().parse_webhook({
            "eventId": "evt_1",
            "eventType": "collection.updated",
            "reference": "EV-1",
            "status": "failed",
            "reason": "Insufficient funds",
        })
        assert parsed["event_id"] == "evt_1"
        assert parsed["status"] == "failed"
        assert parsed["reason"] == "Insufficient funds"

    def test_parse_webhook_without_event_id(self):
        parsed = _eversend().parse_webhook({"reference": "EV-1", "status": "completed"})
        assert parsed["event_id"] == "EV-1:completed"

    def test_parse_webhook_missing_fields(self):
        with pytest.raises(ValueError):
            _eversend().parse_webhook({"status": "completed"})


class TestFlutterwave:
    """Tests for the Flutterwave adapter."""

    @patch("tierpay.services.flutterwave_service.requests.post")
    def test_initiate_uses_tx_ref(self, mock_post, seed_data):
        tx = make_transaction(seed_data["creator_id"], status="pending", gateway="flutterwave")
        mock_post.return_value = _response(200, {
            "status": "success",
            "data": {"link": "https://checkout.flutterwave.test/pay/abc"},
        })

        result = _flutterwave().initiate(tx)

        assert result["reference"] == tx.id
        assert result["checkout_url"] == "https://checkout.flutterwave.test/pay/abc"
        assert mock_post.call_args[1]["json"]["tx_ref"] == tx.id
        assert mock_post.call_args[0][0] == "https://flutterwave.test/v3/payments"

    @patch("tierpay.services.flutterwave_service.requests.post")
    def test_initiate_error_status(self, mock_post, seed_data):
        tx = make_transaction(seed_data["creator_id"], status="pending", gateway="flutterwave")
        mock_post.return_value = _response(200, {"status": "error", "message": "bad"})
        with pytest.raises(GatewayError):
            _flutterwave().initiate(tx)

    @patch("tierpay.services.flutterwave_service.requests.get")
    def test_get_status(self, mock_get):
        mock_get.return_value = _response(200, {
            "status": "success",
            "data": {"id": 4821, "tx_ref": "tx-1", "status": "successful"},
        })
        result = _flutterwave().get_status("tx-1")
        assert result["status"] == "completed"
        assert result["provider_transaction_id"] == "4821"
        assert mock_get.call_args[1]["params"] == {"tx_ref": "tx-1"}

    @patch("tierpay.services.flutterwave_service.requests.get")
    def test_get_status_unknown_is_pending(self, mock_get):
        mock_get.return_value = _response(400, {
            "status": "error", "message": "No transaction was found for this id",
        })
        assert _flutterwave().get_status("tx-1")["status"] == "pending"

    @patch("tierpay.services.flutterwave_service.requests.get")
    def test_get_status_timeout(self, mock_get):
        mock_get.side_effect = requests.exceptions.Timeout()
        with pytest.raises(GatewayError):
            _flutterwave().get_status("tx-1")

    def test_parse_webhook(self):
        parsed = _flutterwave().parse_webhook({
            "event": "charge.completed",
            "data": {
                "id": 4821,
                "tx_ref": "tx-1",
                "status": "failed",
                "processor_response": "Declined",
            },
        })
        assert parsed["event_id"] == "4821:failed"
        assert parsed["reference"] == "tx-1"
        assert parsed["status"] == "failed"
        assert parsed["reason"] == "Declined"
        assert parsed["provider_transaction_id"] == "4821"

    def test_parse_webhook_missing_tx_ref(self):
        with pytest.raises(ValueError):
            _flutterwave().parse_webhook({"event": "charge.completed", "data": {"status": "successful"}})
