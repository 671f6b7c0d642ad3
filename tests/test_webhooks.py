"""Tests for the webhooks blueprint and gateway event handling.

Covers:
- Webhook signature verification (missing, invalid, tampered)
- Idempotent event processing (duplicate deliveries skipped)
- Redelivery of failed or abandoned events
- Completed / failed / informational statuses
- Unknown references and already-terminal transactions
- Flutterwave deliveries
- Tier update failures leaving a detectable inconsistency
"""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from tierpay.extensions import db
from tierpay.models.audit import PaymentAuditEntry
from tierpay.models.profile import Profile
from tierpay.models.transaction import PaymentTransaction
from tierpay.models.webhook_event import PaymentWebhookEvent
from tierpay.services import payment_service
from tierpay.services.errors import StoreError
from tierpay.services.profile_service import ProfileStore

from conftest import eversend_body, make_transaction, sign

EVERSEND_SECRET = "ev_whsec_test_fake"
FLUTTERWAVE_SECRET = "flw_whsec_test_fake"


def _post_eversend(client, body, signature=None):
    return client.post(
        "/webhooks/eversend",
        data=body,
        content_type="application/json",
        headers={"X-Eversend-Signature": signature or sign(EVERSEND_SECRET, body)},
    )


def _complete_actions(tx_id):
    return [
        e.action for e in PaymentAuditEntry.query.filter_by(transaction_id=tx_id)
        if e.action == "complete"
    ]


class TestWebhookSignature:
    """Tests for webhook signature validation."""

    def test_missing_signature_returns_400(self, client, seed_data):
        resp = client.post(
            "/webhooks/eversend",
            data=eversend_body("ref-1"),
            content_type="application/json",
        )
        assert resp.status_code == 400
        assert b"Missing signature" in resp.data
        assert PaymentWebhookEvent.query.count() == 0

    def test_invalid_signature_returns_400(self, client, seed_data):
        resp = _post_eversend(client, eversend_body("ref-1"), signature="bad_sig")
        assert resp.status_code == 400
        assert b"Invalid signature" in resp.data
        assert PaymentWebhookEvent.query.count() == 0

    def test_tampered_body_rejected(self, client, seed_data):
        tx = make_transaction(seed_data["creator_id"])
        signed = eversend_body(tx.provider_reference, status="failed")
        tampered = eversend_body(tx.provider_reference, status="completed")

        resp = _post_eversend(client, tampered, signature=sign(EVERSEND_SECRET, signed))

        assert resp.status_code == 400
        assert db.session.get(PaymentTransaction, tx.id).status == "processing"

    def test_signed_with_other_gateway_secret_rejected(self, client, seed_data):
        body = eversend_body("ref-1")
        resp = _post_eversend(client, body, signature=sign(FLUTTERWAVE_SECRET, body))
        assert resp.status_code == 400

    def test_unknown_gateway_returns_404(self, client, seed_data):
        resp = client.post("/webhooks/paypal", data="{}", content_type="application/json")
        assert resp.status_code == 404

    def test_unparseable_body_returns_400(self, client, seed_data):
        body = b'{"status": "completed"}'  # no reference
        resp = _post_eversend(client, body)
        assert resp.status_code == 400
        assert PaymentWebhookEvent.query.count() == 0


class TestCompleted:
    """A completed payment upgrades the profile exactly once."""

    def test_completes_and_applies_tier(self, client, seed_data):
        tx = make_transaction(seed_data["creator_id"], reference="EV-100")

        body = eversend_body("EV-100", transactionId="T-900")
        resp = _post_eversend(client, body)

        assert resp.status_code == 200
        assert resp.get_json() == {"status": "processed", "message": "completed"}

        tx = db.session.get(PaymentTransaction, tx.id)
        assert tx.status == "completed"
        assert tx.completed_at is not None
        assert tx.tier_applied_at is not None
        assert db.session.get(Profile, seed_data["creator_id"]).tier == "premium"

        entries = PaymentAuditEntry.query.filter_by(transaction_id=tx.id).all()
        assert len(entries) == 1
        assert entries[0].action == "complete"
        assert entries[0].details["provider_transaction_id"] == "T-900"
        assert entries[0].details["tier_applied"] is True

        event = PaymentWebhookEvent.query.one()
        assert event.status == "processed"
        assert event.transaction_id == tx.id
        assert event.signature_verified is True
        assert event.signature == sign(EVERSEND_SECRET, body)

    def test_member_upgrade_sets_member_tier(self, client, seed_data):
        tx = make_transaction(
            seed_data["member_id"], subject_type="member", reference="EV-M1"
        )
        _post_eversend(client, eversend_body("EV-M1"))

        profile = db.session.get(Profile, seed_data["member_id"])
        assert profile.member_tier == "premium"
        assert profile.tier == "free"
        assert db.session.get(PaymentTransaction, tx.id).status == "completed"

    def test_replayed_event_processed_once(self, client, seed_data):
        tx = make_transaction(seed_data["creator_id"], reference="EV-101")
        body = eversend_body("EV-101", event_id="evt_replay")

        responses = [_post_eversend(client, body) for _ in range(3)]

        assert [r.get_json()["message"] for r in responses] == [
            "completed", "duplicate_event", "duplicate_event",
        ]
        assert all(r.status_code == 200 for r in responses)
        assert PaymentWebhookEvent.query.count() == 1
        assert _complete_actions(tx.id) == ["complete"]

    def test_second_event_for_completed_tx_skipped(self, client, seed_data):
        tx = make_transaction(seed_data["creator_id"], reference="EV-102")
        _post_eversend(client, eversend_body("EV-102", event_id="evt_a"))

        resp = _post_eversend(client, eversend_body("EV-102", event_id="evt_b"))

        assert resp.get_json() == {"status": "skipped", "message": "already_completed"}
        assert _complete_actions(tx.id) == ["complete"]
        statuses = {e.event_id: e.status for e in PaymentWebhookEvent.query.all()}
        assert statuses == {"evt_a": "processed", "evt_b": "skipped"}

    def test_late_payment_for_cancelled_tx_is_skipped(self, client, seed_data):
        tx = make_transaction(
            seed_data["creator_id"], status="cancelled", reference="EV-103"
        )

        resp = _post_eversend(client, eversend_body("EV-103"))

        assert resp.get_json()["message"] == "already_cancelled"
        assert db.session.get(PaymentTransaction, tx.id).status == "cancelled"
        assert db.session.get(Profile, seed_data["creator_id"]).tier == "free"


class TestFailedAndPending:
    """Failure and informational statuses."""

    def test_failed_status(self, client, seed_data):
        tx = make_transaction(seed_data["creator_id"], reference="EV-200")

        resp = _post_eversend(
            client, eversend_body("EV-200", status="failed", reason="Insufficient funds")
        )

        assert resp.get_json() == {"status": "processed", "message": "failed"}
        tx = db.session.get(PaymentTransaction, tx.id)
        assert tx.status == "failed"
        assert tx.error_message == "Insufficient funds"
        assert tx.error_code == "GATEWAY_ERROR"
        assert db.session.get(Profile, seed_data["creator_id"]).tier == "free"

    def test_pending_status_is_informational(self, client, seed_data):
        tx = make_transaction(seed_data["creator_id"], reference="EV-201")

        resp = _post_eversend(client, eversend_body("EV-201", status="initiated"))

        assert resp.get_json() == {"status": "skipped", "message": "status_pending"}
        assert db.session.get(PaymentTransaction, tx.id).status == "processing"
        assert PaymentWebhookEvent.query.one().status == "skipped"

    def test_unknown_reference(self, client, seed_data):
        resp = _post_eversend(client, eversend_body("EV-does-not-exist"))

        assert resp.status_code == 200
        assert resp.get_json() == {"status": "failed", "message": "transaction_not_found"}
        event = PaymentWebhookEvent.query.one()
        assert event.status == "failed"
        assert event.transaction_id is None

    @patch("tierpay.services.webhook_service.payment_service.reconcile")
    def test_store_failure_returns_500(self, mock_reconcile, client, seed_data):
        make_transaction(seed_data["creator_id"], reference="EV-202")
        mock_reconcile.side_effect = StoreError("Failed to save transaction update")

        resp = _post_eversend(client, eversend_body("EV-202"))

        assert resp.status_code == 500
        event = PaymentWebhookEvent.query.one()
        assert event.status == "failed"
        assert event.error_message == "Failed to save transaction update"


class TestRedelivery:
    """A redelivered event id runs again unless it was already settled."""

    def test_redelivery_after_store_failure_completes(self, client, seed_data):
        tx = make_transaction(seed_data["creator_id"], reference="EV-300")
        body = eversend_body("EV-300", event_id="evt_retry")

        with patch("tierpay.services.webhook_service.payment_service.reconcile") as mock_reconcile:
            mock_reconcile.side_effect = StoreError("Failed to save transaction update")
            first = _post_eversend(client, body)
        assert first.status_code == 500

        resp = _post_eversend(client, body)

        assert resp.status_code == 200
        assert resp.get_json() == {"status": "processed", "message": "completed"}
        assert db.session.get(PaymentTransaction, tx.id).status == "completed"
        assert _complete_actions(tx.id) == ["complete"]
        event = PaymentWebhookEvent.query.one()
        assert event.status == "processed"
        assert event.error_message is None
        assert event.transaction_id == tx.id

    def test_webhook_before_reference_is_stored(self, client, seed_data):
        body = eversend_body("EV-301", event_id="evt_early")

        first = _post_eversend(client, body)
        assert first.get_json()["message"] == "transaction_not_found"

        tx = make_transaction(seed_data["creator_id"], reference="EV-301")
        resp = _post_eversend(client, body)

        assert resp.get_json() == {"status": "processed", "message": "completed"}
        assert db.session.get(PaymentTransaction, tx.id).status == "completed"
        assert db.session.get(Profile, seed_data["creator_id"]).tier == "premium"
        assert PaymentWebhookEvent.query.one().transaction_id == tx.id

    def _abandoned_event(self, event_id, received_at):
        event = PaymentWebhookEvent(
            gateway="eversend",
            event_id=event_id,
            event_type="collection.updated",
            provider_reference="EV-302",
            reported_status="completed",
            payload={},
            signature_verified=True,
            status="processing",
            received_at=received_at,
        )
        db.session.add(event)
        db.session.commit()
        return event

    def test_abandoned_processing_event_is_reclaimed(self, client, seed_data):
        tx = make_transaction(seed_data["creator_id"], reference="EV-302")
        self._abandoned_event(
            "evt_stuck", datetime.now(timezone.utc) - timedelta(hours=1)
        )

        resp = _post_eversend(client, eversend_body("EV-302", event_id="evt_stuck"))

        assert resp.get_json() == {"status": "processed", "message": "completed"}
        assert db.session.get(PaymentTransaction, tx.id).status == "completed"
        assert PaymentWebhookEvent.query.one().status == "processed"

    def test_in_flight_event_is_not_taken_over(self, client, seed_data):
        tx = make_transaction(seed_data["creator_id"], reference="EV-302")
        self._abandoned_event("evt_busy", datetime.now(timezone.utc))

        resp = _post_eversend(client, eversend_body("EV-302", event_id="evt_busy"))

        assert resp.get_json() == {"status": "skipped", "message": "duplicate_event"}
        assert db.session.get(PaymentTransaction, tx.id).status == "processing"
        assert PaymentWebhookEvent.query.one().status == "processing"

    def test_skipped_event_stays_settled(self, client, seed_data):
        make_transaction(seed_data["creator_id"], reference="EV-303")
        body = eversend_body("EV-303", status="initiated", event_id="evt_info")
        _post_eversend(client, body)

        resp = _post_eversend(client, body)

        assert resp.get_json() == {"status": "skipped", "message": "duplicate_event"}
        assert PaymentWebhookEvent.query.one().status == "skipped"


class TestFlutterwave:
    """Flutterwave deliveries use tx_ref (our transaction id)."""

    def _post(self, client, payload):
        body = json.dumps(payload).encode()
        return client.post(
            "/webhooks/flutterwave",
            data=body,
            content_type="application/json",
            headers={"flutterwave-signature": sign(FLUTTERWAVE_SECRET, body)},
        )

    def test_charge_completed(self, client, seed_data):
        tx = make_transaction(seed_data["creator_id"], gateway="flutterwave")
        tx.provider_reference = tx.id
        db.session.commit()

        resp = self._post(client, {
            "event": "charge.completed",
            "data": {"id": 4821, "tx_ref": tx.id, "status": "successful"},
        })

        assert resp.get_json() == {"status": "processed", "message": "completed"}
        assert db.session.get(PaymentTransaction, tx.id).status == "completed"
        event = PaymentWebhookEvent.query.one()
        assert event.gateway == "flutterwave"
        assert event.event_id == "4821:successful"

    def test_eversend_reference_not_matched_on_flutterwave(self, client, seed_data):
        tx = make_transaction(seed_data["creator_id"], reference="shared-ref")

        resp = self._post(client, {
            "event": "charge.completed",
            "data": {"id": 1, "tx_ref": "shared-ref", "status": "successful"},
        })

        assert resp.get_json()["message"] == "transaction_not_found"
        assert db.session.get(PaymentTransaction, tx.id).status == "processing"


class FailingProfileStore(ProfileStore):
    def set_user_tier(self, user_id, new_tier, subject_type="creator"):
        raise RuntimeError("identity provider unavailable")


class TestTierUpdateFailure:
    """Payment completed but the tier write failed."""

    def test_completion_commits_and_inconsistency_is_listed(self, app, client, seed_data):
        tx = make_transaction(seed_data["creator_id"], reference="EV-300")
        original = app.extensions["profile_store"]
        app.extensions["profile_store"] = FailingProfileStore()
        try:
            resp = _post_eversend(client, eversend_body("EV-300"))
        finally:
            app.extensions["profile_store"] = original

        assert resp.get_json() == {"status": "processed", "message": "completed"}
        tx = db.session.get(PaymentTransaction, tx.id)
        assert tx.status == "completed"
        assert tx.tier_applied_at is None
        assert "identity provider unavailable" in tx.tier_update_error
        assert db.session.get(Profile, seed_data["creator_id"]).tier == "free"

        entry = PaymentAuditEntry.query.filter_by(transaction_id=tx.id).one()
        assert entry.details["tier_applied"] is False

        assert [t.id for t in payment_service.list_inconsistencies()] == [tx.id]
