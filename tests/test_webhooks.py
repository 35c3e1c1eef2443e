"""
Tests for Stripe webhook handling: completing purchases exactly once,
failed payments, saved cards and signature checks on the endpoint.
"""

import hashlib
import hmac
import json
import time
from unittest.mock import patch

import pytest

from league_registry_api.app.core.config import settings
from league_registry_api.app.schemas.payment import RegistrationCheckout
from league_registry_api.app.services.checkout_service import CheckoutService
from league_registry_api.app.services.membership_service import MembershipService
from league_registry_api.app.services.stripe_gateway import StripeGateway
from league_registry_api.app.services.webhook_service import WebhookService, intent_purpose


async def _checkout(make_user, make_registration, make_category, **category):
    user = make_user()
    registration_id = make_registration()
    category_id = make_category(registration_id, **category)
    response = await CheckoutService.create_registration_payment_intent(
        user["id"], RegistrationCheckout(registration_id=registration_id, category_id=category_id)
    )
    return user, response


class TestIntentPurpose:
    @pytest.mark.unit
    def test_explicit_purpose_wins(self) -> None:
        assert intent_purpose({"purpose": "waitlist_selection", "registrationId": "4"}) == "waitlist_selection"

    @pytest.mark.unit
    def test_purpose_inferred_from_ids(self) -> None:
        assert intent_purpose({"membershipId": "2"}) == "membership"
        assert intent_purpose({"registrationId": "4"}) == "registration"
        assert intent_purpose({}) is None


class TestPaymentSucceeded:
    """payment_intent.succeeded for on-session purchases."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_registration_is_completed_once(
        self, make_user, make_registration, make_category, stripe_mock, intent_event, query
    ) -> None:
        user, response = await _checkout(make_user, make_registration, make_category)
        event = intent_event(stripe_mock.create_payment_intent.call_args, response.payment_intent_id)

        result = await WebhookService.handle_event(event)

        assert result == {"status": "ok", "purpose": "registration", "record_id": response.reservation_id}
        registration = query("SELECT * FROM user_registrations WHERE id = ?", (response.reservation_id,))[0]
        assert registration["payment_status"] == "paid"
        assert registration["processing_expires_at"] is None
        payment = query("SELECT status FROM payments WHERE id = ?", (response.payment_id,))[0]
        assert payment["status"] == "completed"
        staging = query("SELECT sync_status, invoice_status FROM xero_invoices WHERE id = ?", (response.staging_id,))[0]
        assert staging == {"sync_status": "pending", "invoice_status": "AUTHORISED"}
        staged_payments = query(
            "SELECT amount_paid, reference, sync_status FROM xero_payments WHERE xero_invoice_id = ?",
            (response.staging_id,),
        )
        assert staged_payments == [
            {"amount_paid": 10000, "reference": response.payment_intent_id, "sync_status": "pending"}
        ]
        emails = query("SELECT event_type, status FROM email_logs WHERE user_id = ?", (user["id"],))
        assert emails == [{"event_type": "registration.completed", "status": "pending"}]

        again = await WebhookService.handle_event(event)

        assert again == {"status": "duplicate"}
        assert len(query("SELECT id FROM email_logs")) == 1
        assert len(query("SELECT id FROM xero_payments")) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_hold_is_recreated_as_paid(
        self, make_user, make_registration, make_category, stripe_mock, intent_event, execute, query
    ) -> None:
        user, response = await _checkout(make_user, make_registration, make_category)
        execute("DELETE FROM user_registrations WHERE id = ?", (response.reservation_id,))
        event = intent_event(stripe_mock.create_payment_intent.call_args, response.payment_intent_id)

        result = await WebhookService.handle_event(event)

        assert result["status"] == "ok"
        rows = query("SELECT payment_status, payment_id FROM user_registrations WHERE user_id = ?", (user["id"],))
        assert rows == [{"payment_status": "paid", "payment_id": response.payment_id}]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_membership_is_recorded(self, make_user, make_membership, stripe_mock, intent_event, query) -> None:
        user = make_user()
        membership_id = make_membership()
        response = await MembershipService.create_membership_payment_intent(user["id"], membership_id, 12)
        event = intent_event(stripe_mock.create_payment_intent.call_args, response.payment_intent_id)

        result = await WebhookService.handle_event(event)
        again = await WebhookService.handle_event(event)

        assert result["purpose"] == "membership"
        assert again == {"status": "duplicate"}
        assert len(query("SELECT id FROM email_logs WHERE user_id = ?", (user["id"],))) == 1
        memberships = query("SELECT * FROM user_memberships WHERE user_id = ?", (user["id"],))
        assert len(memberships) == 1
        assert memberships[0]["stripe_payment_intent_id"] == response.payment_intent_id
        assert memberships[0]["months_purchased"] == 12
        assert query("SELECT sync_status FROM xero_invoices WHERE id = ?", (response.staging_id,))[0] == {
            "sync_status": "pending"
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_abandoned_staging_is_reported_not_replaced(
        self, make_user, make_registration, make_category, stripe_mock, intent_event, execute, query
    ) -> None:
        _, response = await _checkout(make_user, make_registration, make_category)
        execute("UPDATE xero_invoices SET sync_status = 'abandoned' WHERE id = ?", (response.staging_id,))
        event = intent_event(stripe_mock.create_payment_intent.call_args, response.payment_intent_id)

        result = await WebhookService.handle_event(event)

        assert result == {"status": "error_reported"}
        alerts = query("SELECT * FROM audit_logs WHERE action = 'critical_alert'")
        assert alerts
        assert any("no accounting staging record" in (a["details"] or "") for a in alerts)
        assert len(query("SELECT id FROM xero_invoices")) == 1
        assert query("SELECT id FROM xero_payments") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_charge_without_local_payment_is_reported(self, make_user, query) -> None:
        user = make_user()
        event = {
            "id": "evt_orphan",
            "type": "payment_intent.succeeded",
            "data": {
                "object": {
                    "id": "pi_unknown",
                    "amount": 5000,
                    "metadata": {"purpose": "registration", "userId": str(user["id"]), "registrationId": "1"},
                }
            },
        }

        result = await WebhookService.handle_event(event)

        assert result == {"status": "error_reported"}
        assert len(query("SELECT id FROM audit_logs WHERE action = 'critical_alert'")) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_off_session_charges_are_only_acknowledged(self, query) -> None:
        event = {
            "id": "evt_off",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_off", "amount": 2500, "metadata": {"purpose": "payment_plan", "userId": "1"}}},
        }

        result = await WebhookService.handle_event(event)

        assert result == {"status": "ok", "purpose": "payment_plan"}
        assert query("SELECT id FROM email_logs") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_event_type_is_ignored(self) -> None:
        result = await WebhookService.handle_event({"id": "evt_x", "type": "charge.refunded", "data": {"object": {}}})
        assert result == {"status": "ignored"}


class TestPaymentFailed:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_payment_releases_hold_and_stages_email(
        self, make_user, make_registration, make_category, stripe_mock, intent_event, query
    ) -> None:
        user, response = await _checkout(make_user, make_registration, make_category, max_capacity=1)
        event = intent_event(
            stripe_mock.create_payment_intent.call_args,
            response.payment_intent_id,
            event_type="payment_intent.payment_failed",
            last_payment_error={"message": "Your card has insufficient funds."},
        )

        result = await WebhookService.handle_event(event)

        assert result == {"status": "ok", "released": True}
        assert query("SELECT id FROM user_registrations") == []
        assert query("SELECT status FROM payments WHERE id = ?", (response.payment_id,))[0]["status"] == "failed"
        email = query("SELECT event_type, email_data FROM email_logs WHERE user_id = ?", (user["id"],))[0]
        assert email["event_type"] == "payment.failed"
        assert json.loads(email["email_data"])["failureReason"] == "Your card has insufficient funds."
        assert query("SELECT sync_status FROM xero_invoices WHERE id = ?", (response.staging_id,))[0][
            "sync_status"
        ] == "staged"


class TestSetupIntents:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_setup_succeeded_saves_card(self, make_user, query) -> None:
        user = make_user(saved_card=False, setup_intent_id="seti_123", setup_intent_status="pending")
        event = {
            "id": "evt_setup",
            "type": "setup_intent.succeeded",
            "data": {"object": {"id": "seti_123", "payment_method": "pm_new", "metadata": {}}},
        }

        result = await WebhookService.handle_event(event)

        assert result == {"status": "ok", "user_id": user["id"]}
        row = query("SELECT stripe_payment_method_id, setup_intent_status FROM users WHERE id = ?", (user["id"],))[0]
        assert row == {"stripe_payment_method_id": "pm_new", "setup_intent_status": "succeeded"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_setup_failed_marks_user(self, make_user, query) -> None:
        user = make_user(saved_card=False)
        event = {
            "id": "evt_setup_failed",
            "type": "setup_intent.setup_failed",
            "data": {"object": {"id": "seti_456", "metadata": {"userId": str(user["id"])}}},
        }

        await WebhookService.handle_event(event)

        assert query("SELECT setup_intent_status FROM users WHERE id = ?", (user["id"],))[0] == {
            "setup_intent_status": "failed"
        }


class TestWebhookEndpoint:
    """POST /api/v1/payments/webhook"""

    @pytest.mark.integration
    def test_missing_secret_is_rejected(self, client) -> None:
        response = client.post("/api/v1/payments/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=abc"})
        assert response.status_code == 400

    @pytest.mark.integration
    def test_bad_signature_is_rejected(self, client, monkeypatch) -> None:
        monkeypatch.setattr(settings, "stripe_webhook_secret", "whsec_test")
        response = client.post(
            "/api/v1/payments/webhook", content=b'{"id": "evt_1"}', headers={"stripe-signature": "t=1,v1=deadbeef"}
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid signature"

    @pytest.mark.integration
    def test_signed_event_is_processed(self, client, monkeypatch) -> None:
        monkeypatch.setattr(settings, "stripe_webhook_secret", "whsec_test")
        payload = json.dumps({"id": "evt_signed", "object": "event", "type": "customer.created", "data": {"object": {}}})
        stamp = int(time.time())
        signature = hmac.new(b"whsec_test", f"{stamp}.{payload}".encode(), hashlib.sha256).hexdigest()

        response = client.post(
            "/api/v1/payments/webhook",
            content=payload.encode(),
            headers={"stripe-signature": f"t={stamp},v1={signature}", "content-type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "status": "ignored"}

    @pytest.mark.integration
    def test_verified_event_reaches_handler(self, client) -> None:
        event = {"id": "evt_2", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1", "metadata": {}}}}
        with patch.object(StripeGateway, "construct_event", return_value=event):
            response = client.post("/api/v1/payments/webhook", content=b"{}", headers={"stripe-signature": "sig"})

        assert response.status_code == 200
        assert response.json() == {"received": True, "status": "ignored"}
