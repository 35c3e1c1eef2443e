"""
Unit tests for installment payment plans: creation from a checkout,
collection of due installments, retries, early payoff and cancellation.
"""

import sqlite3
from datetime import timedelta
from unittest.mock import patch

import pytest

from league_registry_api.app.core.db import timestamp, utc_now
from league_registry_api.app.core.exceptions import PaymentProviderError
from league_registry_api.app.schemas.payment import RegistrationCheckout
from league_registry_api.app.services.checkout_service import CheckoutService
from league_registry_api.app.services.payment_plan_service import PaymentPlanService, installment_amounts
from league_registry_api.app.services.payment_service import PaymentService
from league_registry_api.app.services.webhook_service import WebhookService


@pytest.fixture
def plan(make_user, make_registration, make_category, stripe_mock, intent_event):
    """Check out a 100.00 registration on a plan and deliver the success webhook."""

    async def _create():
        user = make_user()
        registration_id = make_registration()
        category_id = make_category(registration_id, price=10000)
        response = await CheckoutService.create_registration_payment_intent(
            user["id"],
            RegistrationCheckout(registration_id=registration_id, category_id=category_id, use_payment_plan=True),
        )
        await WebhookService.handle_event(
            intent_event(stripe_mock.create_payment_intent.call_args, response.payment_intent_id)
        )
        return user, response

    return _create


def _installments(query, invoice_id):
    return query(
        "SELECT * FROM xero_payments WHERE xero_invoice_id = ? AND payment_type = 'installment' "
        "ORDER BY installment_number",
        (invoice_id,),
    )


def _make_due(execute, installment_id):
    execute(
        "UPDATE xero_payments SET planned_payment_date = ? WHERE id = ?",
        (utc_now().date().isoformat(), installment_id),
    )


class TestInstallmentAmounts:
    @pytest.mark.unit
    def test_even_split(self) -> None:
        assert installment_amounts(10000) == [2500, 2500, 2500, 2500]

    @pytest.mark.unit
    def test_last_installment_absorbs_rounding(self) -> None:
        assert installment_amounts(10001, 4) == [2500, 2500, 2500, 2501]
        assert installment_amounts(1000, 3) == [333, 333, 334]
        assert sum(installment_amounts(9999)) == 9999


class TestCreatePlan:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_webhook_creates_four_installments(self, plan, query) -> None:
        user, response = await plan()

        rows = _installments(query, response.staging_id)

        today = utc_now().date()
        assert [r["sync_status"] for r in rows] == ["pending", "planned", "planned", "planned"]
        assert [r["amount_paid"] for r in rows] == [2500, 2500, 2500, 2500]
        assert [r["planned_payment_date"] for r in rows] == [
            (today + timedelta(days=30 * n)).isoformat() for n in range(4)
        ]
        assert rows[0]["reference"] == response.payment_intent_id
        assert query("SELECT COUNT(*) AS c FROM xero_payments WHERE payment_type = 'full'")[0]["c"] == 0
        registration = query("SELECT payment_status FROM user_registrations WHERE user_id = ?", (user["id"],))[0]
        assert registration["payment_status"] == "paid"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_plan_is_idempotent(self, plan, query) -> None:
        user, response = await plan()

        await PaymentPlanService.create_plan(
            user["id"], response.reservation_id, 10000, response.staging_id, response.payment_id
        )

        assert len(_installments(query, response.staging_id)) == 4

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_summary(self, plan) -> None:
        user, response = await plan()

        summaries = await PaymentPlanService.user_plans(user["id"])

        assert len(summaries) == 1
        summary = summaries[0]
        assert summary.registration_name == "Tuesday Night League"
        assert (summary.total_amount, summary.paid_amount, summary.remaining_balance) == (10000, 2500, 7500)
        assert (summary.installments_count, summary.installments_paid) == (4, 1)
        assert summary.next_payment_date == (utc_now().date() + timedelta(days=30)).isoformat()
        assert summary.status == "active"
        assert await PaymentPlanService.user_plans(user["id"] + 1000) == []


class TestCollection:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_due_installment_is_collected(self, plan, stripe_mock, execute, query) -> None:
        user, response = await plan()
        second = _installments(query, response.staging_id)[1]
        _make_due(execute, second["id"])

        result = await PaymentPlanService.process_due_installments()

        assert (result.processed, result.succeeded, result.failed) == (1, 1, 0)
        kwargs = stripe_mock.charge_saved_method.call_args.kwargs
        assert kwargs["amount"] == 2500
        assert kwargs["idempotency_key"] == f"installment-{second['id']}-attempt-1"
        assert kwargs["metadata"]["purpose"] == "payment_plan"
        row = query("SELECT * FROM xero_payments WHERE id = ?", (second["id"],))[0]
        assert row["sync_status"] == "pending"
        assert row["attempt_count"] == 1
        assert row["reference"].startswith("pi_offsession_")
        emails = [r["event_type"] for r in query("SELECT event_type FROM email_logs WHERE user_id = ?", (user["id"],))]
        assert "payment_plan.payment_processed" in emails

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_future_installments_are_left_alone(self, plan, stripe_mock) -> None:
        await plan()

        result = await PaymentPlanService.process_due_installments()

        assert result.processed == 0
        stripe_mock.charge_saved_method.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_attempt_waits_for_retry_window(self, plan, stripe_mock, execute, query) -> None:
        user, response = await plan()
        second = _installments(query, response.staging_id)[1]
        _make_due(execute, second["id"])
        stripe_mock.charge_saved_method.side_effect = PaymentProviderError("Your card was declined.")

        first_run = await PaymentPlanService.process_due_installments()

        assert first_run.failed == 1
        row = query("SELECT * FROM xero_payments WHERE id = ?", (second["id"],))[0]
        assert (row["sync_status"], row["attempt_count"]) == ("planned", 1)
        assert row["failure_reason"] == "Your card was declined."
        emails = [r["event_type"] for r in query("SELECT event_type FROM email_logs WHERE user_id = ?", (user["id"],))]
        assert "payment_plan.payment_failed" in emails

        assert (await PaymentPlanService.process_due_installments()).processed == 0

        execute("UPDATE xero_payments SET last_attempt_at = ? WHERE id = ?", (timestamp(hours=-25), second["id"]))
        stripe_mock.charge_saved_method.side_effect = None
        stripe_mock.charge_saved_method.return_value = {"id": "pi_retry_ok", "status": "succeeded", "client_secret": None}

        retry = await PaymentPlanService.process_due_installments()

        assert retry.succeeded == 1
        assert stripe_mock.charge_saved_method.call_args.kwargs["idempotency_key"] == (
            f"installment-{second['id']}-attempt-2"
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_last_attempt_raises_critical_alert(self, plan, stripe_mock, execute, query) -> None:
        _, response = await plan()
        second = _installments(query, response.staging_id)[1]
        _make_due(execute, second["id"])
        execute("UPDATE xero_payments SET attempt_count = 2 WHERE id = ?", (second["id"],))
        stripe_mock.charge_saved_method.side_effect = PaymentProviderError("Your card was declined.")

        await PaymentPlanService.process_due_installments()

        alerts = query("SELECT object_type, object_id FROM audit_logs WHERE action = 'critical_alert'")
        assert alerts == [{"object_type": "xero_payment", "object_id": second["id"]}]
        execute("UPDATE xero_payments SET last_attempt_at = ? WHERE id = ?", (timestamp(hours=-48), second["id"]))
        assert (await PaymentPlanService.process_due_installments()).processed == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unrecorded_charge_is_never_retried(self, plan, stripe_mock, execute, query) -> None:
        _, response = await plan()
        second = _installments(query, response.staging_id)[1]
        _make_due(execute, second["id"])

        with patch.object(PaymentService, "create_payment", side_effect=sqlite3.OperationalError("database is locked")):
            result = await PaymentPlanService.process_due_installments()

        assert result.failed == 1
        row = query("SELECT sync_status, failure_reason FROM xero_payments WHERE id = ?", (second["id"],))[0]
        assert row["sync_status"] == "failed"
        assert "not recorded" in row["failure_reason"]
        alerts = query("SELECT object_type, object_id FROM audit_logs WHERE action = 'critical_alert'")
        assert alerts == [{"object_type": "xero_payment", "object_id": second["id"]}]

        execute("UPDATE xero_payments SET last_attempt_at = ? WHERE id = ?", (timestamp(hours=-48), second["id"]))
        assert (await PaymentPlanService.process_due_installments()).processed == 0
        assert stripe_mock.charge_saved_method.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_charge_error_returns_row_to_planned(self, plan, stripe_mock, execute, query) -> None:
        _, response = await plan()
        second = _installments(query, response.staging_id)[1]
        _make_due(execute, second["id"])
        stripe_mock.charge_saved_method.side_effect = RuntimeError("connection reset")

        result = await PaymentPlanService.process_due_installments()

        assert result.failed == 1
        row = query("SELECT sync_status, failure_reason FROM xero_payments WHERE id = ?", (second["id"],))[0]
        assert row == {"sync_status": "planned", "failure_reason": "Unexpected error: connection reset"}


class TestPayoffAndCancel:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_early_payoff_charges_remaining_balance(self, plan, stripe_mock, query) -> None:
        user, response = await plan()

        result = await PaymentPlanService.early_payoff(response.staging_id, user_id=user["id"])

        assert result.amount_charged == 7500
        assert stripe_mock.charge_saved_method.call_args.kwargs["amount"] == 7500
        rows = _installments(query, response.staging_id)
        assert [(r["sync_status"], r["amount_paid"]) for r in rows] == [
            ("pending", 2500),
            ("pending", 7500),
            ("cancelled", 2500),
            ("cancelled", 2500),
        ]
        summary = (await PaymentPlanService.user_plans(user["id"]))[0]
        assert summary.status == "completed"
        assert summary.remaining_balance == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unrecorded_payoff_raises_alert(self, plan, stripe_mock, query) -> None:
        user, response = await plan()

        with patch.object(PaymentService, "create_payment", side_effect=sqlite3.OperationalError("database is locked")):
            with pytest.raises(sqlite3.OperationalError):
                await PaymentPlanService.early_payoff(response.staging_id, user_id=user["id"])

        alerts = query("SELECT object_type, object_id FROM audit_logs WHERE action = 'critical_alert'")
        assert alerts == [{"object_type": "xero_invoice", "object_id": response.staging_id}]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payoff_of_someone_elses_plan_is_not_found(self, plan, make_user) -> None:
        _, response = await plan()

        with pytest.raises(LookupError):
            await PaymentPlanService.early_payoff(response.staging_id, user_id=make_user()["id"])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_plan(self, plan, query) -> None:
        user, response = await plan()

        assert await PaymentPlanService.cancel_plan(response.staging_id) == 3

        statuses = [r["sync_status"] for r in _installments(query, response.staging_id)]
        assert statuses == ["pending", "cancelled", "cancelled", "cancelled"]
        assert (await PaymentPlanService.user_plans(user["id"]))[0].status == "cancelled"
        with pytest.raises(ValueError):
            await PaymentPlanService.cancel_plan(response.staging_id)
