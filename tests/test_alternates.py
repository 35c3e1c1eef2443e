"""
Unit tests for alternate sign-ups, games and batch selection.
"""

import sqlite3
from unittest.mock import patch

import pytest

from league_registry_api.app.core.exceptions import ConflictError, PaymentProviderError
from league_registry_api.app.schemas.alternate import GameCreate
from league_registry_api.app.services.alternate_service import AlternateService
from league_registry_api.app.services.payment_service import PaymentService


@pytest.fixture
def alternate_registration(make_registration):
    return make_registration(allow_alternates=1, alternate_price=3000, alternate_accounting_code="415")


class TestSignup:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_signup(self, make_user, alternate_registration) -> None:
        user = make_user()

        alternate = await AlternateService.register_as_alternate(user["id"], alternate_registration)

        assert alternate.user_id == user["id"]
        assert alternate.times_selected == 0
        assert alternate.email == user["email"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_registration_must_allow_alternates(self, make_user, make_registration) -> None:
        with pytest.raises(ValueError, match="does not accept alternates"):
            await AlternateService.register_as_alternate(make_user()["id"], make_registration())

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_saved_card_required(self, make_user, alternate_registration) -> None:
        with pytest.raises(ValueError, match="saved payment method"):
            await AlternateService.register_as_alternate(make_user(saved_card=False)["id"], alternate_registration)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_signing_up_twice_conflicts(self, make_user, alternate_registration) -> None:
        user = make_user()
        await AlternateService.register_as_alternate(user["id"], alternate_registration)

        with pytest.raises(ConflictError):
            await AlternateService.register_as_alternate(user["id"], alternate_registration)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_leave(self, make_user, alternate_registration) -> None:
        user = make_user()
        await AlternateService.register_as_alternate(user["id"], alternate_registration)

        await AlternateService.leave(user["id"], alternate_registration)

        assert await AlternateService.list_alternates(alternate_registration) == []
        with pytest.raises(LookupError):
            await AlternateService.leave(user["id"], alternate_registration)


class TestCaptains:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_add_and_remove_captain(self, make_user, alternate_registration) -> None:
        captain = make_user()

        await AlternateService.add_captain(alternate_registration, captain["id"])
        await AlternateService.add_captain(alternate_registration, captain["id"])
        assert AlternateService.is_captain(alternate_registration, captain["id"]) is True

        await AlternateService.remove_captain(alternate_registration, captain["id"])
        assert AlternateService.is_captain(alternate_registration, captain["id"]) is False


class TestSelection:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_continues_past_a_declined_card(
        self, make_user, alternate_registration, stripe_mock, query
    ) -> None:
        good, declined = make_user(), make_user()
        for user in (good, declined):
            await AlternateService.register_as_alternate(user["id"], alternate_registration)
        game = await AlternateService.create_game(alternate_registration, GameCreate(game_description="Tue vs. Rangers"), None)

        def charge(**kwargs):
            if kwargs["payment_method"] == declined["stripe_payment_method_id"]:
                raise PaymentProviderError("Your card was declined.")
            return {"id": "pi_alt_ok", "status": "succeeded", "client_secret": None}

        stripe_mock.charge_saved_method.side_effect = charge

        result = await AlternateService.select_alternates(game.id, [good["id"], declined["id"]], selected_by=None)

        assert (result.selected, result.failed) == (1, 1)
        outcomes = {r.user_id: r for r in result.results}
        assert outcomes[good["id"]].amount_charged == 3000
        assert outcomes[declined["id"]].error == "Your card was declined."

        ok_call = next(
            c for c in stripe_mock.charge_saved_method.call_args_list
            if c.kwargs["payment_method"] == good["stripe_payment_method_id"]
        )
        staging_id = query("SELECT id FROM xero_invoices WHERE sync_status = 'pending'")[0]["id"]
        assert ok_call.kwargs["idempotency_key"] == f"alternate-{game.id}-user-{good['id']}-staging-{staging_id}"

        statuses = sorted(r["sync_status"] for r in query("SELECT sync_status FROM xero_invoices"))
        assert statuses == ["abandoned", "pending"]
        line = query("SELECT account_code, line_amount FROM xero_invoice_line_items ORDER BY id")[0]
        assert line == {"account_code": "415", "line_amount": 3000}
        assert len(query("SELECT id FROM alternate_selections")) == 1
        assert AlternateService.get_game(game.id).selected_count == 1
        assert query("SELECT event_type FROM email_logs WHERE user_id = ?", (good["id"],)) == [
            {"event_type": "alternate.selected"}
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_member_not_signed_up_fails_alone(self, make_user, alternate_registration, stripe_mock) -> None:
        game = await AlternateService.create_game(alternate_registration, GameCreate(game_description="Thu"), None)
        outsider = make_user()

        result = await AlternateService.select_alternates(game.id, [outsider["id"]], selected_by=None)

        assert result.failed == 1
        assert "not signed up" in result.results[0].error
        stripe_mock.charge_saved_method.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_member_cannot_be_selected_twice_for_a_game(
        self, make_user, alternate_registration, stripe_mock
    ) -> None:
        user = make_user()
        await AlternateService.register_as_alternate(user["id"], alternate_registration)
        game = await AlternateService.create_game(alternate_registration, GameCreate(game_description="Sat"), None)
        await AlternateService.select_alternates(game.id, [user["id"]], selected_by=None)

        again = await AlternateService.select_alternates(game.id, [user["id"]], selected_by=None)

        assert again.failed == 1
        assert "already selected" in again.results[0].error
        assert stripe_mock.charge_saved_method.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_selected_count_shows_in_alternate_list(
        self, make_user, alternate_registration, stripe_mock
    ) -> None:
        user = make_user()
        await AlternateService.register_as_alternate(user["id"], alternate_registration)
        for description in ("Game 1", "Game 2"):
            game = await AlternateService.create_game(alternate_registration, GameCreate(game_description=description), None)
            await AlternateService.select_alternates(game.id, [user["id"]], selected_by=None)

        alternates = await AlternateService.list_alternates(alternate_registration)

        assert alternates[0].times_selected == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reselecting_after_a_decline_uses_a_new_charge_key(
        self, make_user, alternate_registration, stripe_mock, query
    ) -> None:
        user = make_user()
        await AlternateService.register_as_alternate(user["id"], alternate_registration)
        game = await AlternateService.create_game(alternate_registration, GameCreate(game_description="Fri"), None)
        stripe_mock.charge_saved_method.side_effect = [
            PaymentProviderError("Your card was declined."),
            {"id": "pi_alt_retry", "status": "succeeded", "client_secret": None},
        ]

        first = await AlternateService.select_alternates(game.id, [user["id"]], selected_by=None)
        second = await AlternateService.select_alternates(game.id, [user["id"]], selected_by=None)

        assert first.failed == 1
        assert second.selected == 1
        keys = [c.kwargs["idempotency_key"] for c in stripe_mock.charge_saved_method.call_args_list]
        assert len(keys) == 2
        assert keys[0] != keys[1]
        assert all("-staging-" in key for key in keys)
        assert [r["sync_status"] for r in query("SELECT sync_status FROM xero_invoices ORDER BY id")] == [
            "abandoned",
            "pending",
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unrecorded_charge_raises_alert_and_batch_continues(
        self, make_user, alternate_registration, stripe_mock, query
    ) -> None:
        broken, fine = make_user(), make_user()
        for user in (broken, fine):
            await AlternateService.register_as_alternate(user["id"], alternate_registration)
        game = await AlternateService.create_game(alternate_registration, GameCreate(game_description="Sun"), None)
        create_payment = PaymentService.create_payment

        def flaky_create_payment(user_id, *args, **kwargs):
            if user_id == broken["id"]:
                raise sqlite3.OperationalError("database is locked")
            return create_payment(user_id, *args, **kwargs)

        with patch.object(PaymentService, "create_payment", side_effect=flaky_create_payment):
            result = await AlternateService.select_alternates(game.id, [broken["id"], fine["id"]], selected_by=None)

        assert (result.selected, result.failed) == (1, 1)
        outcomes = {r.user_id: r for r in result.results}
        assert outcomes[broken["id"]].error == "database is locked"
        assert outcomes[fine["id"]].success is True
        alerts = query("SELECT user_id, object_type, details FROM audit_logs WHERE action = 'critical_alert'")
        assert len(alerts) == 1
        assert alerts[0]["user_id"] == broken["id"]
        assert alerts[0]["object_type"] == "payment_intent"
        assert "charged but not recorded" in alerts[0]["details"]
