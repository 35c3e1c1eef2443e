"""
Unit tests for staging and delivering emails through Loops.
"""

import json
from urllib.parse import urlsplit

import pytest

from league_registry_api.app.core.config import settings
from league_registry_api.app.services import email_service
from league_registry_api.app.services.email_service import EmailService


class FakeLoops:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self.body = body if body is not None else {"success": True, "id": "loops-evt-1"}
        self.requests = []

    def __call__(self, request):
        self.requests.append((urlsplit(request.url).path, request.headers.get("Authorization"), json.loads(request.body)))
        return self.status_code, self.body


@pytest.fixture
def loops_configured(monkeypatch):
    monkeypatch.setattr(settings, "loops_api_key", "loops-test-key")
    monkeypatch.setattr(settings, "loops_api_base", "https://loops.test/api/v1")


class TestStaging:
    @pytest.mark.unit
    def test_stage_for_user_fills_name_and_template(self, make_user, monkeypatch, query) -> None:
        monkeypatch.setattr(settings, "loops_registration_template_id", "tmpl_reg")
        user = make_user(first_name="Sam", last_name="Rivera")

        email_id = EmailService.stage_for_user(
            user["id"], email_service.REGISTRATION_COMPLETED, {"registrationName": "Tuesday Night League", "note": None}
        )

        row = query("SELECT * FROM email_logs WHERE id = ?", (email_id,))[0]
        assert row["status"] == "pending"
        assert row["template_id"] == "tmpl_reg"
        assert row["subject"] == "Registration confirmed"
        assert row["email_address"] == user["email"]
        assert json.loads(row["email_data"]) == {"userName": "Sam Rivera", "registrationName": "Tuesday Night League"}

    @pytest.mark.unit
    def test_unknown_user_is_not_staged(self, query) -> None:
        assert EmailService.stage_for_user(9999, email_service.PAYMENT_FAILED) is None
        assert query("SELECT id FROM email_logs") == []


class TestDelivery:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_without_api_key_rows_fail(self, make_user, query) -> None:
        user = make_user()
        EmailService.stage_for_user(user["id"], email_service.WAITLIST_ADDED)

        result = await EmailService.send_pending()

        assert (result.processed, result.sent, result.failed) == (1, 0, 1)
        row = query("SELECT status, bounce_reason FROM email_logs")[0]
        assert row == {"status": "failed", "bounce_reason": "Loops not configured"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_template_goes_to_transactional(self, fake_session, make_user, monkeypatch, loops_configured, query) -> None:
        monkeypatch.setattr(settings, "loops_membership_template_id", "tmpl_mem")
        user = make_user()
        EmailService.stage_for_user(user["id"], email_service.MEMBERSHIP_PURCHASED, {"membershipName": "Adult"})
        loops = FakeLoops()

        result = await EmailService.send_pending(session=fake_session(loops))

        assert result.sent == 1
        path, auth, body = loops.requests[0]
        assert path == "/api/v1/transactional"
        assert auth == "Bearer loops-test-key"
        assert body["transactionalId"] == "tmpl_mem"
        assert body["dataVariables"]["membershipName"] == "Adult"
        row = query("SELECT status, loops_event_id, sent_at FROM email_logs")[0]
        assert row["status"] == "sent"
        assert row["loops_event_id"] == "loops-evt-1"
        assert row["sent_at"] is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_template_sends_event(self, fake_session, make_user, loops_configured) -> None:
        user = make_user()
        EmailService.stage_for_user(user["id"], email_service.WAITLIST_ADDED, {"position": 3})
        loops = FakeLoops()

        await EmailService.send_pending(session=fake_session(loops))

        path, _, body = loops.requests[0]
        assert path == "/api/v1/events/send"
        assert body["eventName"] == "waitlist.added"
        assert body["eventProperties"]["position"] == 3
        assert body["eventProperties"]["subject"] == "You're on the waitlist"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejected_email_is_failed_then_retried(self, fake_session, make_user, loops_configured, query) -> None:
        user = make_user()
        EmailService.stage_for_user(user["id"], email_service.PAYMENT_FAILED)

        await EmailService.send_pending(session=fake_session(FakeLoops(body={"success": False, "message": "Invalid email"})))

        row = query("SELECT status, bounce_reason, retry_count FROM email_logs")[0]
        assert row == {"status": "failed", "bounce_reason": "Invalid email", "retry_count": 0}

        result = await EmailService.retry_failed(session=fake_session(FakeLoops()))

        assert result.sent == 1
        row = query("SELECT status, bounce_reason, retry_count FROM email_logs")[0]
        assert row == {"status": "sent", "bounce_reason": None, "retry_count": 1}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_http_error_marks_failed(self, fake_session, make_user, loops_configured, query) -> None:
        EmailService.stage_for_user(make_user()["id"], email_service.PAYMENT_FAILED)

        result = await EmailService.send_pending(session=fake_session(FakeLoops(status_code=500, body={})))

        assert result.failed == 1
        assert query("SELECT status FROM email_logs")[0]["status"] == "failed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_stops_after_three_attempts(self, fake_session, make_user, loops_configured, execute) -> None:
        email_id = EmailService.stage_for_user(make_user()["id"], email_service.PAYMENT_FAILED)
        execute("UPDATE email_logs SET status = 'failed', retry_count = 3 WHERE id = ?", (email_id,))
        loops = FakeLoops()

        result = await EmailService.retry_failed(session=fake_session(loops))

        assert result.processed == 0
        assert loops.requests == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_ignores_old_failures(self, fake_session, make_user, loops_configured, execute) -> None:
        email_id = EmailService.stage_for_user(make_user()["id"], email_service.PAYMENT_FAILED)
        execute(
            "UPDATE email_logs SET status = 'bounced', created_at = datetime('now', '-2 days') WHERE id = ?", (email_id,)
        )

        result = await EmailService.retry_failed(session=fake_session(FakeLoops()))

        assert result.processed == 0
