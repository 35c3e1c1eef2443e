"""
Integration tests for the HTTP surface: authentication, role checks,
cron protection and error translation.
"""

import pytest


class TestAuth:
    @pytest.mark.integration
    def test_register_and_login(self, client) -> None:
        response = client.post(
            "/api/v1/users/register",
            json={"email": "Pat@Example.com", "first_name": "Pat", "last_name": "Lee", "password": "correct-horse"},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["email"] == "pat@example.com"
        assert body["role_id"] == 1
        assert body["has_payment_method"] is False

        login = client.post("/api/v1/users/login", json={"email": "pat@example.com", "password": "correct-horse"})
        assert login.status_code == 200
        token = login.json()["access_token"]

        me = client.get("/api/v1/users/me", headers={"Authorization": f"Bearer {token}"})
        assert me.status_code == 200
        assert me.json()["first_name"] == "Pat"

    @pytest.mark.integration
    def test_second_account_is_a_member(self, client, make_user) -> None:
        make_user()

        response = client.post(
            "/api/v1/users/register",
            json={"email": "sam@example.com", "first_name": "Sam", "last_name": "Ng", "password": "long-enough"},
        )

        assert response.json()["role_id"] == 3

    @pytest.mark.integration
    def test_wrong_password(self, client) -> None:
        client.post(
            "/api/v1/users/register",
            json={"email": "pat@example.com", "first_name": "Pat", "last_name": "Lee", "password": "correct-horse"},
        )

        response = client.post("/api/v1/users/login", json={"email": "pat@example.com", "password": "wrong-horse"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Incorrect email or password"

    @pytest.mark.integration
    def test_me_requires_token(self, client) -> None:
        assert client.get("/api/v1/users/me").status_code == 401
        assert client.get("/api/v1/users/me", headers={"Authorization": "Bearer not-a-token"}).status_code == 401

    @pytest.mark.integration
    def test_me_reports_saved_card(self, client, make_user, auth_headers) -> None:
        user = make_user()

        response = client.get("/api/v1/users/me", headers=auth_headers(user))

        assert response.status_code == 200
        assert response.json()["has_payment_method"] is True

    @pytest.mark.integration
    def test_disabled_user_is_rejected(self, client, make_user, auth_headers) -> None:
        user = make_user(disabled=1)

        assert client.get("/api/v1/users/me", headers=auth_headers(user)).status_code == 401


class TestRoles:
    @pytest.mark.integration
    def test_member_cannot_read_accounting(self, client, make_user, auth_headers) -> None:
        response = client.get("/api/v1/accounting/staging", headers=auth_headers(make_user()))

        assert response.status_code == 403
        assert response.json()["detail"] == "Insufficient permissions"

    @pytest.mark.integration
    def test_admin_reads_accounting(self, client, make_user, auth_headers) -> None:
        response = client.get("/api/v1/accounting/staging", headers=auth_headers(make_user(role_id=2)))

        assert response.status_code == 200
        assert response.json() == []

    @pytest.mark.integration
    def test_admin_creates_season(self, client, make_user, auth_headers) -> None:
        response = client.post(
            "/api/v1/seasons/",
            headers=auth_headers(make_user(role_id=2)),
            json={"name": "Fall/Winter 2026-27", "type": "fall_winter", "start_date": "2026-09-01", "end_date": "2027-02-28"},
        )

        assert response.status_code == 201
        assert response.json()["name"] == "Fall/Winter 2026-27"

    @pytest.mark.integration
    def test_season_dates_are_validated(self, client, make_user, auth_headers) -> None:
        response = client.post(
            "/api/v1/seasons/",
            headers=auth_headers(make_user(role_id=2)),
            json={"name": "Backwards", "type": "spring_summer", "start_date": "2027-06-01", "end_date": "2027-03-01"},
        )

        assert response.status_code == 422

    @pytest.mark.integration
    def test_member_cannot_create_registration(self, client, make_user, make_season, auth_headers) -> None:
        response = client.post(
            "/api/v1/registrations/",
            headers=auth_headers(make_user()),
            json={"season_id": make_season(), "name": "Sneaky League"},
        )

        assert response.status_code == 403


class TestCheckoutErrors:
    @pytest.mark.integration
    def test_full_category_suggests_waitlist(
        self, client, make_user, make_registration, make_category, make_paid_registration, auth_headers
    ) -> None:
        registration_id = make_registration()
        category_id = make_category(registration_id, max_capacity=1)
        make_paid_registration(make_user()["id"], registration_id, category_id)

        response = client.post(
            "/api/v1/registrations/checkout",
            headers=auth_headers(make_user()),
            json={"registration_id": registration_id, "category_id": category_id},
        )

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["shouldShowWaitlist"] is True
        assert detail["error"]


class TestCron:
    @pytest.mark.integration
    def test_requires_secret(self, client) -> None:
        assert client.get("/api/v1/cron/health").status_code == 401
        assert client.get("/api/v1/cron/health", headers={"Authorization": "Bearer wrong"}).status_code == 401

    @pytest.mark.integration
    def test_health_and_cleanup(self, client) -> None:
        headers = {"Authorization": "Bearer cron-test-secret"}

        assert client.get("/api/v1/cron/health", headers=headers).json() == {"status": "ok"}

        cleanup = client.get("/api/v1/cron/cleanup", headers=headers)
        assert cleanup.status_code == 200
        assert cleanup.json()["reservations_released"] == 0

    @pytest.mark.integration
    def test_xero_sync_with_nothing_pending(self, client) -> None:
        response = client.get("/api/v1/cron/xero-sync", headers={"Authorization": "Bearer cron-test-secret"})

        assert response.status_code == 200
        body = response.json()
        assert body["skipped_reason"] is None
        assert body["invoices_synced"] == 0

    @pytest.mark.integration
    def test_xero_sync_without_connection(self, client, insert_row) -> None:
        insert_row("xero_invoices", total_amount=10000, net_amount=10000, sync_status="pending")

        response = client.get("/api/v1/cron/xero-sync", headers={"Authorization": "Bearer cron-test-secret"})

        assert response.status_code == 200
        assert response.json()["skipped_reason"] == "No active Xero connection"
        assert response.json()["invoices_skipped"] == 1
