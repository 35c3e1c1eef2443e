"""
Pytest configuration and fixtures for the league registry tests.

Every test gets its own SQLite file with all migrations applied.  The
Stripe gateway is patched at its class seam so no test ever reaches
the network; Xero stays disconnected unless a test connects a tenant.
"""

import io
import itertools
import json
from datetime import timedelta
from types import SimpleNamespace
from typing import Any, Callable, Dict, List
from unittest.mock import patch

import pytest
import requests
from fastapi.testclient import TestClient
from requests.adapters import BaseAdapter

from league_registry_api.app.core.config import settings
from league_registry_api.app.core.db import get_connection, init_db, utc_now
from league_registry_api.app.core.security import create_access_token
from league_registry_api.app.services.stripe_gateway import StripeGateway

_ids = itertools.count(1)


def _insert(table: str, **values: Any) -> int:
    columns = list(values)
    conn = get_connection()
    try:
        cursor = conn.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            tuple(values[c] for c in columns),
        )
        conn.commit()
        return cursor.lastrowid
    finally:
        conn.close()


@pytest.fixture(autouse=True)
def test_db(tmp_path, monkeypatch) -> str:
    """Point the application at a fresh database file and migrate it."""
    path = str(tmp_path / "league_test.db")
    monkeypatch.setattr(settings, "database_url", path)
    monkeypatch.setattr(settings, "loops_api_key", "")
    monkeypatch.setattr(settings, "stripe_webhook_secret", "")
    monkeypatch.setattr(settings, "super_admin_static_token", "")
    monkeypatch.setattr(settings, "cron_secret", "cron-test-secret")
    init_db()
    return path


@pytest.fixture
def query() -> Callable[..., List[Dict[str, Any]]]:
    """Run a SELECT against the test database and return plain dicts."""

    def _query(sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        conn = get_connection()
        try:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    return _query


@pytest.fixture
def execute() -> Callable[..., None]:
    def _execute(sql: str, params: tuple = ()) -> None:
        conn = get_connection()
        try:
            conn.execute(sql, params)
            conn.commit()
        finally:
            conn.close()

    return _execute


# ----------------------------------------------------------------------
# Row factories
# ----------------------------------------------------------------------
@pytest.fixture
def make_user(query) -> Callable[..., Dict[str, Any]]:
    def _make(email: str = None, role_id: int = 3, saved_card: bool = True, **extra: Any) -> Dict[str, Any]:
        n = next(_ids)
        values = {
            "email": email or f"player{n}@example.com",
            "first_name": "Player",
            "last_name": str(n),
            "role_id": role_id,
            "stripe_customer_id": f"cus_test_{n}",
        }
        if saved_card:
            values.update(stripe_payment_method_id=f"pm_test_{n}", setup_intent_status="succeeded")
        values.update(extra)
        user_id = _insert("users", **values)
        return query("SELECT * FROM users WHERE id = ?", (user_id,))[0]

    return _make


@pytest.fixture
def make_season() -> Callable[..., int]:
    def _make(days_left: int = 150, **extra: Any) -> int:
        today = utc_now().date()
        values = {
            "name": "Fall/Winter",
            "type": "fall_winter",
            "start_date": (today - timedelta(days=30)).isoformat(),
            "end_date": (today + timedelta(days=days_left)).isoformat(),
        }
        values.update(extra)
        return _insert("seasons", **values)

    return _make


@pytest.fixture
def make_registration(make_season) -> Callable[..., int]:
    def _make(season_id: int = None, **extra: Any) -> int:
        values = {
            "season_id": season_id or make_season(),
            "name": "Tuesday Night League",
            "type": "team",
            "is_active": 1,
        }
        values.update(extra)
        return _insert("registrations", **values)

    return _make


@pytest.fixture
def make_category() -> Callable[..., int]:
    def _make(registration_id: int, price: int = 10000, max_capacity: int = None, **extra: Any) -> int:
        values = {
            "registration_id": registration_id,
            "name": "Skater",
            "price": price,
            "max_capacity": max_capacity,
            "accounting_code": "410",
        }
        values.update(extra)
        return _insert("registration_categories", **values)

    return _make


@pytest.fixture
def make_membership() -> Callable[..., int]:
    def _make(price_monthly: int = 1500, price_annual: int = 15000, **extra: Any) -> int:
        values = {
            "name": "Adult Membership",
            "price_monthly": price_monthly,
            "price_annual": price_annual,
            "accounting_code": "400",
        }
        values.update(extra)
        return _insert("memberships", **values)

    return _make


@pytest.fixture
def make_discount() -> Callable[..., int]:
    """Create a category and a code in it; returns the code id."""

    def _make(code: str = None, percentage: int = 25, cap: int = None, accounting_code: str = "420", **extra: Any) -> int:
        category_id = _insert(
            "discount_categories",
            name="Scholarship",
            accounting_code=accounting_code,
            max_discount_per_user_per_season=cap,
        )
        values = {
            "discount_category_id": category_id,
            "code": code or f"CODE{next(_ids)}",
            "percentage": percentage,
        }
        values.update(extra)
        return _insert("discount_codes", **values)

    return _make


@pytest.fixture
def make_paid_registration() -> Callable[..., int]:
    def _make(user_id: int, registration_id: int, category_id: int, amount: int = 10000) -> int:
        return _insert(
            "user_registrations",
            user_id=user_id,
            registration_id=registration_id,
            registration_category_id=category_id,
            payment_status="paid",
            registration_fee=amount,
            amount_paid=amount,
        )

    return _make


@pytest.fixture
def insert_row() -> Callable[..., int]:
    return _insert


# ----------------------------------------------------------------------
# Vendors
# ----------------------------------------------------------------------
@pytest.fixture
def stripe_mock():
    """Patch every Stripe call the application makes.

    On-session intents come back ``requires_payment_method``; off-session
    charges come back ``succeeded``.  Tests override ``side_effect`` to
    simulate declines.
    """

    def _intent(**kwargs: Any) -> Dict[str, Any]:
        n = next(_ids)
        return {"id": f"pi_test_{n}", "client_secret": f"pi_test_{n}_secret", "status": "requires_payment_method"}

    def _charge(**kwargs: Any) -> Dict[str, Any]:
        n = next(_ids)
        return {"id": f"pi_offsession_{n}", "status": "succeeded", "client_secret": None}

    with patch.object(StripeGateway, "create_payment_intent", side_effect=_intent) as create_intent, patch.object(
        StripeGateway, "charge_saved_method", side_effect=_charge
    ) as charge, patch.object(
        StripeGateway, "create_customer", return_value="cus_created"
    ) as create_customer, patch.object(
        StripeGateway, "create_setup_intent", return_value={"id": "seti_test", "client_secret": "seti_secret"}
    ) as setup_intent, patch.object(
        StripeGateway, "detach_payment_method", return_value=None
    ) as detach:
        yield SimpleNamespace(
            create_payment_intent=create_intent,
            charge_saved_method=charge,
            create_customer=create_customer,
            create_setup_intent=setup_intent,
            detach_payment_method=detach,
        )


def stripe_metadata(call_kwargs: Dict[str, Any]) -> Dict[str, str]:
    """Metadata as Stripe echoes it back in events: strings only."""
    return {key: str(value) for key, value in call_kwargs["metadata"].items() if value is not None}


@pytest.fixture
def intent_event():
    """Build a ``payment_intent.*`` event from a mocked ``create_payment_intent`` call."""

    def _build(mock_call, intent_id: str, event_type: str = "payment_intent.succeeded", **extra: Any) -> Dict[str, Any]:
        kwargs = mock_call.kwargs
        intent = {
            "id": intent_id,
            "object": "payment_intent",
            "amount": kwargs["amount"],
            "amount_received": kwargs["amount"] if event_type == "payment_intent.succeeded" else 0,
            "metadata": stripe_metadata(kwargs),
        }
        intent.update(extra)
        return {"id": f"evt_{next(_ids)}", "type": event_type, "data": {"object": intent}}

    return _build


class FakeAdapter(BaseAdapter):
    """Transport adapter that answers every request from ``handler``.

    ``handler`` receives the prepared request and returns
    ``(status_code, json_body)`` or raises a ``requests`` exception.
    """

    def __init__(self, handler: Callable[[requests.PreparedRequest], Any]):
        super().__init__()
        self.handler = handler

    def send(self, request: requests.PreparedRequest, **kwargs: Any) -> requests.Response:
        status_code, body = self.handler(request)
        response = requests.Response()
        response.status_code = status_code
        response.raw = io.BytesIO(json.dumps(body).encode())
        response.encoding = "utf-8"
        response.headers["Content-Type"] = "application/json"
        response.url = request.url
        response.request = request
        return response

    def close(self) -> None:
        pass


@pytest.fixture
def fake_session() -> Callable[..., requests.Session]:
    """Build a ``requests.Session`` whose HTTP(S) traffic goes to a handler."""

    def _session(handler: Callable[[requests.PreparedRequest], Any]) -> requests.Session:
        session = requests.Session()
        adapter = FakeAdapter(handler)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    return _session


# ----------------------------------------------------------------------
# HTTP
# ----------------------------------------------------------------------
@pytest.fixture
def client() -> TestClient:
    from league_registry_api.app.main import app

    return TestClient(app)


@pytest.fixture
def auth_headers() -> Callable[[Dict[str, Any]], Dict[str, str]]:
    def _headers(user: Dict[str, Any]) -> Dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token({'sub': user['email']})}"}

    return _headers
