"""
HTTP client for the Xero accounting API.

Calls are made with ``requests`` using the OAuth2 tokens stored in
``xero_oauth_tokens``.  An access token that expires within five
minutes is refreshed before use.  Every request, successful or not, is
written to ``xero_sync_logs`` with its request and response bodies so
failed syncs can be diagnosed after the fact.

Monetary values arrive here in cents and are converted to dollars
(``cents / 100``) only when building Xero payloads.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import requests

from league_registry_api.app.core.config import settings
from league_registry_api.app.core.db import TIMESTAMP_FORMAT, get_connection, timestamp, to_json, utc_now
from league_registry_api.app.schemas.accounting import XeroConnection

logger = logging.getLogger(__name__)

REFRESH_MARGIN_SECONDS = 300
REQUEST_TIMEOUT = 30
RATE_LIMIT_MARKERS = ("rate limit", "too many requests")


class XeroApiError(Exception):
    """A Xero request failed; ``status_code`` is ``None`` for transport errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def is_rate_limit_error(exc: Exception) -> bool:
    """True for HTTP 429 or a message that mentions rate limiting."""
    if isinstance(exc, XeroApiError) and exc.status_code == 429:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def to_dollars(cents: int) -> float:
    return round(cents / 100, 2)


def _validation_messages(element: Dict[str, Any]) -> str:
    errors = element.get("ValidationErrors") or []
    return "; ".join(e.get("Message", "") for e in errors) or "Xero reported validation errors"


class XeroClient:
    """One authenticated connection to a Xero tenant."""

    def __init__(self, tenant: Dict[str, Any], session: Optional[requests.Session] = None):
        self.tenant = dict(tenant)
        self.tenant_id = tenant["tenant_id"]
        self.session = session or requests.Session()

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------
    @staticmethod
    def get_active_tenant() -> Optional[Dict[str, Any]]:
        conn = get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM xero_oauth_tokens WHERE is_active = 1 ORDER BY updated_at DESC LIMIT 1"
            ).fetchone()
        finally:
            conn.close()
        return dict(row) if row else None

    @classmethod
    def connect(cls, session: Optional[requests.Session] = None) -> Optional["XeroClient"]:
        """Return a client for the active tenant, or ``None`` if not connected."""
        tenant = cls.get_active_tenant()
        if not tenant:
            return None
        client = cls(tenant, session=session)
        client.ensure_fresh_token()
        return client

    @staticmethod
    def save_connection(data: XeroConnection) -> Dict[str, Any]:
        """Store tokens from a completed OAuth consent and make the tenant active."""
        expires_at = timestamp(seconds=data.expires_in)
        conn = get_connection()
        try:
            conn.execute("UPDATE xero_oauth_tokens SET is_active = 0")
            conn.execute(
                """
                INSERT INTO xero_oauth_tokens (tenant_id, tenant_name, access_token, refresh_token, expires_at,
                    is_active, updated_at)
                VALUES (?, ?, ?, ?, ?, 1, ?)
                ON CONFLICT(tenant_id) DO UPDATE SET tenant_name = excluded.tenant_name,
                    access_token = excluded.access_token, refresh_token = excluded.refresh_token,
                    expires_at = excluded.expires_at, is_active = 1, updated_at = excluded.updated_at
                """,
                (data.tenant_id, data.tenant_name, data.access_token, data.refresh_token, expires_at, timestamp()),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("Xero tenant %s connected", data.tenant_id)
        return {"tenant_id": data.tenant_id, "tenant_name": data.tenant_name, "expires_at": expires_at}

    @staticmethod
    def disconnect(tenant_id: str) -> None:
        conn = get_connection()
        try:
            conn.execute("UPDATE xero_oauth_tokens SET is_active = 0 WHERE tenant_id = ?", (tenant_id,))
            conn.commit()
        finally:
            conn.close()

    def ensure_fresh_token(self) -> None:
        expires_at = datetime.strptime(self.tenant["expires_at"], TIMESTAMP_FORMAT)
        if (expires_at - utc_now()).total_seconds() > REFRESH_MARGIN_SECONDS:
            return
        self._refresh_token()

    def _refresh_token(self) -> None:
        logger.info("Refreshing Xero access token for tenant %s", self.tenant_id)
        try:
            response = self.session.post(
                settings.xero_identity_url,
                data={"grant_type": "refresh_token", "refresh_token": self.tenant["refresh_token"]},
                auth=(settings.xero_client_id, settings.xero_client_secret),
                timeout=REQUEST_TIMEOUT,
            )
            response.raise_for_status()
        except requests.HTTPError as e:
            self._log("token_refresh", "error", error=str(e), response=self._safe_json(e.response))
            raise XeroApiError(f"Token refresh failed: {e.response.status_code}", e.response.status_code) from e
        except requests.RequestException as e:
            self._log("token_refresh", "error", error=str(e))
            raise XeroApiError(f"Token refresh failed: {e}") from e
        payload = response.json()
        self.tenant["access_token"] = payload["access_token"]
        self.tenant["refresh_token"] = payload.get("refresh_token", self.tenant["refresh_token"])
        self.tenant["expires_at"] = timestamp(seconds=int(payload.get("expires_in", 1800)))
        conn = get_connection()
        try:
            conn.execute(
                "UPDATE xero_oauth_tokens SET access_token = ?, refresh_token = ?, expires_at = ?, updated_at = ? "
                "WHERE tenant_id = ?",
                (
                    self.tenant["access_token"],
                    self.tenant["refresh_token"],
                    self.tenant["expires_at"],
                    timestamp(),
                    self.tenant_id,
                ),
            )
            conn.commit()
        finally:
            conn.close()
        self._log("token_refresh", "success")

    # ------------------------------------------------------------------
    # API calls
    # ------------------------------------------------------------------
    def _request(
        self,
        method: str,
        path: str,
        operation_type: str,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        record_type: Optional[str] = None,
        record_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.tenant['access_token']}",
            "xero-tenant-id": self.tenant_id,
            "Accept": "application/json",
        }
        try:
            response = self.session.request(
                method,
                f"{settings.xero_api_base}{path}",
                headers=headers,
                json=json_body,
                params=params,
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as e:
            self._log(operation_type, "error", record_type, record_id, error=str(e), request=json_body)
            raise XeroApiError(f"Xero request failed: {e}") from e
        body = self._safe_json(response)
        if response.status_code >= 400:
            message = self._error_message(response, body)
            self._log(operation_type, "error", record_type, record_id, error=message, request=json_body, response=body)
            raise XeroApiError(message, response.status_code, body)
        return body

    def find_or_create_contact(self, user: Dict[str, Any]) -> str:
        """Return the Xero ContactID for a member, creating the contact if needed.

        Looks in the local ``xero_contacts`` cache first, then searches
        Xero by e‑mail, and finally creates a contact.
        """
        conn = get_connection()
        try:
            row = conn.execute(
                "SELECT xero_contact_id FROM xero_contacts WHERE user_id = ? AND tenant_id = ?",
                (user["id"], self.tenant_id),
            ).fetchone()
        finally:
            conn.close()
        if row:
            return row["xero_contact_id"]

        found = self._request(
            "GET",
            "/Contacts",
            "contact_sync",
            params={"where": f'EmailAddress=="{user["email"]}"'},
            record_type="user",
            record_id=user["id"],
        )
        contacts = found.get("Contacts") or []
        if contacts:
            contact_id = contacts[0]["ContactID"]
        else:
            name = " ".join(p for p in (user["first_name"], user["last_name"]) if p) or user["email"]
            payload = {
                "Contacts": [
                    {
                        # Xero contact names must be unique; the member id keeps namesakes apart.
                        "Name": f"{name} - {user['id']}",
                        "FirstName": user["first_name"] or "",
                        "LastName": user["last_name"] or "",
                        "EmailAddress": user["email"],
                    }
                ]
            }
            created = self._request("POST", "/Contacts", "contact_sync", payload, record_type="user", record_id=user["id"])
            contact_id = created["Contacts"][0]["ContactID"]

        conn = get_connection()
        try:
            conn.execute(
                "INSERT OR IGNORE INTO xero_contacts (user_id, tenant_id, xero_contact_id) VALUES (?, ?, ?)",
                (user["id"], self.tenant_id, contact_id),
            )
            conn.commit()
        finally:
            conn.close()
        self._log("contact_sync", "success", "user", user["id"], xero_id=contact_id)
        return contact_id

    def create_invoice(self, invoice: Dict[str, Any], staging_id: int) -> Dict[str, Any]:
        body = self._request(
            "POST", "/Invoices", "invoice_sync", {"Invoices": [invoice]}, record_type="xero_invoice", record_id=staging_id
        )
        created = (body.get("Invoices") or [{}])[0]
        if created.get("HasErrors"):
            message = _validation_messages(created)
            self._log("invoice_sync", "error", "xero_invoice", staging_id, error=message, request=invoice, response=body)
            raise XeroApiError(message, 400, body)
        self._log(
            "invoice_sync", "success", "xero_invoice", staging_id, xero_id=created.get("InvoiceID"), request=invoice, response=body
        )
        return created

    def create_payment(self, payment: Dict[str, Any], staged_payment_id: int) -> Dict[str, Any]:
        body = self._request(
            "PUT", "/Payments", "payment_sync", {"Payments": [payment]}, record_type="xero_payment", record_id=staged_payment_id
        )
        created = (body.get("Payments") or [{}])[0]
        if created.get("HasErrors"):
            message = _validation_messages(created)
            self._log("payment_sync", "error", "xero_payment", staged_payment_id, error=message, request=payment, response=body)
            raise XeroApiError(message, 400, body)
        self._log(
            "payment_sync", "success", "xero_payment", staged_payment_id, xero_id=created.get("PaymentID"), request=payment, response=body
        )
        return created

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _safe_json(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text[:2000]}

    @staticmethod
    def _error_message(response: requests.Response, body: Any) -> str:
        if response.status_code == 429:
            return "Xero rate limit exceeded (429 Too Many Requests)"
        if isinstance(body, dict):
            elements = body.get("Elements") or []
            if elements and elements[0].get("ValidationErrors"):
                return _validation_messages(elements[0])
            if body.get("Message") or body.get("Detail"):
                return str(body.get("Message") or body.get("Detail"))
        return f"Xero API error {response.status_code}"

    def _log(
        self,
        operation_type: str,
        status: str,
        record_type: Optional[str] = None,
        record_id: Optional[int] = None,
        xero_id: Optional[str] = None,
        error: Optional[str] = None,
        request: Any = None,
        response: Any = None,
    ) -> None:
        conn = get_connection()
        try:
            conn.execute(
                """
                INSERT INTO xero_sync_logs (tenant_id, operation_type, record_type, record_id, xero_id, status,
                    error_message, request_data, response_data)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    self.tenant_id,
                    operation_type,
                    record_type,
                    record_id,
                    xero_id,
                    status,
                    error,
                    to_json(request),
                    to_json(response),
                ),
            )
            conn.commit()
        finally:
            conn.close()
        if status == "error":
            logger.warning("Xero %s failed for %s %s: %s", operation_type, record_type, record_id, error)
