"""
Outbound email through Loops.

Emails are never sent inline with a payment.  Callers stage a row in
``email_logs`` with ``stage_email`` and the ``/cron/email-sync`` job
delivers pending rows in batches.  Rows with a transactional template
go to Loops' ``/transactional`` endpoint; the rest are sent as contact
events to ``/events/send`` so automations can pick them up.  Delivery
is blocking HTTP and runs in the threadpool.
"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional

import requests
from fastapi.concurrency import run_in_threadpool

from league_registry_api.app.core.config import settings
from league_registry_api.app.core.db import from_json, get_connection, timestamp, to_json
from league_registry_api.app.schemas.email import EmailBatchResult, EmailLogRead

logger = logging.getLogger(__name__)

MEMBERSHIP_PURCHASED = "membership.purchased"
REGISTRATION_COMPLETED = "registration.completed"
WAITLIST_ADDED = "waitlist.added"
WAITLIST_SELECTED = "waitlist.selected"
ALTERNATE_SELECTED = "alternate.selected"
PAYMENT_FAILED = "payment.failed"
PLAN_PAYMENT_PROCESSED = "payment_plan.payment_processed"
PLAN_PAYMENT_FAILED = "payment_plan.payment_failed"

SUBJECTS = {
    MEMBERSHIP_PURCHASED: "Your membership is confirmed",
    REGISTRATION_COMPLETED: "Registration confirmed",
    WAITLIST_ADDED: "You're on the waitlist",
    WAITLIST_SELECTED: "A spot opened up for you",
    ALTERNATE_SELECTED: "You've been selected as an alternate",
    PAYMENT_FAILED: "Your payment didn't go through",
    PLAN_PAYMENT_PROCESSED: "Payment plan installment received",
    PLAN_PAYMENT_FAILED: "Payment plan installment failed",
}

_TEMPLATE_SETTINGS = {
    MEMBERSHIP_PURCHASED: "loops_membership_template_id",
    REGISTRATION_COMPLETED: "loops_registration_template_id",
    WAITLIST_ADDED: "loops_waitlist_added_template_id",
    WAITLIST_SELECTED: "loops_waitlist_selected_template_id",
    ALTERNATE_SELECTED: "loops_alternate_selected_template_id",
    PAYMENT_FAILED: "loops_payment_failed_template_id",
    PLAN_PAYMENT_PROCESSED: "loops_plan_payment_processed_template_id",
    PLAN_PAYMENT_FAILED: "loops_plan_payment_failed_template_id",
}

BATCH_SIZE = 100
MAX_RETRIES = 3
RETRY_WINDOW_HOURS = 24
NOT_CONFIGURED = "Loops not configured"


def template_for(event_type: str) -> Optional[str]:
    attr = _TEMPLATE_SETTINGS.get(event_type)
    return (getattr(settings, attr) or None) if attr else None


def _to_read(row: sqlite3.Row) -> EmailLogRead:
    data = dict(row)
    data["email_data"] = from_json(row["email_data"])
    return EmailLogRead(**data)


class EmailService:
    """Stage, send and retry emails."""

    @classmethod
    def stage_email(
        cls,
        email_address: str,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        user_id: Optional[int] = None,
        subject: Optional[str] = None,
        template_id: Optional[str] = None,
        triggered_by: str = "automated",
    ) -> Optional[int]:
        """Queue an email; returns the log id, or ``None`` if staging failed.

        Never raises: a lost confirmation email must not undo a payment.
        """
        try:
            clean = {k: v for k, v in (data or {}).items() if v is not None}
            conn = get_connection()
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO email_logs (user_id, email_address, event_type, subject, template_id, status,
                        email_data, triggered_by)
                    VALUES (?, ?, ?, ?, ?, 'pending', ?, ?)
                    """,
                    (
                        user_id,
                        email_address,
                        event_type,
                        subject or SUBJECTS.get(event_type, event_type),
                        template_id or template_for(event_type),
                        to_json(clean),
                        triggered_by,
                    ),
                )
                conn.commit()
                return cursor.lastrowid
            finally:
                conn.close()
        except Exception:
            logger.exception("Failed to stage %s email for %s", event_type, email_address)
            return None

    @classmethod
    def stage_for_user(cls, user_id: int, event_type: str, data: Optional[Dict[str, Any]] = None) -> Optional[int]:
        """Stage an email to a member, filling in their name."""
        try:
            conn = get_connection()
            try:
                user = conn.execute(
                    "SELECT email, first_name, last_name FROM users WHERE id = ?", (user_id,)
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error:
            logger.exception("Could not load user %s for %s email", user_id, event_type)
            return None
        if user is None:
            logger.warning("Cannot stage %s email: user %s not found", event_type, user_id)
            return None
        payload = {"userName": " ".join(p for p in (user["first_name"], user["last_name"]) if p)}
        payload.update(data or {})
        return cls.stage_email(user["email"], event_type, payload, user_id=user_id)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    @classmethod
    async def send_pending(cls, limit: int = BATCH_SIZE, session: Optional[requests.Session] = None) -> EmailBatchResult:
        conn = get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM email_logs WHERE status = 'pending' ORDER BY created_at, id LIMIT ?", (limit,)
            ).fetchall()
        finally:
            conn.close()
        return await run_in_threadpool(cls._deliver, rows, session, False)

    @classmethod
    async def retry_failed(cls, limit: int = BATCH_SIZE, session: Optional[requests.Session] = None) -> EmailBatchResult:
        """Resend failed or bounced emails from the last day, up to three times each."""
        conn = get_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM email_logs
                WHERE status IN ('failed', 'bounced') AND retry_count < ? AND created_at >= ?
                ORDER BY created_at, id LIMIT ?
                """,
                (MAX_RETRIES, timestamp(hours=-RETRY_WINDOW_HOURS), limit),
            ).fetchall()
        finally:
            conn.close()
        return await run_in_threadpool(cls._deliver, rows, session, True)

    @classmethod
    def _deliver(cls, rows: List[sqlite3.Row], session: Optional[requests.Session], retry: bool) -> EmailBatchResult:
        result = EmailBatchResult(processed=len(rows))
        if not rows:
            return result
        if not settings.loops_api_key:
            logger.warning("Loops API key missing; marking %s emails as failed", len(rows))
            for row in rows:
                cls._mark(row["id"], "failed", error=NOT_CONFIGURED, retry=retry)
            result.failed = len(rows)
            return result

        client = session or requests.Session()
        headers = {"Authorization": f"Bearer {settings.loops_api_key}"}
        for row in rows:
            try:
                event_id = cls._send(client, headers, row)
            except (requests.RequestException, ValueError) as e:
                logger.warning("Email %s (%s) to %s failed: %s", row["id"], row["event_type"], row["email_address"], e)
                cls._mark(row["id"], "failed", error=str(e), retry=retry)
                result.failed += 1
                continue
            cls._mark(row["id"], "sent", event_id=event_id, retry=retry)
            result.sent += 1
        logger.info("Email batch: %s sent, %s failed", result.sent, result.failed)
        return result

    @staticmethod
    def _send(client: requests.Session, headers: Dict[str, str], row: sqlite3.Row) -> Optional[str]:
        data = from_json(row["email_data"])
        if row["template_id"]:
            url = f"{settings.loops_api_base}/transactional"
            body = {"transactionalId": row["template_id"], "email": row["email_address"], "dataVariables": data}
        else:
            url = f"{settings.loops_api_base}/events/send"
            body = {
                "email": row["email_address"],
                "eventName": row["event_type"],
                "eventProperties": {"subject": row["subject"], **data},
            }
        response = client.post(url, json=body, headers=headers, timeout=15)
        response.raise_for_status()
        payload = response.json() if response.content else {}
        if isinstance(payload, dict) and payload.get("success") is False:
            raise ValueError(payload.get("message") or "Loops rejected the email")
        return payload.get("id") if isinstance(payload, dict) else None

    @staticmethod
    def _mark(
        email_id: int, status: str, event_id: Optional[str] = None, error: Optional[str] = None, retry: bool = False
    ) -> None:
        conn = get_connection()
        try:
            conn.execute(
                """
                UPDATE email_logs
                SET status = ?, loops_event_id = COALESCE(?, loops_event_id),
                    sent_at = CASE WHEN ? = 'sent' THEN ? ELSE sent_at END,
                    bounce_reason = ?, retry_count = retry_count + ?
                WHERE id = ?
                """,
                (status, event_id, status, timestamp(), error, 1 if retry else 0, email_id),
            )
            conn.commit()
        finally:
            conn.close()

    @classmethod
    async def list_logs(
        cls, status: Optional[str] = None, user_id: Optional[int] = None, limit: int = 100, offset: int = 0
    ) -> List[EmailLogRead]:
        query = "SELECT * FROM email_logs WHERE 1 = 1"
        params: List[Any] = []
        if status:
            query += " AND status = ?"
            params.append(status)
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        query += " ORDER BY id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        conn = get_connection()
        try:
            rows = conn.execute(query, tuple(params)).fetchall()
        finally:
            conn.close()
        return [_to_read(r) for r in rows]
