"""
Push staged accounting records to Xero.

``sync_all_pending`` is the batch job run by ``/cron/xero-sync`` and
the admin "sync now" button.  It loads every ``pending`` invoice and
every ``pending`` payment whose local charge actually completed, then
creates the invoices first and the payments second, since a payment
can only be applied to an invoice Xero already knows about.

Failures are recorded on the row itself (``sync_status='failed'`` and
``sync_error``).  Rate limited requests leave the row ``pending`` so the
next run picks it up again.
"""

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import requests
from fastapi.concurrency import run_in_threadpool

from league_registry_api.app.core.config import settings
from league_registry_api.app.core.db import TIMESTAMP_FORMAT, from_json, get_connection, timestamp, utc_now
from league_registry_api.app.schemas.accounting import SyncResult
from league_registry_api.app.services.xero_client import XeroApiError, XeroClient, is_rate_limit_error, to_dollars

logger = logging.getLogger(__name__)

INVOICE_DUE_DAYS = 30

_PENDING_PAYMENTS_SQL = """
    SELECT xp.*
    FROM xero_payments xp
    JOIN xero_invoices xi ON xi.id = xp.xero_invoice_id
    JOIN payments p ON p.id = COALESCE(json_extract(xp.staging_metadata, '$.payment_id'), xi.payment_id)
    WHERE xp.sync_status = 'pending'
      AND p.status = 'completed'
      AND p.payment_method != 'free'
"""


def _date_part(value: Optional[str]) -> datetime:
    if not value:
        return utc_now()
    try:
        return datetime.strptime(value[:19], TIMESTAMP_FORMAT)
    except ValueError:
        return datetime.strptime(value[:10], "%Y-%m-%d")


class XeroSyncService:
    """Batch and single-record synchronisation with Xero.

    The Xero calls are blocking ``requests`` round-trips, so the async
    entry points hand the work to the threadpool.
    """

    @classmethod
    async def sync_all_pending(cls, session: Optional[requests.Session] = None) -> SyncResult:
        return await run_in_threadpool(cls._sync_all_pending, session)

    @classmethod
    def _sync_all_pending(cls, session: Optional[requests.Session]) -> SyncResult:
        result = SyncResult()
        conn = get_connection()
        try:
            invoices = conn.execute(
                "SELECT * FROM xero_invoices WHERE sync_status = 'pending' ORDER BY staged_at, id"
            ).fetchall()
            payments = conn.execute(_PENDING_PAYMENTS_SQL + " ORDER BY xp.staged_at, xp.id").fetchall()
        finally:
            conn.close()

        if not invoices and not payments:
            logger.debug("Nothing pending for Xero")
            return result

        try:
            client = XeroClient.connect(session=session)
        except XeroApiError as e:
            logger.warning(
                "Xero token refresh failed (%s); %s invoices and %s payments stay pending", e, len(invoices), len(payments)
            )
            result.skipped_reason = "Xero token refresh failed"
            result.invoices_skipped = len(invoices)
            result.errors.append(str(e))
            return result
        if client is None:
            logger.warning(
                "No active Xero connection; %s invoices and %s payments stay pending", len(invoices), len(payments)
            )
            result.skipped_reason = "No active Xero connection"
            result.invoices_skipped = len(invoices)
            return result

        logger.info("Syncing %s invoices and %s payments to Xero", len(invoices), len(payments))
        for invoice in invoices:
            cls._sync_invoice(client, invoice, result)
        for payment in payments:
            cls._sync_payment(client, payment, result)
        logger.info(
            "Xero sync finished: invoices %s synced / %s failed, payments %s synced / %s failed",
            result.invoices_synced,
            result.invoices_failed,
            result.payments_synced,
            result.payments_failed,
        )
        return result

    @classmethod
    async def sync_single(cls, staging_id: int, session: Optional[requests.Session] = None) -> bool:
        """Try to sync one invoice and its payments right away.

        Used straight after a payment completes.  Anything that goes
        wrong is logged and left for the batch job; this never raises.
        """
        return await run_in_threadpool(cls._sync_single, staging_id, session)

    @classmethod
    def _sync_single(cls, staging_id: int, session: Optional[requests.Session]) -> bool:
        try:
            conn = get_connection()
            try:
                invoice = conn.execute(
                    "SELECT * FROM xero_invoices WHERE id = ? AND sync_status = 'pending'", (staging_id,)
                ).fetchone()
                payments = conn.execute(
                    _PENDING_PAYMENTS_SQL + " AND xp.xero_invoice_id = ? ORDER BY xp.id", (staging_id,)
                ).fetchall()
            finally:
                conn.close()
            if invoice is None and not payments:
                return False
            client = XeroClient.connect(session=session)
            if client is None:
                logger.info("Xero not connected; staging record %s left for the batch sync", staging_id)
                return False
            result = SyncResult()
            if invoice is not None:
                cls._sync_invoice(client, invoice, result)
            for payment in payments:
                cls._sync_payment(client, payment, result)
            return not result.invoices_failed and not result.payments_failed and not result.errors
        except Exception:
            logger.exception("Immediate Xero sync of staging record %s failed", staging_id)
            return False

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------
    @classmethod
    def _sync_invoice(cls, client: XeroClient, invoice: sqlite3.Row, result: SyncResult) -> None:
        staging_id = invoice["id"]
        metadata = from_json(invoice["staging_metadata"])
        conn = get_connection()
        try:
            payment = None
            if invoice["payment_id"]:
                payment = conn.execute("SELECT * FROM payments WHERE id = ?", (invoice["payment_id"],)).fetchone()
            lines = conn.execute(
                "SELECT * FROM xero_invoice_line_items WHERE xero_invoice_id = ? ORDER BY id", (staging_id,)
            ).fetchall()
            user_id = metadata.get("user_id") or (payment["user_id"] if payment else None)
            user = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone() if user_id else None
        finally:
            conn.close()

        if invoice["net_amount"] > 0 and (payment is None or payment["status"] != "completed"):
            logger.info("Invoice %s skipped: payment not completed yet", staging_id)
            result.invoices_skipped += 1
            return
        if user is None:
            cls._fail_invoice(staging_id, "No member linked to this invoice", result)
            return

        try:
            contact_id = client.find_or_create_contact(dict(user))
            payload = cls.build_invoice_payload(invoice, lines, contact_id, metadata, payment)
            created = client.create_invoice(payload, staging_id)
        except Exception as e:
            if is_rate_limit_error(e):
                logger.warning("Rate limited while syncing invoice %s; leaving it pending", staging_id)
                cls._set_error("xero_invoices", staging_id, "pending", str(e))
                result.errors.append(f"Invoice {staging_id}: {e}")
                return
            cls._fail_invoice(staging_id, str(e), result)
            return

        conn = get_connection()
        try:
            conn.execute(
                """
                UPDATE xero_invoices
                SET sync_status = 'synced', xero_invoice_id = ?, invoice_number = ?, tenant_id = ?,
                    invoice_status = 'AUTHORISED', last_synced_at = ?, sync_error = NULL
                WHERE id = ?
                """,
                (created.get("InvoiceID"), created.get("InvoiceNumber"), client.tenant_id, timestamp(), staging_id),
            )
            conn.commit()
        finally:
            conn.close()
        result.invoices_synced += 1
        logger.info("Invoice %s synced as %s", staging_id, created.get("InvoiceNumber"))

    @staticmethod
    def build_invoice_payload(
        invoice: sqlite3.Row,
        lines: List[sqlite3.Row],
        contact_id: str,
        metadata: Dict[str, Any],
        payment: Optional[sqlite3.Row] = None,
    ) -> Dict[str, Any]:
        """Translate a staged invoice into the body Xero's Invoices endpoint expects."""
        issued = _date_part(invoice["created_at"])
        reference = metadata.get("stripe_payment_intent_id") or (payment["stripe_payment_intent_id"] if payment else None)
        payload: Dict[str, Any] = {
            "Type": "ACCREC",
            "Contact": {"ContactID": contact_id},
            "Date": issued.strftime("%Y-%m-%d"),
            "DueDate": (issued + timedelta(days=INVOICE_DUE_DAYS)).strftime("%Y-%m-%d"),
            "LineAmountTypes": "NoTax",
            "Status": "AUTHORISED",
            "CurrencyCode": settings.currency.upper(),
            "LineItems": [
                {
                    "Description": line["description"],
                    "Quantity": line["quantity"],
                    "UnitAmount": to_dollars(line["unit_amount"]),
                    "AccountCode": line["account_code"],
                    "TaxType": line["tax_type"],
                    "LineAmount": to_dollars(line["line_amount"]),
                }
                for line in lines
            ],
        }
        if reference:
            payload["Reference"] = reference
        return payload

    @classmethod
    def _fail_invoice(cls, staging_id: int, error: str, result: SyncResult) -> None:
        logger.error("Invoice %s failed to sync: %s", staging_id, error)
        cls._set_error("xero_invoices", staging_id, "failed", error)
        result.invoices_failed += 1
        result.errors.append(f"Invoice {staging_id}: {error}")

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------
    @classmethod
    def _sync_payment(cls, client: XeroClient, payment: sqlite3.Row, result: SyncResult) -> None:
        conn = get_connection()
        try:
            invoice = conn.execute(
                "SELECT sync_status, xero_invoice_id FROM xero_invoices WHERE id = ?", (payment["xero_invoice_id"],)
            ).fetchone()
        finally:
            conn.close()
        if invoice is not None and invoice["sync_status"] in ("staged", "pending"):
            logger.info("Payment %s waits for invoice %s to sync", payment["id"], payment["xero_invoice_id"])
            return
        if invoice is None or invoice["sync_status"] != "synced" or not invoice["xero_invoice_id"]:
            cls._fail_payment(payment["id"], "Parent invoice has not been synced to Xero", result)
            return

        payload = {
            "Invoice": {"InvoiceID": invoice["xero_invoice_id"]},
            "Account": {"Code": payment["bank_account_code"]},
            "Amount": to_dollars(payment["amount_paid"]),
            "Date": _date_part(payment["staged_at"]).strftime("%Y-%m-%d"),
        }
        if payment["reference"]:
            payload["Reference"] = payment["reference"]
        try:
            created = client.create_payment(payload, payment["id"])
        except Exception as e:
            if is_rate_limit_error(e):
                logger.warning("Rate limited while syncing payment %s; leaving it pending", payment["id"])
                cls._set_error("xero_payments", payment["id"], "pending", str(e))
                result.errors.append(f"Payment {payment['id']}: {e}")
                return
            cls._fail_payment(payment["id"], str(e), result)
            return

        conn = get_connection()
        try:
            conn.execute(
                """
                UPDATE xero_payments
                SET sync_status = 'synced', xero_payment_id = ?, tenant_id = ?, last_synced_at = ?, sync_error = NULL
                WHERE id = ?
                """,
                (created.get("PaymentID"), client.tenant_id, timestamp(), payment["id"]),
            )
            conn.commit()
        finally:
            conn.close()
        result.payments_synced += 1

    @classmethod
    def _fail_payment(cls, payment_id: int, error: str, result: SyncResult) -> None:
        logger.error("Payment %s failed to sync: %s", payment_id, error)
        cls._set_error("xero_payments", payment_id, "failed", error)
        result.payments_failed += 1
        result.errors.append(f"Payment {payment_id}: {error}")

    @staticmethod
    def _set_error(table: str, record_id: int, status: str, error: str) -> None:
        conn = get_connection()
        try:
            conn.execute(f"UPDATE {table} SET sync_status = ?, sync_error = ? WHERE id = ?", (status, error, record_id))
            conn.commit()
        finally:
            conn.close()
