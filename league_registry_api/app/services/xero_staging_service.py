"""
Accounting staging area.

Before any money moves, the charge is described locally as an
``xero_invoices`` row with its ``xero_invoice_line_items``.  Once the
charge succeeds, ``mark_ready_for_sync`` authorises the invoice and
stages the matching ``xero_payments`` row.  The batch sync
(``xero_sync_service``) later pushes both to Xero.

Life cycle of ``sync_status``::

    staged ──(payment completed)──> pending ──(sync ok)──> synced
                                         │
                                         ├──(sync error)──> failed ──(admin retry)──> pending
                                         │                        └──(admin ignore)──> ignored
                                         └──(older than a day, cleanup)──> abandoned

Installment rows of a payment plan start as ``planned`` and become
``pending`` once the installment is collected.

All amounts are cents.  Discount lines carry negative amounts so the
line total always equals the invoice's ``net_amount``.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from league_registry_api.app.core.db import from_json, get_connection, timestamp, to_json
from league_registry_api.app.core.exceptions import NotFoundError
from league_registry_api.app.schemas.accounting import (
    LineItemRead,
    StagedPaymentRead,
    StagingRecordRead,
    SyncLogRead,
)

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("staged", "pending", "synced")
DEFAULT_BANK_ACCOUNT = "090"


@dataclass
class StagingLine:
    item_type: str
    amount: int
    description: str
    accounting_code: Optional[str]
    item_id: Optional[int] = None
    discount_code_id: Optional[int] = None


@dataclass
class StagingRequest:
    user_id: int
    total_amount: int
    discount_amount: int
    final_amount: int
    lines: List[StagingLine]
    metadata: Dict[str, Any] = field(default_factory=dict)
    payment_id: Optional[int] = None


class XeroStagingService:
    """Create, advance and administer staged accounting records."""

    @classmethod
    def create_immediate_staging(cls, data: StagingRequest, is_free: bool = False) -> Dict[str, Any]:
        """Stage an invoice and its line items; returns the invoice record.

        Free invoices need no payment and are staged straight into
        ``pending``/``AUTHORISED``.  Everything else waits in ``staged``
        until ``mark_ready_for_sync`` is called.
        """
        for line in data.lines:
            if not line.accounting_code:
                raise ValueError(f"'{line.description}' has no accounting code configured")
        if sum(line.amount for line in data.lines) != data.final_amount:
            raise ValueError("Line items do not add up to the final amount")
        if data.total_amount - data.discount_amount != data.final_amount:
            raise ValueError("final_amount must equal total_amount minus discount_amount")

        metadata = {"user_id": data.user_id, "staged_by": "immediate", **data.metadata}
        sync_status, invoice_status = ("pending", "AUTHORISED") if is_free else ("staged", "DRAFT")
        conn = get_connection()
        try:
            cursor = conn.execute(
                """
                INSERT INTO xero_invoices (payment_id, invoice_type, invoice_status, total_amount,
                    discount_amount, net_amount, sync_status, staged_at, staging_metadata)
                VALUES (?, 'ACCREC', ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    data.payment_id,
                    invoice_status,
                    data.total_amount,
                    data.discount_amount,
                    data.final_amount,
                    sync_status,
                    timestamp(),
                    to_json(metadata),
                ),
            )
            invoice_id = cursor.lastrowid
            conn.executemany(
                """
                INSERT INTO xero_invoice_line_items (xero_invoice_id, line_item_type, item_id, discount_code_id,
                    description, quantity, unit_amount, account_code, tax_type, line_amount)
                VALUES (?, ?, ?, ?, ?, 1, ?, ?, 'NONE', ?)
                """,
                [
                    (
                        invoice_id,
                        line.item_type,
                        line.item_id,
                        line.discount_code_id,
                        line.description,
                        line.amount,
                        line.accounting_code,
                        line.amount,
                    )
                    for line in data.lines
                ],
            )
            conn.commit()
        finally:
            conn.close()
        logger.info(
            "Staged invoice %s for user %s: net=%s status=%s", invoice_id, data.user_id, data.final_amount, sync_status
        )
        return cls.get_record(invoice_id)

    @staticmethod
    def get_record(staging_id: int) -> Dict[str, Any]:
        conn = get_connection()
        try:
            row = conn.execute("SELECT * FROM xero_invoices WHERE id = ?", (staging_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError(f"Staging record {staging_id} not found")
        record = dict(row)
        record["staging_metadata"] = from_json(row["staging_metadata"])
        return record

    @classmethod
    def find_active(cls, staging_id: Optional[int]) -> Optional[Dict[str, Any]]:
        """Return the record only if it is staged, pending or synced."""
        if not staging_id:
            return None
        try:
            record = cls.get_record(int(staging_id))
        except (NotFoundError, ValueError):
            return None
        if record["sync_status"] not in ACTIVE_STATUSES:
            return None
        return record

    @classmethod
    def merge_metadata(cls, staging_id: int, extra: Dict[str, Any], payment_id: Optional[int] = None) -> None:
        record = cls.get_record(staging_id)
        merged = {**record["staging_metadata"], **{k: v for k, v in extra.items() if v is not None}}
        conn = get_connection()
        try:
            conn.execute(
                "UPDATE xero_invoices SET staging_metadata = ?, payment_id = COALESCE(?, payment_id) WHERE id = ?",
                (to_json(merged), payment_id, staging_id),
            )
            conn.commit()
        finally:
            conn.close()

    @classmethod
    async def mark_ready_for_sync(
        cls,
        staging_id: int,
        payment_id: Optional[int],
        metadata: Optional[Dict[str, Any]] = None,
        reference: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Authorise a staged invoice and stage its payment.

        Safe to call repeatedly: a synced invoice keeps its status, and
        the ``xero_payments`` row is only created once.  Payment plan
        invoices get their installment rows from ``PaymentPlanService``
        instead.
        """
        from league_registry_api.app.services.settings_service import SettingsService

        record = cls.get_record(staging_id)
        merged = {**record["staging_metadata"], **{k: v for k, v in (metadata or {}).items() if v is not None}}
        merged["payment_completed_at"] = merged.get("payment_completed_at") or timestamp()
        reference = reference or merged.get("stripe_payment_intent_id")
        new_status = "pending" if record["sync_status"] == "staged" else record["sync_status"]
        bank_account = await SettingsService.get_value("stripe_bank_account", DEFAULT_BANK_ACCOUNT)

        conn = get_connection()
        try:
            conn.execute(
                """
                UPDATE xero_invoices
                SET sync_status = ?, invoice_status = 'AUTHORISED', payment_id = COALESCE(?, payment_id),
                    staging_metadata = ?
                WHERE id = ?
                """,
                (new_status, payment_id, to_json(merged), staging_id),
            )
            existing = conn.execute(
                "SELECT id FROM xero_payments WHERE xero_invoice_id = ? LIMIT 1", (staging_id,)
            ).fetchone()
            if record["net_amount"] > 0 and not record["is_payment_plan"] and not existing:
                conn.execute(
                    """
                    INSERT INTO xero_payments (xero_invoice_id, bank_account_code, amount_paid, reference,
                        sync_status, staged_at, staging_metadata, payment_type)
                    VALUES (?, ?, ?, ?, 'pending', ?, ?, 'full')
                    """,
                    (
                        staging_id,
                        bank_account,
                        record["net_amount"],
                        reference,
                        timestamp(),
                        to_json({"payment_id": payment_id, "stripe_payment_intent_id": reference}),
                    ),
                )
            conn.commit()
        finally:
            conn.close()
        logger.info("Staging record %s ready for sync (status=%s, payment=%s)", staging_id, new_status, payment_id)
        return cls.get_record(staging_id)

    @classmethod
    def mark_payment_plan(cls, staging_id: int) -> None:
        conn = get_connection()
        try:
            conn.execute("UPDATE xero_invoices SET is_payment_plan = 1 WHERE id = ?", (staging_id,))
            conn.commit()
        finally:
            conn.close()

    @classmethod
    def set_status(cls, staging_id: int, status: str, error: Optional[str] = None) -> None:
        conn = get_connection()
        try:
            conn.execute(
                "UPDATE xero_invoices SET sync_status = ?, sync_error = ? WHERE id = ?", (status, error, staging_id)
            )
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------
    @classmethod
    async def retry_failed(
        cls, invoice_ids: Optional[Sequence[int]] = None, payment_ids: Optional[Sequence[int]] = None
    ) -> Dict[str, int]:
        """Reset failed records to ``pending``.

        With no ids at all, every failed invoice and payment is reset.
        """
        reset_all = not invoice_ids and not payment_ids
        return {
            "invoices": cls._update_failed("xero_invoices", "pending", None if reset_all else invoice_ids),
            "payments": cls._update_failed("xero_payments", "pending", None if reset_all else payment_ids),
        }

    @classmethod
    async def ignore_failed(
        cls, invoice_ids: Sequence[int] = (), payment_ids: Sequence[int] = ()
    ) -> Dict[str, int]:
        """Mark specific failed records as ``ignored`` so they stop showing up."""
        if not invoice_ids and not payment_ids:
            raise ValueError("Provide the failed records to ignore")
        return {
            "invoices": cls._update_failed("xero_invoices", "ignored", invoice_ids) if invoice_ids else 0,
            "payments": cls._update_failed("xero_payments", "ignored", payment_ids) if payment_ids else 0,
        }

    @staticmethod
    def _update_failed(table: str, status: str, ids: Optional[Sequence[int]]) -> int:
        query = f"UPDATE {table} SET sync_status = ?, sync_error = CASE WHEN ? = 'pending' THEN NULL ELSE sync_error END WHERE sync_status = 'failed'"
        params: List[Any] = [status, status]
        if ids is not None:
            if not ids:
                return 0
            query += f" AND id IN ({', '.join('?' for _ in ids)})"
            params.extend(ids)
        conn = get_connection()
        try:
            count = conn.execute(query, tuple(params)).rowcount
            conn.commit()
        finally:
            conn.close()
        logger.info("Set %s failed %s rows to %s", count, table, status)
        return count

    @classmethod
    async def list_records(
        cls, sync_status: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> List[StagingRecordRead]:
        query = "SELECT * FROM xero_invoices"
        params: List[Any] = []
        if sync_status:
            query += " WHERE sync_status = ?"
            params.append(sync_status)
        query += " ORDER BY staged_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        conn = get_connection()
        try:
            rows = conn.execute(query, tuple(params)).fetchall()
            return [cls._to_read(conn, row) for row in rows]
        finally:
            conn.close()

    @classmethod
    async def get_record_detail(cls, staging_id: int) -> StagingRecordRead:
        conn = get_connection()
        try:
            row = conn.execute("SELECT * FROM xero_invoices WHERE id = ?", (staging_id,)).fetchone()
            if not row:
                raise NotFoundError(f"Staging record {staging_id} not found")
            return cls._to_read(conn, row)
        finally:
            conn.close()

    @staticmethod
    def _to_read(conn: sqlite3.Connection, row: sqlite3.Row) -> StagingRecordRead:
        lines = conn.execute(
            "SELECT * FROM xero_invoice_line_items WHERE xero_invoice_id = ? ORDER BY id", (row["id"],)
        ).fetchall()
        payments = conn.execute(
            "SELECT * FROM xero_payments WHERE xero_invoice_id = ? ORDER BY COALESCE(installment_number, 0), id",
            (row["id"],),
        ).fetchall()
        return StagingRecordRead(
            id=row["id"],
            payment_id=row["payment_id"],
            tenant_id=row["tenant_id"],
            xero_invoice_id=row["xero_invoice_id"],
            invoice_number=row["invoice_number"],
            invoice_status=row["invoice_status"],
            total_amount=row["total_amount"],
            discount_amount=row["discount_amount"],
            net_amount=row["net_amount"],
            sync_status=row["sync_status"],
            staged_at=row["staged_at"],
            last_synced_at=row["last_synced_at"],
            sync_error=row["sync_error"],
            is_payment_plan=bool(row["is_payment_plan"]),
            staging_metadata=from_json(row["staging_metadata"]),
            line_items=[LineItemRead(**{k: line[k] for k in LineItemRead.model_fields}) for line in lines],
            payments=[StagedPaymentRead(**{k: p[k] for k in StagedPaymentRead.model_fields}) for p in payments],
        )

    @classmethod
    async def list_sync_logs(
        cls, status: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> List[SyncLogRead]:
        query = "SELECT * FROM xero_sync_logs"
        params: List[Any] = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        conn = get_connection()
        try:
            rows = conn.execute(query, tuple(params)).fetchall()
        finally:
            conn.close()
        return [SyncLogRead(**{k: r[k] for k in SyncLogRead.model_fields}) for r in rows]
