"""
Business logic for payment records.

A ``payments`` row is written for every charge the application makes:
on-session checkouts (``pending`` until Stripe's webhook confirms
them), off-session charges of saved cards and free checkouts
(``completed`` straight away, ``payment_method='free'``).  The
``stripe_payment_intent_id`` column is UNIQUE, so one PaymentIntent can
never produce two payment rows.
"""

import logging
import sqlite3
from typing import List, Optional

from league_registry_api.app.core.db import get_connection, timestamp
from league_registry_api.app.core.exceptions import NotFoundError
from league_registry_api.app.schemas.payment import PaymentRead

logger = logging.getLogger(__name__)


def _to_read(row: sqlite3.Row) -> PaymentRead:
    return PaymentRead(**{k: row[k] for k in PaymentRead.model_fields})


class PaymentService:
    """Create, complete and read payment rows."""

    @staticmethod
    def create_payment(
        user_id: int,
        total_amount: int,
        discount_amount: int,
        final_amount: int,
        payment_intent_id: Optional[str] = None,
        status: str = "pending",
        payment_method: str = "stripe",
    ) -> int:
        """Insert a payment and return its id.

        If a row for ``payment_intent_id`` already exists its id is
        returned instead of inserting a second one.
        """
        conn = get_connection()
        try:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO payments (user_id, total_amount, discount_amount, final_amount,
                        stripe_payment_intent_id, status, payment_method, completed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        total_amount,
                        discount_amount,
                        final_amount,
                        payment_intent_id,
                        status,
                        payment_method,
                        timestamp() if status == "completed" else None,
                    ),
                )
            except sqlite3.IntegrityError:
                row = conn.execute(
                    "SELECT id FROM payments WHERE stripe_payment_intent_id = ?", (payment_intent_id,)
                ).fetchone()
                if row is None:
                    raise
                logger.info("Payment for intent %s already recorded as %s", payment_intent_id, row["id"])
                return row["id"]
            conn.commit()
            payment_id = cursor.lastrowid
        finally:
            conn.close()
        logger.info(
            "Payment %s created for user %s: %s cents via %s (%s)",
            payment_id,
            user_id,
            final_amount,
            payment_method,
            status,
        )
        return payment_id

    @staticmethod
    def find_by_intent(payment_intent_id: str) -> Optional[sqlite3.Row]:
        conn = get_connection()
        try:
            return conn.execute(
                "SELECT * FROM payments WHERE stripe_payment_intent_id = ?", (payment_intent_id,)
            ).fetchone()
        finally:
            conn.close()

    @staticmethod
    def get_payment_row(payment_id: int) -> sqlite3.Row:
        conn = get_connection()
        try:
            row = conn.execute("SELECT * FROM payments WHERE id = ?", (payment_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError(f"Payment {payment_id} not found")
        return row

    @staticmethod
    def mark_completed(payment_id: int) -> bool:
        """Set a payment to ``completed``; returns False if it already was."""
        conn = get_connection()
        try:
            changed = conn.execute(
                "UPDATE payments SET status = 'completed', completed_at = ? WHERE id = ? AND status != 'completed'",
                (timestamp(), payment_id),
            ).rowcount
            conn.commit()
        finally:
            conn.close()
        return bool(changed)

    @staticmethod
    def mark_failed(payment_id: int) -> None:
        conn = get_connection()
        try:
            conn.execute(
                "UPDATE payments SET status = 'failed' WHERE id = ? AND status = 'pending'", (payment_id,)
            )
            conn.commit()
        finally:
            conn.close()

    @classmethod
    async def list_payments(cls, user_id: Optional[int] = None, limit: int = 100, offset: int = 0) -> List[PaymentRead]:
        """List payments, newest first.  ``user_id=None`` lists everyone's."""
        query = "SELECT * FROM payments"
        params: list = []
        if user_id is not None:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        conn = get_connection()
        try:
            rows = conn.execute(query, tuple(params)).fetchall()
        finally:
            conn.close()
        return [_to_read(r) for r in rows]

    @classmethod
    async def get_payment(cls, payment_id: int, user_id: Optional[int] = None) -> PaymentRead:
        row = cls.get_payment_row(payment_id)
        if user_id is not None and row["user_id"] != user_id:
            raise NotFoundError(f"Payment {payment_id} not found")
        return _to_read(row)
