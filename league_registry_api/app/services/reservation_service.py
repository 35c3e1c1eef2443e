"""
Short-lived holds on a spot in a capacity-limited category.

A hold is a ``user_registrations`` row in ``processing`` state whose
``processing_expires_at`` lies a few minutes in the future.  Holds
count towards category capacity until they expire, are released, or
become ``paid`` when the payment succeeds.

The UNIQUE (user_id, registration_id) constraint keeps a member from
holding, or paying for, the same registration twice.
"""

import logging
import sqlite3
from typing import Optional

from league_registry_api.app.core.config import settings
from league_registry_api.app.core.db import get_connection, timestamp
from league_registry_api.app.core.exceptions import CapacityError, ConflictError
from league_registry_api.app.schemas.registration import DuplicateCheck
from league_registry_api.app.services.registration_service import category_registration_count

logger = logging.getLogger(__name__)


class ReservationService:
    """Create and release registration holds."""

    @classmethod
    def reserve(
        cls,
        user_id: int,
        registration_id: int,
        category_id: int,
        registration_fee: int,
        amount: int,
        presale_code: Optional[str] = None,
        max_capacity: Optional[int] = None,
    ) -> sqlite3.Row:
        """Hold a spot for ``reservation_minutes`` and return the new row.

        Raises
        ------
        CapacityError
            The category is full; the caller should offer the waitlist.
        ConflictError
            The member already has a paid registration or a live hold.
        """
        now = timestamp()
        conn = get_connection()
        try:
            conn.execute(
                "DELETE FROM user_registrations WHERE user_id = ? AND registration_id = ? "
                "AND payment_status = 'processing' AND processing_expires_at <= ?",
                (user_id, registration_id, now),
            )
            if max_capacity is not None:
                taken = category_registration_count(category_id, conn)
                if taken >= max_capacity:
                    conn.commit()
                    logger.info("Category %s is full (%s/%s)", category_id, taken, max_capacity)
                    raise CapacityError("This category is at capacity")
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO user_registrations (user_id, registration_id, registration_category_id,
                        payment_status, processing_expires_at, registration_fee, amount_paid, presale_code_used)
                    VALUES (?, ?, ?, 'processing', ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        registration_id,
                        category_id,
                        timestamp(minutes=settings.reservation_minutes),
                        registration_fee,
                        amount,
                        presale_code,
                    ),
                )
            except sqlite3.IntegrityError:
                existing = conn.execute(
                    "SELECT payment_status FROM user_registrations WHERE user_id = ? AND registration_id = ?",
                    (user_id, registration_id),
                ).fetchone()
                if existing and existing["payment_status"] == "paid":
                    raise ConflictError("You are already registered for this registration")
                raise ConflictError("Registration conflict: a checkout for this registration is already in progress")
            conn.commit()
            row = conn.execute("SELECT * FROM user_registrations WHERE id = ?", (cursor.lastrowid,)).fetchone()
        finally:
            conn.close()
        logger.info("Reserved spot %s for user %s in category %s", row["id"], user_id, category_id)
        return row

    @staticmethod
    def attach_payment_intent(reservation_id: int, payment_intent_id: str, payment_id: Optional[int] = None) -> None:
        conn = get_connection()
        try:
            conn.execute(
                "UPDATE user_registrations SET stripe_payment_intent_id = ?, payment_id = COALESCE(?, payment_id) "
                "WHERE id = ?",
                (payment_intent_id, payment_id, reservation_id),
            )
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def mark_paid(reservation_id: int, payment_id: Optional[int], amount_paid: int) -> bool:
        """Turn a hold into a paid registration; returns False if it was already paid."""
        conn = get_connection()
        try:
            changed = conn.execute(
                """
                UPDATE user_registrations
                SET payment_status = 'paid', payment_id = ?, amount_paid = ?, registered_at = ?,
                    processing_expires_at = NULL
                WHERE id = ? AND payment_status != 'paid'
                """,
                (payment_id, amount_paid, timestamp(), reservation_id),
            ).rowcount
            conn.commit()
        finally:
            conn.close()
        return bool(changed)

    @staticmethod
    def release(reservation_id: int) -> bool:
        """Drop a hold that is still ``processing``; paid rows are left alone."""
        conn = get_connection()
        try:
            deleted = conn.execute(
                "DELETE FROM user_registrations WHERE id = ? AND payment_status = 'processing'", (reservation_id,)
            ).rowcount
            conn.commit()
        finally:
            conn.close()
        if deleted:
            logger.info("Released reservation %s", reservation_id)
        return bool(deleted)

    @staticmethod
    def release_for_intent(payment_intent_id: str) -> bool:
        conn = get_connection()
        try:
            deleted = conn.execute(
                "DELETE FROM user_registrations WHERE stripe_payment_intent_id = ? AND payment_status = 'processing'",
                (payment_intent_id,),
            ).rowcount
            conn.commit()
        finally:
            conn.close()
        return bool(deleted)

    @staticmethod
    def cleanup_expired() -> int:
        conn = get_connection()
        try:
            deleted = conn.execute(
                "DELETE FROM user_registrations WHERE payment_status = 'processing' AND processing_expires_at < ?",
                (timestamp(),),
            ).rowcount
            conn.commit()
        finally:
            conn.close()
        if deleted:
            logger.info("Removed %s expired reservations", deleted)
        return deleted

    @staticmethod
    def check_duplicate(user_id: int, registration_id: int) -> DuplicateCheck:
        conn = get_connection()
        try:
            row = conn.execute(
                "SELECT payment_status, processing_expires_at FROM user_registrations "
                "WHERE user_id = ? AND registration_id = ?",
                (user_id, registration_id),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return DuplicateCheck(is_registered=False, has_active_hold=False)
        if row["payment_status"] == "paid":
            return DuplicateCheck(is_registered=True, has_active_hold=False)
        if row["payment_status"] == "processing" and row["processing_expires_at"] > timestamp():
            return DuplicateCheck(is_registered=False, has_active_hold=True, expires_at=row["processing_expires_at"])
        return DuplicateCheck(is_registered=False, has_active_hold=False)
