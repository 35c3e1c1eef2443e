"""Housekeeping run by ``GET /cron/cleanup``."""

import logging
import sqlite3

from league_registry_api.app.core.db import get_connection, timestamp
from league_registry_api.app.schemas.accounting import CleanupResult
from league_registry_api.app.services.reservation_service import ReservationService

logger = logging.getLogger(__name__)

ABANDON_AFTER_HOURS = 24
SYNCED_RETENTION_DAYS = 30
EMAIL_RETENTION_DAYS = 90


class MaintenanceService:
    """Each step runs on its own; a failing step is reported in ``errors``."""

    @classmethod
    async def cleanup(cls) -> CleanupResult:
        result = CleanupResult()

        try:
            result.reservations_released = ReservationService.cleanup_expired()
        except sqlite3.Error as e:
            result.errors.append(f"Reservation cleanup error: {e}")

        cutoff = timestamp(hours=-ABANDON_AFTER_HOURS)
        try:
            result.invoices_abandoned = cls._execute(
                "UPDATE xero_invoices SET sync_status = 'abandoned' WHERE sync_status = 'pending' AND staged_at < ?",
                (cutoff,),
            )
            result.payments_abandoned = cls._execute(
                "UPDATE xero_payments SET sync_status = 'abandoned' WHERE sync_status = 'pending' AND staged_at < ?",
                (cutoff,),
            )
        except sqlite3.Error as e:
            result.errors.append(f"Pending abandonment error: {e}")

        try:
            result.staging_records_cleaned = cls._execute(
                "DELETE FROM xero_invoices WHERE sync_status = 'synced' AND created_at < ?",
                (timestamp(days=-SYNCED_RETENTION_DAYS),),
            )
        except sqlite3.Error as e:
            result.errors.append(f"Staging records cleanup error: {e}")

        try:
            result.log_entries_cleaned = cls._execute(
                "DELETE FROM email_logs WHERE created_at < ?", (timestamp(days=-EMAIL_RETENTION_DAYS),)
            )
        except sqlite3.Error as e:
            result.errors.append(f"Log entries cleanup error: {e}")

        level = logging.WARNING if result.errors else logging.INFO
        logger.log(level, "Cleanup finished: %s", result.model_dump())
        return result

    @staticmethod
    def _execute(sql: str, params: tuple) -> int:
        conn = get_connection()
        try:
            count = conn.execute(sql, params).rowcount
            conn.commit()
        finally:
            conn.close()
        return count
