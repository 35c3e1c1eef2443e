"""
Service layer for runtime settings.

Settings are typed key/value pairs in the ``settings`` table.  Besides
admin CRUD, the accounting pipeline reads its codes from here, e.g.
``stripe_bank_account`` (the Xero bank account Stripe payouts land in)
and ``donation_accounting_code``.
"""

import logging
from typing import Any, Dict, List, Optional

from league_registry_api.app.core.db import get_connection

logger = logging.getLogger(__name__)

SUPPORTED_TYPES = {"string", "int", "float", "bool"}


class SettingsService:
    """Service for managing application settings."""

    @classmethod
    async def list_settings(cls) -> List[Dict[str, Any]]:
        conn = get_connection()
        try:
            rows = conn.execute("SELECT key, value, type FROM settings ORDER BY key").fetchall()
        finally:
            conn.close()
        return [{"key": r["key"], "value": cls._deserialize(r["value"], r["type"]), "type": r["type"]} for r in rows]

    @classmethod
    async def get_setting(cls, key: str) -> Optional[Dict[str, Any]]:
        conn = get_connection()
        try:
            row = conn.execute("SELECT key, value, type FROM settings WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        if not row:
            return None
        return {"key": row["key"], "value": cls._deserialize(row["value"], row["type"]), "type": row["type"]}

    @classmethod
    async def get_value(cls, key: str, default: Any = None) -> Any:
        """Return a setting's value, or ``default`` when unset or empty."""
        setting = await cls.get_setting(key)
        if not setting or setting["value"] in (None, ""):
            return default
        return setting["value"]

    @classmethod
    async def upsert_setting(cls, key: str, value: Any, type_str: str, user_id: Optional[int] = None) -> Dict[str, Any]:
        """Insert or update a setting and return it with its typed value."""
        if type_str not in SUPPORTED_TYPES:
            raise ValueError(f"Unsupported setting type: {type_str}")
        serialized = cls._serialize(value, type_str)
        conn = get_connection()
        try:
            conn.execute(
                "INSERT INTO settings (key, value, type) VALUES (?, ?, ?)"
                " ON CONFLICT(key) DO UPDATE SET value = excluded.value, type = excluded.type",
                (key, serialized, type_str),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("Setting %s updated", key)
        try:
            from league_registry_api.app.services.audit_service import AuditService
            await AuditService.log(user_id=user_id, action="update", object_type="setting", details={"key": key})
        except Exception:
            logger.warning("Audit log failed for setting %s", key)
        return {"key": key, "value": cls._deserialize(serialized, type_str), "type": type_str}

    @classmethod
    async def delete_setting(cls, key: str) -> None:
        conn = get_connection()
        try:
            conn.execute("DELETE FROM settings WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _serialize(value: Any, type_str: str) -> str:
        if type_str == "int":
            return str(int(value))
        if type_str == "float":
            return str(float(value))
        if type_str == "bool":
            return "1" if bool(value) else "0"
        return str(value)

    @staticmethod
    def _deserialize(value: str, type_str: str) -> Any:
        if type_str == "int":
            return int(value)
        if type_str == "float":
            return float(value)
        if type_str == "bool":
            return value not in {"0", "false", "False", ""}
        return value
