"""
Audit trail for administrative actions and pipeline alerts.

Rows in ``audit_logs`` record who did what to which object.  Besides
plain CRUD events the payment pipeline writes ``critical_alert`` rows
(see ``core.alerts``) that operators review when Stripe and the
accounting staging disagree.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from league_registry_api.app.core.db import from_json, get_connection, to_json


class AuditService:
    """Write and query ``audit_logs``."""

    @classmethod
    async def log(
        cls,
        user_id: Optional[int],
        action: str,
        object_type: str,
        object_id: Optional[int] = None,
        details: Optional[dict] = None,
    ) -> None:
        """Insert a new audit record.

        Parameters
        ----------
        user_id : Optional[int]
            ID of the acting user; ``None`` for webhook and cron work.
        action : str
            ``create``, ``update``, ``delete``, ``charge``, ``critical_alert`` ...
        object_type : str
            Type of object affected (``registration``, ``payment``, ``xero_invoice`` ...).
        object_id : Optional[int]
            Primary key of the affected object, if applicable.
        details : Optional[dict]
            Additional structured data, stored as JSON.
        """
        conn = get_connection()
        try:
            conn.execute(
                """
                INSERT INTO audit_logs (user_id, action, object_type, object_id, details)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, action, object_type, object_id, to_json(details) if details else None),
            )
            conn.commit()
        finally:
            conn.close()

    @classmethod
    async def list_logs(
        cls,
        user_id: Optional[int] = None,
        object_type: Optional[str] = None,
        action: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Retrieve audit records, newest first, with optional filters."""
        where_clauses: List[str] = []
        params: List[Any] = []
        for column, value in (("user_id", user_id), ("object_type", object_type), ("action", action)):
            if value is not None:
                where_clauses.append(f"{column} = ?")
                params.append(value)
        if start_date:
            where_clauses.append("timestamp >= ?")
            params.append(start_date)
        if end_date:
            where_clauses.append("timestamp <= ?")
            params.append(end_date)
        query = "SELECT id, user_id, action, object_type, object_id, timestamp, details FROM audit_logs"
        if where_clauses:
            query += " WHERE " + " AND ".join(where_clauses)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        conn = get_connection()
        try:
            rows = conn.execute(query, tuple(params)).fetchall()
        finally:
            conn.close()
        return [
            {
                "id": row["id"],
                "user_id": row["user_id"],
                "action": row["action"],
                "object_type": row["object_type"],
                "object_id": row["object_id"],
                "timestamp": row["timestamp"],
                "details": from_json(row["details"]) or None,
            }
            for row in rows
        ]
