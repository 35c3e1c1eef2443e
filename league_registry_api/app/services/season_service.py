"""
Business logic for seasons.

Seasons are plain catalogue rows; registrations reference them and
membership coverage is measured against their ``end_date``.
"""

import logging
import sqlite3
from typing import List

from league_registry_api.app.core.db import get_connection
from league_registry_api.app.core.exceptions import NotFoundError
from league_registry_api.app.schemas.season import SeasonCreate, SeasonRead, SeasonUpdate

logger = logging.getLogger(__name__)


def _to_read(row: sqlite3.Row) -> SeasonRead:
    return SeasonRead(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
    )


class SeasonService:
    """CRUD for seasons."""

    @classmethod
    async def create_season(cls, data: SeasonCreate, current_user: dict) -> SeasonRead:
        logger.info("User %s is creating season '%s'", current_user.get("user_id"), data.name)
        conn = get_connection()
        try:
            cursor = conn.execute(
                "INSERT INTO seasons (name, type, start_date, end_date, is_active) VALUES (?, ?, ?, ?, ?)",
                (data.name, data.type, data.start_date.isoformat(), data.end_date.isoformat(), int(data.is_active)),
            )
            conn.commit()
            season_id = cursor.lastrowid
        finally:
            conn.close()
        try:
            from league_registry_api.app.services.audit_service import AuditService
            await AuditService.log(current_user.get("user_id"), "create", "season", season_id, {"name": data.name})
        except Exception:
            logger.warning("Audit log failed for season %s", season_id)
        return await cls.get_season(season_id)

    @classmethod
    async def get_season(cls, season_id: int) -> SeasonRead:
        conn = get_connection()
        try:
            row = conn.execute("SELECT * FROM seasons WHERE id = ?", (season_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError(f"Season {season_id} not found")
        return _to_read(row)

    @classmethod
    async def list_seasons(cls, active_only: bool = False) -> List[SeasonRead]:
        query = "SELECT * FROM seasons"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY start_date DESC"
        conn = get_connection()
        try:
            rows = conn.execute(query).fetchall()
        finally:
            conn.close()
        return [_to_read(r) for r in rows]

    @classmethod
    async def update_season(cls, season_id: int, data: SeasonUpdate) -> SeasonRead:
        current = await cls.get_season(season_id)
        updates = data.model_dump(exclude_unset=True)
        start = updates.get("start_date", current.start_date)
        end = updates.get("end_date", current.end_date)
        if start >= end:
            raise ValueError("start_date must be before end_date")
        if not updates:
            return current
        columns, params = [], []
        for key, value in updates.items():
            columns.append(f"{key} = ?")
            if key in ("start_date", "end_date"):
                value = value.isoformat()
            elif key == "is_active":
                value = int(value)
            params.append(value)
        conn = get_connection()
        try:
            conn.execute(f"UPDATE seasons SET {', '.join(columns)} WHERE id = ?", (*params, season_id))
            conn.commit()
        finally:
            conn.close()
        return await cls.get_season(season_id)

    @classmethod
    async def delete_season(cls, season_id: int) -> None:
        conn = get_connection()
        try:
            in_use = conn.execute(
                "SELECT COUNT(*) AS c FROM registrations WHERE season_id = ?", (season_id,)
            ).fetchone()["c"]
            if in_use:
                raise ValueError("Season has registrations and cannot be deleted")
            cursor = conn.execute("DELETE FROM seasons WHERE id = ?", (season_id,))
            if cursor.rowcount == 0:
                raise NotFoundError(f"Season {season_id} not found")
            conn.commit()
        finally:
            conn.close()
