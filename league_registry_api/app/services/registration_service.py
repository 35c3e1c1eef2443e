"""
Business logic for registrations and their categories.

A registration is visible to members only once ``is_active`` is set.
After that, its timing columns decide whether it can be bought right
now:

* ``draft``: not active yet;
* ``past``: an event or scrimmage whose ``end_date`` has gone by;
* ``expired``: ``registration_end_at`` has passed;
* ``coming_soon``: before presale (or regular) start;
* ``presale``: between presale and regular start, code required;
* ``open``: everything else.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from league_registry_api.app.core.db import get_connection, timestamp, utc_now
from league_registry_api.app.core.exceptions import NotFoundError
from league_registry_api.app.schemas.registration import (
    CategoryCreate,
    CategoryRead,
    CategoryUpdate,
    RegistrationCreate,
    RegistrationRead,
    RegistrationUpdate,
    UserRegistrationRead,
)

logger = logging.getLogger(__name__)

_TIMESTAMP_FIELDS = (
    "presale_start_at",
    "regular_start_at",
    "registration_end_at",
    "start_date",
    "end_date",
)
_BOOL_FIELDS = ("is_active", "allow_alternates")


def _parse(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _storable(key: str, value: Any) -> Any:
    if key in _TIMESTAMP_FIELDS and value is not None:
        return timestamp(value)
    if key in _BOOL_FIELDS:
        return int(value)
    return value


def get_registration_status(registration: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """Return the status of a registration row at ``now`` (default: current UTC time)."""
    now = now or utc_now()
    if not registration["is_active"]:
        return "draft"

    end_date = _parse(registration["end_date"])
    if registration["type"] in ("event", "scrimmage") and end_date and now > end_date:
        return "past"

    closes = _parse(registration["registration_end_at"])
    if closes and now > closes:
        return "expired"

    presale = _parse(registration["presale_start_at"])
    regular = _parse(registration["regular_start_at"])
    if presale:
        if now < presale:
            return "coming_soon"
        if regular and now < regular:
            return "presale"
    if regular and now < regular:
        return "coming_soon"
    return "open"


def is_registration_available(
    registration: Dict[str, Any], presale_code: Optional[str] = None, now: Optional[datetime] = None
) -> bool:
    """True when a member may check out right now.

    During presale the supplied code must match the registration's
    ``presale_code`` (case-insensitive).
    """
    status = get_registration_status(registration, now)
    if status == "open":
        return True
    if status == "presale":
        expected = registration["presale_code"]
        return bool(expected and presale_code and presale_code.strip().lower() == expected.strip().lower())
    return False


def category_registration_count(category_id: int, conn: Optional[sqlite3.Connection] = None) -> int:
    """Paid registrations plus holds that have not expired yet."""
    own = conn is None
    conn = conn or get_connection()
    try:
        return conn.execute(
            """
            SELECT COUNT(*) AS c FROM user_registrations
            WHERE registration_category_id = ?
              AND (payment_status = 'paid'
                   OR (payment_status = 'processing' AND processing_expires_at > ?))
            """,
            (category_id, timestamp()),
        ).fetchone()["c"]
    finally:
        if own:
            conn.close()


class RegistrationService:
    """CRUD for registrations and categories plus member-facing lookups."""

    @classmethod
    async def create_registration(cls, data: RegistrationCreate, current_user: dict) -> RegistrationRead:
        logger.info("User %s is creating registration '%s'", current_user.get("user_id"), data.name)
        fields = data.model_dump(exclude={"categories"})
        conn = get_connection()
        try:
            if not conn.execute("SELECT 1 FROM seasons WHERE id = ?", (data.season_id,)).fetchone():
                raise NotFoundError(f"Season {data.season_id} not found")
            columns = list(fields)
            cursor = conn.execute(
                f"INSERT INTO registrations ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
                tuple(_storable(k, fields[k]) for k in columns),
            )
            registration_id = cursor.lastrowid
            for category in data.categories:
                cls._insert_category(conn, registration_id, category)
            conn.commit()
        finally:
            conn.close()
        try:
            from league_registry_api.app.services.audit_service import AuditService
            await AuditService.log(
                current_user.get("user_id"), "create", "registration", registration_id, {"name": data.name}
            )
        except Exception:
            logger.warning("Audit log failed for registration %s", registration_id)
        return await cls.get_registration(registration_id)

    @staticmethod
    def _insert_category(conn: sqlite3.Connection, registration_id: int, data: CategoryCreate) -> int:
        cursor = conn.execute(
            """
            INSERT INTO registration_categories (registration_id, name, price, max_capacity, accounting_code,
                required_membership_id, sort_order)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                registration_id,
                data.name,
                data.price,
                data.max_capacity,
                data.accounting_code,
                data.required_membership_id,
                data.sort_order,
            ),
        )
        return cursor.lastrowid

    @staticmethod
    def get_registration_row(registration_id: int) -> sqlite3.Row:
        conn = get_connection()
        try:
            row = conn.execute("SELECT * FROM registrations WHERE id = ?", (registration_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError(f"Registration {registration_id} not found")
        return row

    @staticmethod
    def get_category_row(category_id: int, registration_id: Optional[int] = None) -> sqlite3.Row:
        conn = get_connection()
        try:
            row = conn.execute("SELECT * FROM registration_categories WHERE id = ?", (category_id,)).fetchone()
        finally:
            conn.close()
        if not row or (registration_id is not None and row["registration_id"] != registration_id):
            raise NotFoundError(f"Category {category_id} not found")
        return row

    @classmethod
    async def get_registration(cls, registration_id: int) -> RegistrationRead:
        row = cls.get_registration_row(registration_id)
        conn = get_connection()
        try:
            categories = conn.execute(
                "SELECT * FROM registration_categories WHERE registration_id = ? ORDER BY sort_order, id",
                (registration_id,),
            ).fetchall()
            category_models = [cls._category_read(conn, c) for c in categories]
        finally:
            conn.close()
        return cls._to_read(row, category_models)

    @classmethod
    async def list_registrations(
        cls, season_id: Optional[int] = None, include_drafts: bool = False
    ) -> List[RegistrationRead]:
        query = "SELECT id FROM registrations WHERE 1 = 1"
        params: List[Any] = []
        if season_id is not None:
            query += " AND season_id = ?"
            params.append(season_id)
        if not include_drafts:
            query += " AND is_active = 1"
        query += " ORDER BY created_at DESC, id DESC"
        conn = get_connection()
        try:
            ids = [r["id"] for r in conn.execute(query, tuple(params)).fetchall()]
        finally:
            conn.close()
        return [await cls.get_registration(i) for i in ids]

    @classmethod
    async def update_registration(cls, registration_id: int, data: RegistrationUpdate) -> RegistrationRead:
        cls.get_registration_row(registration_id)
        updates = data.model_dump(exclude_unset=True)
        if updates:
            assignments = ", ".join(f"{key} = ?" for key in updates)
            conn = get_connection()
            try:
                conn.execute(
                    f"UPDATE registrations SET {assignments} WHERE id = ?",
                    (*(_storable(k, v) for k, v in updates.items()), registration_id),
                )
                conn.commit()
            finally:
                conn.close()
        return await cls.get_registration(registration_id)

    @classmethod
    async def delete_registration(cls, registration_id: int) -> None:
        conn = get_connection()
        try:
            sold = conn.execute(
                "SELECT COUNT(*) AS c FROM user_registrations WHERE registration_id = ?", (registration_id,)
            ).fetchone()["c"]
            if sold:
                raise ValueError("Registration has sign-ups; deactivate it instead")
            cursor = conn.execute("DELETE FROM registrations WHERE id = ?", (registration_id,))
            if cursor.rowcount == 0:
                raise NotFoundError(f"Registration {registration_id} not found")
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------
    @classmethod
    async def add_category(cls, registration_id: int, data: CategoryCreate) -> CategoryRead:
        cls.get_registration_row(registration_id)
        conn = get_connection()
        try:
            category_id = cls._insert_category(conn, registration_id, data)
            conn.commit()
            return cls._category_read(conn, cls.get_category_row(category_id))
        finally:
            conn.close()

    @classmethod
    async def update_category(cls, registration_id: int, category_id: int, data: CategoryUpdate) -> CategoryRead:
        cls.get_category_row(category_id, registration_id)
        updates = data.model_dump(exclude_unset=True)
        conn = get_connection()
        try:
            if updates:
                assignments = ", ".join(f"{key} = ?" for key in updates)
                conn.execute(
                    f"UPDATE registration_categories SET {assignments} WHERE id = ?", (*updates.values(), category_id)
                )
                conn.commit()
            return cls._category_read(conn, cls.get_category_row(category_id))
        finally:
            conn.close()

    @classmethod
    async def delete_category(cls, registration_id: int, category_id: int) -> None:
        cls.get_category_row(category_id, registration_id)
        conn = get_connection()
        try:
            if category_registration_count(category_id, conn):
                raise ValueError("Category has registrations and cannot be deleted")
            conn.execute("DELETE FROM registration_categories WHERE id = ?", (category_id,))
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Member views
    # ------------------------------------------------------------------
    @classmethod
    async def list_user_registrations(cls, user_id: int) -> List[UserRegistrationRead]:
        conn = get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM user_registrations WHERE user_id = ? AND payment_status != 'processing' "
                "ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        finally:
            conn.close()
        return [UserRegistrationRead(**{k: r[k] for k in UserRegistrationRead.model_fields}) for r in rows]

    @staticmethod
    def _category_read(conn: sqlite3.Connection, row: sqlite3.Row) -> CategoryRead:
        count = category_registration_count(row["id"], conn)
        return CategoryRead(
            id=row["id"],
            registration_id=row["registration_id"],
            name=row["name"],
            price=row["price"],
            max_capacity=row["max_capacity"],
            accounting_code=row["accounting_code"],
            required_membership_id=row["required_membership_id"],
            sort_order=row["sort_order"],
            current_count=count,
            is_full=row["max_capacity"] is not None and count >= row["max_capacity"],
        )

    @staticmethod
    def _to_read(row: sqlite3.Row, categories: List[CategoryRead]) -> RegistrationRead:
        return RegistrationRead(
            id=row["id"],
            season_id=row["season_id"],
            name=row["name"],
            type=row["type"],
            is_active=bool(row["is_active"]),
            presale_start_at=row["presale_start_at"],
            regular_start_at=row["regular_start_at"],
            registration_end_at=row["registration_end_at"],
            presale_code=row["presale_code"],
            start_date=row["start_date"],
            end_date=row["end_date"],
            allow_alternates=bool(row["allow_alternates"]),
            alternate_price=row["alternate_price"],
            alternate_accounting_code=row["alternate_accounting_code"],
            status=get_registration_status(row),
            categories=categories,
        )
