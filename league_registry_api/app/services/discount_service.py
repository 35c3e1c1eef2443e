"""
Discount categories, codes and the per-season savings cap.

A code belongs to a category.  The category carries the accounting
code that the negative discount line is booked against and, optionally,
``max_discount_per_user_per_season``: the most a single member may
save across all codes of that category within one season.  Savings are
tracked in ``discount_usage``.
"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from league_registry_api.app.core.db import get_connection, timestamp
from league_registry_api.app.core.exceptions import NotFoundError
from league_registry_api.app.schemas.discount import (
    DiscountCategoryCreate,
    DiscountCategoryRead,
    DiscountCodeCreate,
    DiscountCodeRead,
    DiscountCodeUpdate,
    DiscountValidationResult,
    SeasonalLimitResult,
)

logger = logging.getLogger(__name__)


def percent_of(amount: int, percentage: int) -> int:
    """``amount * percentage / 100`` rounded half up, in whole cents."""
    return (amount * percentage + 50) // 100


def format_cents(amount: int) -> str:
    return f"${amount / 100:,.2f}"


def _code_to_read(row: sqlite3.Row) -> DiscountCodeRead:
    return DiscountCodeRead(
        id=row["id"],
        discount_category_id=row["discount_category_id"],
        code=row["code"],
        percentage=row["percentage"],
        is_active=bool(row["is_active"]),
        valid_from=row["valid_from"],
        valid_until=row["valid_until"],
        usage_limit=row["usage_limit"],
        category_name=row["category_name"],
        category_accounting_code=row["category_accounting_code"],
    )


_CODE_SELECT = """
    SELECT dc.*, cat.name AS category_name, cat.accounting_code AS category_accounting_code,
           cat.max_discount_per_user_per_season, cat.is_active AS category_active
    FROM discount_codes dc
    JOIN discount_categories cat ON cat.id = dc.discount_category_id
"""


class DiscountService:
    """Manage discount codes and work out how much a member may save."""

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------
    @classmethod
    async def create_category(cls, data: DiscountCategoryCreate) -> DiscountCategoryRead:
        conn = get_connection()
        try:
            cursor = conn.execute(
                "INSERT INTO discount_categories (name, accounting_code, max_discount_per_user_per_season, is_active) "
                "VALUES (?, ?, ?, ?)",
                (data.name, data.accounting_code, data.max_discount_per_user_per_season, int(data.is_active)),
            )
            conn.commit()
            category_id = cursor.lastrowid
        finally:
            conn.close()
        return DiscountCategoryRead(id=category_id, **data.model_dump())

    @classmethod
    async def list_categories(cls) -> List[DiscountCategoryRead]:
        conn = get_connection()
        try:
            rows = conn.execute("SELECT * FROM discount_categories ORDER BY name").fetchall()
        finally:
            conn.close()
        return [
            DiscountCategoryRead(
                id=r["id"],
                name=r["name"],
                accounting_code=r["accounting_code"],
                max_discount_per_user_per_season=r["max_discount_per_user_per_season"],
                is_active=bool(r["is_active"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Codes
    # ------------------------------------------------------------------
    @classmethod
    async def create_code(cls, data: DiscountCodeCreate) -> DiscountCodeRead:
        conn = get_connection()
        try:
            if not conn.execute(
                "SELECT 1 FROM discount_categories WHERE id = ?", (data.discount_category_id,)
            ).fetchone():
                raise NotFoundError(f"Discount category {data.discount_category_id} not found")
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO discount_codes (discount_category_id, code, percentage, is_active, valid_from,
                        valid_until, usage_limit)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        data.discount_category_id,
                        data.code.strip().upper(),
                        data.percentage,
                        int(data.is_active),
                        timestamp(data.valid_from) if data.valid_from else None,
                        timestamp(data.valid_until) if data.valid_until else None,
                        data.usage_limit,
                    ),
                )
            except sqlite3.IntegrityError:
                raise ValueError(f"Discount code '{data.code}' already exists")
            conn.commit()
            code_id = cursor.lastrowid
        finally:
            conn.close()
        return await cls.get_code(code_id)

    @classmethod
    async def get_code(cls, code_id: int) -> DiscountCodeRead:
        row = cls.get_code_row(code_id)
        return _code_to_read(row)

    @staticmethod
    def get_code_row(code_id: int) -> sqlite3.Row:
        conn = get_connection()
        try:
            row = conn.execute(_CODE_SELECT + " WHERE dc.id = ?", (code_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError(f"Discount code {code_id} not found")
        return row

    @staticmethod
    def find_code(code: str) -> Optional[sqlite3.Row]:
        conn = get_connection()
        try:
            return conn.execute(_CODE_SELECT + " WHERE dc.code = ?", (code.strip(),)).fetchone()
        finally:
            conn.close()

    @classmethod
    async def list_codes(cls, category_id: Optional[int] = None) -> List[DiscountCodeRead]:
        query = _CODE_SELECT
        params: tuple = ()
        if category_id is not None:
            query += " WHERE dc.discount_category_id = ?"
            params = (category_id,)
        query += " ORDER BY dc.code"
        conn = get_connection()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [_code_to_read(r) for r in rows]

    @classmethod
    async def update_code(cls, code_id: int, data: DiscountCodeUpdate) -> DiscountCodeRead:
        cls.get_code_row(code_id)
        updates = data.model_dump(exclude_unset=True)
        if not updates:
            return await cls.get_code(code_id)
        columns, params = [], []
        for key, value in updates.items():
            if key in ("valid_from", "valid_until") and value is not None:
                value = timestamp(value)
            elif key == "is_active":
                value = int(value)
            columns.append(f"{key} = ?")
            params.append(value)
        conn = get_connection()
        try:
            conn.execute(f"UPDATE discount_codes SET {', '.join(columns)} WHERE id = ?", (*params, code_id))
            conn.commit()
        finally:
            conn.close()
        return await cls.get_code(code_id)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    @staticmethod
    def season_for_registration(registration_id: int) -> int:
        conn = get_connection()
        try:
            row = conn.execute("SELECT season_id FROM registrations WHERE id = ?", (registration_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError(f"Registration {registration_id} not found")
        return row["season_id"]

    @classmethod
    async def validate_code(cls, code: str, user_id: int, season_id: int, amount: int) -> DiscountValidationResult:
        """Check a code for a member and work out the discount on ``amount``.

        Returns an invalid result (``is_valid=False`` with a message)
        rather than raising, so the checkout page can show the reason.
        """
        row = cls.find_code(code) if code else None
        if row is None:
            return DiscountValidationResult(is_valid=False, final_amount=amount, message="Invalid discount code")
        if not row["is_active"] or not row["category_active"]:
            return DiscountValidationResult(
                is_valid=False, final_amount=amount, message="This discount code is no longer active"
            )
        now = timestamp()
        if row["valid_from"] and row["valid_from"] > now:
            return DiscountValidationResult(is_valid=False, final_amount=amount, message="This discount code is not yet valid")
        if row["valid_until"] and row["valid_until"] < now:
            return DiscountValidationResult(is_valid=False, final_amount=amount, message="This discount code has expired")
        if row["usage_limit"]:
            used = cls._times_used(user_id, row["id"])
            if used >= row["usage_limit"]:
                return DiscountValidationResult(
                    is_valid=False, final_amount=amount, message="You have already used this discount code"
                )

        requested = percent_of(amount, row["percentage"])
        limit = await cls.check_seasonal_discount_limit(user_id, row, season_id, requested)
        return DiscountValidationResult(
            is_valid=True,
            discount_code_id=row["id"],
            discount_category_id=row["discount_category_id"],
            percentage=row["percentage"],
            discount_amount=limit.final_amount,
            final_amount=amount - limit.final_amount,
            is_partial_discount=limit.is_partial_discount,
            message=limit.message,
        )

    @classmethod
    async def check_seasonal_discount_limit(
        cls, user_id: int, code: Dict[str, Any], season_id: int, requested: int
    ) -> SeasonalLimitResult:
        """Cap ``requested`` by what is left of the category's seasonal allowance.

        ``final_amount`` in the result is the discount that may be
        applied, not the price.
        """
        cap = code["max_discount_per_user_per_season"]
        if cap is None or cap <= 0:
            return SeasonalLimitResult(final_amount=requested)

        conn = get_connection()
        try:
            used = conn.execute(
                """
                SELECT COALESCE(SUM(amount_saved), 0) AS used FROM discount_usage
                WHERE user_id = ? AND discount_category_id = ? AND season_id = ?
                """,
                (user_id, code["discount_category_id"], season_id),
            ).fetchone()["used"]
        finally:
            conn.close()

        if used >= cap:
            return SeasonalLimitResult(
                final_amount=0,
                seasonal_usage=used,
                season_cap=cap,
                message=f"You have reached the season limit of {format_cents(cap)} for this discount",
            )
        if used + requested > cap:
            allowed = cap - used
            return SeasonalLimitResult(
                final_amount=allowed,
                is_partial_discount=True,
                seasonal_usage=used,
                season_cap=cap,
                message=f"Discount reduced to {format_cents(allowed)} to stay within the season limit of {format_cents(cap)}",
            )
        return SeasonalLimitResult(final_amount=requested, seasonal_usage=used, season_cap=cap)

    @classmethod
    async def record_usage(
        cls,
        user_id: int,
        discount_code_id: int,
        season_id: int,
        amount_saved: int,
        registration_id: Optional[int] = None,
        once_per_registration: bool = True,
    ) -> bool:
        """Record savings once per (user, code, registration); returns False on repeats.

        Alternate games are charged repeatedly within one registration, so
        they pass ``once_per_registration=False``.
        """
        if amount_saved <= 0:
            return False
        conn = get_connection()
        try:
            existing = once_per_registration and conn.execute(
                "SELECT 1 FROM discount_usage WHERE user_id = ? AND discount_code_id = ? AND registration_id IS ?",
                (user_id, discount_code_id, registration_id),
            ).fetchone()
            if existing:
                logger.debug("Discount usage for user %s code %s already recorded", user_id, discount_code_id)
                return False
            category = conn.execute(
                "SELECT discount_category_id FROM discount_codes WHERE id = ?", (discount_code_id,)
            ).fetchone()
            if not category:
                raise NotFoundError(f"Discount code {discount_code_id} not found")
            conn.execute(
                """
                INSERT INTO discount_usage (user_id, discount_code_id, discount_category_id, season_id,
                    amount_saved, registration_id)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (user_id, discount_code_id, category["discount_category_id"], season_id, amount_saved, registration_id),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("Recorded discount usage: user %s saved %s with code %s", user_id, amount_saved, discount_code_id)
        return True

    @staticmethod
    def _times_used(user_id: int, discount_code_id: int) -> int:
        conn = get_connection()
        try:
            return conn.execute(
                "SELECT COUNT(*) AS c FROM discount_usage WHERE user_id = ? AND discount_code_id = ?",
                (user_id, discount_code_id),
            ).fetchone()["c"]
        finally:
            conn.close()
