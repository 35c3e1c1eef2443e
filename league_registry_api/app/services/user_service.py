"""
Business logic for user accounts.

The first account ever registered becomes the super administrator;
everyone after that is a regular member (role 3).  Admins are promoted
through ``PUT /users/{id}/role``.
"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from league_registry_api.app.core.db import get_connection
from league_registry_api.app.core.exceptions import NotFoundError
from league_registry_api.app.core.security import hash_password, verify_password
from league_registry_api.app.schemas.user import UserCreate, UserRead
from league_registry_api.app.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


def _to_read(row: sqlite3.Row) -> UserRead:
    return UserRead(
        id=row["id"],
        email=row["email"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        role_id=row["role_id"],
        disabled=bool(row["disabled"]),
        has_payment_method=bool(row["stripe_payment_method_id"]) and row["setup_intent_status"] == "succeeded",
    )


class UserService:
    """Account creation, authentication and Stripe customer linkage."""

    @classmethod
    async def create_user(cls, data: UserCreate) -> UserRead:
        logger.info("Registering user %s", data.email)
        conn = get_connection()
        try:
            count = conn.execute("SELECT COUNT(*) AS count FROM users").fetchone()["count"]
            role_id = 1 if count == 0 else 3
            try:
                cursor = conn.execute(
                    "INSERT INTO users (email, first_name, last_name, password, role_id) VALUES (?, ?, ?, ?, ?)",
                    (data.email.strip().lower(), data.first_name, data.last_name, hash_password(data.password), role_id),
                )
            except sqlite3.IntegrityError:
                raise ValueError("An account with this email already exists")
            conn.commit()
            user_id = cursor.lastrowid
        finally:
            conn.close()
        try:
            from league_registry_api.app.services.audit_service import AuditService
            await AuditService.log(user_id=None, action="create", object_type="user", object_id=user_id)
        except Exception:
            logger.warning("Audit log failed for new user %s", user_id)
        return await cls.get_user(user_id)

    @classmethod
    async def authenticate(cls, email: str, password: str) -> Optional[UserRead]:
        conn = get_connection()
        try:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email.strip().lower(),)).fetchone()
        finally:
            conn.close()
        if not row or not row["password"] or row["disabled"]:
            return None
        if not verify_password(password, row["password"]):
            return None
        return _to_read(row)

    @classmethod
    async def get_user(cls, user_id: int) -> UserRead:
        return _to_read(cls.get_user_row(user_id))

    @staticmethod
    def get_user_row(user_id: int, conn: Optional[sqlite3.Connection] = None) -> sqlite3.Row:
        """Fetch the raw ``users`` row; raises ``NotFoundError``."""
        own = conn is None
        conn = conn or get_connection()
        try:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        finally:
            if own:
                conn.close()
        if not row:
            raise NotFoundError(f"User {user_id} not found")
        return row

    @classmethod
    async def list_users(cls, limit: int = 100, offset: int = 0) -> List[UserRead]:
        conn = get_connection()
        try:
            rows = conn.execute("SELECT * FROM users ORDER BY id LIMIT ? OFFSET ?", (limit, offset)).fetchall()
        finally:
            conn.close()
        return [_to_read(r) for r in rows]

    @classmethod
    async def set_role(cls, user_id: int, role_id: int, acting_user_id: Optional[int]) -> UserRead:
        if role_id not in (1, 2, 3):
            raise ValueError("Unknown role")
        conn = get_connection()
        try:
            cursor = conn.execute(
                "UPDATE users SET role_id = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?", (role_id, user_id)
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"User {user_id} not found")
            conn.commit()
        finally:
            conn.close()
        try:
            from league_registry_api.app.services.audit_service import AuditService
            await AuditService.log(acting_user_id, "update", "user", user_id, {"role_id": role_id})
        except Exception:
            logger.warning("Audit log failed for role change of user %s", user_id)
        return await cls.get_user(user_id)

    @classmethod
    def ensure_stripe_customer(cls, user: Dict[str, Any]) -> str:
        """Return the user's Stripe customer id, creating the customer on first use."""
        if user["stripe_customer_id"]:
            return user["stripe_customer_id"]
        name = " ".join(part for part in (user["first_name"], user["last_name"]) if part) or user["email"]
        customer_id = StripeGateway.create_customer(email=user["email"], name=name, user_id=user["id"])
        conn = get_connection()
        try:
            conn.execute(
                "UPDATE users SET stripe_customer_id = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (customer_id, user["id"]),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("Created Stripe customer %s for user %s", customer_id, user["id"])
        return customer_id

    @staticmethod
    def display_name(user: Dict[str, Any]) -> str:
        return " ".join(part for part in (user["first_name"], user["last_name"]) if part) or user["email"]
