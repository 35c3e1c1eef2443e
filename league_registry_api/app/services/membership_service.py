"""
Business logic for membership types and member purchases.

Members buy 1 to 12 months of a membership type.  Twelve months cost
the annual price; shorter terms are charged per month.  A purchase
extends any membership of the same type that is still running, so
back-to-back purchases never overlap.
"""

import calendar
import logging
import math
import sqlite3
from datetime import date
from typing import Any, Dict, List, Optional

from league_registry_api.app.core.db import get_connection, utc_now
from league_registry_api.app.core.exceptions import NotFoundError
from league_registry_api.app.schemas.membership import (
    MembershipCoverage,
    MembershipCreate,
    MembershipRead,
    MembershipUpdate,
    UserMembershipRead,
)
from league_registry_api.app.schemas.payment import CheckoutResponse
from league_registry_api.app.services.payment_completion import (
    USER_MEMBERSHIPS,
    CompletionEvent,
    PaymentCompletionProcessor,
    meta_int,
)
from league_registry_api.app.services.payment_service import PaymentService
from league_registry_api.app.services.stripe_gateway import StripeGateway
from league_registry_api.app.services.user_service import UserService
from league_registry_api.app.services.xero_staging_service import StagingLine, StagingRequest, XeroStagingService

logger = logging.getLogger(__name__)


def add_months(start: date, months: int) -> date:
    """Add calendar months, clamping to the last day of shorter months."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def calculate_price(membership: Dict[str, Any], months: int) -> int:
    if not 1 <= months <= 12:
        raise ValueError("Memberships can be bought for 1 to 12 months")
    if months == 12:
        return membership["price_annual"]
    return membership["price_monthly"] * months


def _to_read(row: sqlite3.Row) -> MembershipRead:
    return MembershipRead(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        price_monthly=row["price_monthly"],
        price_annual=row["price_annual"],
        accounting_code=row["accounting_code"],
        allow_discounts=bool(row["allow_discounts"]),
    )


class MembershipService:
    """Membership catalogue, purchases and season coverage checks."""

    @classmethod
    async def create_membership(cls, data: MembershipCreate) -> MembershipRead:
        conn = get_connection()
        try:
            cursor = conn.execute(
                """
                INSERT INTO memberships (name, description, price_monthly, price_annual, accounting_code,
                    allow_discounts)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    data.name,
                    data.description,
                    data.price_monthly,
                    data.price_annual,
                    data.accounting_code,
                    int(data.allow_discounts),
                ),
            )
            conn.commit()
            membership_id = cursor.lastrowid
        finally:
            conn.close()
        return await cls.get_membership(membership_id)

    @staticmethod
    def get_membership_row(membership_id: int) -> sqlite3.Row:
        conn = get_connection()
        try:
            row = conn.execute("SELECT * FROM memberships WHERE id = ?", (membership_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError(f"Membership {membership_id} not found")
        return row

    @classmethod
    async def get_membership(cls, membership_id: int) -> MembershipRead:
        return _to_read(cls.get_membership_row(membership_id))

    @classmethod
    async def list_memberships(cls) -> List[MembershipRead]:
        conn = get_connection()
        try:
            rows = conn.execute("SELECT * FROM memberships ORDER BY name").fetchall()
        finally:
            conn.close()
        return [_to_read(r) for r in rows]

    @classmethod
    async def update_membership(cls, membership_id: int, data: MembershipUpdate) -> MembershipRead:
        current = cls.get_membership_row(membership_id)
        updates = data.model_dump(exclude_unset=True)
        monthly = updates.get("price_monthly", current["price_monthly"])
        annual = updates.get("price_annual", current["price_annual"])
        if annual > monthly * 12:
            raise ValueError("price_annual cannot exceed 12 months of price_monthly")
        if updates:
            if "allow_discounts" in updates:
                updates["allow_discounts"] = int(updates["allow_discounts"])
            assignments = ", ".join(f"{key} = ?" for key in updates)
            conn = get_connection()
            try:
                conn.execute(f"UPDATE memberships SET {assignments} WHERE id = ?", (*updates.values(), membership_id))
                conn.commit()
            finally:
                conn.close()
        return await cls.get_membership(membership_id)

    @classmethod
    async def delete_membership(cls, membership_id: int) -> None:
        conn = get_connection()
        try:
            sold = conn.execute(
                "SELECT COUNT(*) AS c FROM user_memberships WHERE membership_id = ?", (membership_id,)
            ).fetchone()["c"]
            if sold:
                raise ValueError("Membership has been purchased and cannot be deleted")
            if conn.execute("DELETE FROM memberships WHERE id = ?", (membership_id,)).rowcount == 0:
                raise NotFoundError(f"Membership {membership_id} not found")
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------
    @staticmethod
    def extension_start(user_id: int, membership_id: int) -> date:
        """Start date for a new purchase: the end of a running membership, or today."""
        conn = get_connection()
        try:
            row = conn.execute(
                """
                SELECT MAX(valid_until) AS latest FROM user_memberships
                WHERE user_id = ? AND membership_id = ? AND payment_status = 'paid'
                """,
                (user_id, membership_id),
            ).fetchone()
        finally:
            conn.close()
        today = utc_now().date()
        if row and row["latest"]:
            latest = date.fromisoformat(row["latest"][:10])
            if latest > today:
                return latest
        return today

    @classmethod
    async def create_membership_payment_intent(cls, user_id: int, membership_id: int, months: int) -> CheckoutResponse:
        """Stage the invoice, create the PaymentIntent and a pending payment.

        A membership priced at zero is granted at once without Stripe.
        """
        membership = cls.get_membership_row(membership_id)
        user = UserService.get_user_row(user_id)
        price = calculate_price(membership, months)
        description = f"{membership['name']} - {months} month{'s' if months != 1 else ''}"

        if price == 0:
            return await cls._grant_free(user_id, membership, months, description)

        staging = XeroStagingService.create_immediate_staging(
            StagingRequest(
                user_id=user_id,
                total_amount=price,
                discount_amount=0,
                final_amount=price,
                lines=[StagingLine("membership", price, description, membership["accounting_code"], item_id=membership_id)],
                metadata={"purpose": "membership", "membership_id": membership_id, "months": months},
            )
        )
        customer = UserService.ensure_stripe_customer(user)
        intent = StripeGateway.create_payment_intent(
            amount=price,
            description=description,
            receipt_email=user["email"],
            customer=customer,
            idempotency_key=f"membership-staging-{staging['id']}",
            metadata={
                "purpose": "membership",
                "userId": user_id,
                "membershipId": membership_id,
                "durationMonths": months,
                "xero_staging_record_id": staging["id"],
            },
        )
        payment_id = PaymentService.create_payment(user_id, price, 0, price, intent["id"])
        XeroStagingService.merge_metadata(staging["id"], {"stripe_payment_intent_id": intent["id"]}, payment_id)
        return CheckoutResponse(
            payment_id=payment_id,
            payment_intent_id=intent["id"],
            client_secret=intent["client_secret"],
            staging_id=staging["id"],
            original_amount=price,
            final_amount=price,
        )

    @classmethod
    async def _grant_free(
        cls, user_id: int, membership: sqlite3.Row, months: int, description: str
    ) -> CheckoutResponse:
        staging = XeroStagingService.create_immediate_staging(
            StagingRequest(
                user_id=user_id,
                total_amount=0,
                discount_amount=0,
                final_amount=0,
                lines=[StagingLine("membership", 0, description, membership["accounting_code"], item_id=membership["id"])],
                metadata={"purpose": "membership", "membership_id": membership["id"], "months": months},
            ),
            is_free=True,
        )
        payment_id = PaymentService.create_payment(user_id, 0, 0, 0, status="completed", payment_method="free")
        record = cls.record_membership_purchase(
            {"id": None, "amount": 0, "metadata": {"userId": user_id, "membershipId": membership["id"], "durationMonths": months}},
            payment_id=payment_id,
        )
        await PaymentCompletionProcessor.process(
            CompletionEvent(
                event_type=USER_MEMBERSHIPS,
                user_id=user_id,
                record_id=record["id"],
                payment_id=payment_id,
                amount=0,
                trigger_source="free_membership",
                metadata={"xero_staging_record_id": staging["id"]},
            )
        )
        return CheckoutResponse(
            payment_id=payment_id,
            staging_id=staging["id"],
            original_amount=0,
            final_amount=0,
            is_free=True,
            message="Membership activated",
        )

    @classmethod
    def record_membership_purchase(
        cls, payment_intent: Dict[str, Any], payment_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """Create the ``user_memberships`` row for a successful charge.

        Idempotent per PaymentIntent: Stripe may deliver the same event
        more than once, and the UNIQUE ``stripe_payment_intent_id`` turns
        the second insert into a lookup of the first row.
        """
        metadata = payment_intent.get("metadata") or {}
        user_id = meta_int(metadata, "userId")
        membership_id = meta_int(metadata, "membershipId")
        months = meta_int(metadata, "durationMonths")
        if not user_id or not membership_id or not months:
            raise ValueError("Payment intent metadata is missing membership details")

        valid_from = cls.extension_start(user_id, membership_id)
        valid_until = add_months(valid_from, months)
        conn = get_connection()
        try:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO user_memberships (user_id, membership_id, valid_from, valid_until, months_purchased,
                        payment_status, stripe_payment_intent_id, payment_id, amount_paid)
                    VALUES (?, ?, ?, ?, ?, 'paid', ?, ?, ?)
                    """,
                    (
                        user_id,
                        membership_id,
                        valid_from.isoformat(),
                        valid_until.isoformat(),
                        months,
                        payment_intent.get("id"),
                        payment_id,
                        payment_intent.get("amount") or 0,
                    ),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM user_memberships WHERE id = ?", (cursor.lastrowid,)).fetchone()
                logger.info(
                    "User %s bought membership %s until %s", user_id, membership_id, valid_until.isoformat()
                )
            except sqlite3.IntegrityError:
                row = conn.execute(
                    "SELECT * FROM user_memberships WHERE stripe_payment_intent_id = ?", (payment_intent.get("id"),)
                ).fetchone()
                if row is None:
                    raise
                logger.info("Membership for intent %s already recorded", payment_intent.get("id"))
        finally:
            conn.close()
        return dict(row)

    @classmethod
    async def list_user_memberships(cls, user_id: int) -> List[UserMembershipRead]:
        conn = get_connection()
        try:
            rows = conn.execute(
                """
                SELECT um.*, m.name AS membership_name FROM user_memberships um
                JOIN memberships m ON m.id = um.membership_id
                WHERE um.user_id = ? ORDER BY um.valid_until DESC
                """,
                (user_id,),
            ).fetchall()
        finally:
            conn.close()
        return [UserMembershipRead(**{k: r[k] for k in UserMembershipRead.model_fields}) for r in rows]

    # ------------------------------------------------------------------
    # Coverage
    # ------------------------------------------------------------------
    @staticmethod
    def validate_membership_coverage(required_membership_id: int, user_id: int, season_end: date) -> MembershipCoverage:
        """Check that a paid membership of the required type lasts until ``season_end``."""
        conn = get_connection()
        try:
            row = conn.execute(
                """
                SELECT m.name, MAX(um.valid_until) AS valid_until
                FROM user_memberships um JOIN memberships m ON m.id = um.membership_id
                WHERE um.user_id = ? AND um.membership_id = ? AND um.payment_status = 'paid'
                GROUP BY m.name
                """,
                (user_id, required_membership_id),
            ).fetchone()
        finally:
            conn.close()

        if row is None:
            return MembershipCoverage(
                is_valid=False,
                season_end_date=season_end,
                message="You need a membership to register for this category.",
            )
        valid_until = date.fromisoformat(row["valid_until"][:10])
        if valid_until >= season_end:
            return MembershipCoverage(is_valid=True, membership_name=row["name"], valid_until=valid_until)

        days_short = (season_end - valid_until).days
        months_needed = math.ceil(days_short / 30)
        return MembershipCoverage(
            is_valid=False,
            membership_name=row["name"],
            valid_until=valid_until,
            season_end_date=season_end,
            months_needed=months_needed,
            days_short=days_short,
            message=(
                f"Your {row['name']} expires {days_short} day{'s' if days_short != 1 else ''} before the season ends. "
                f"Extend it by at least {months_needed} month{'s' if months_needed != 1 else ''} to cover the full season."
            ),
        )
