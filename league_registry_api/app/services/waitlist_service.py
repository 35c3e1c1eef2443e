"""
Waitlists for full registration categories.

Members join with a saved card.  When a spot opens an admin selects
an entry and the member is charged off-session; the selection then
goes through the same accounting and email steps as a checkout.
"""

import logging
import sqlite3
from typing import List, Optional

from league_registry_api.app.core.alerts import report_critical
from league_registry_api.app.core.db import get_connection, timestamp
from league_registry_api.app.core.exceptions import ConflictError, NotFoundError, PaymentProviderError
from league_registry_api.app.schemas.waitlist import ChargeResult, WaitlistEntryRead, WaitlistJoin
from league_registry_api.app.services import email_service
from league_registry_api.app.services.checkout_service import registration_lines
from league_registry_api.app.services.discount_service import DiscountService, format_cents, percent_of
from league_registry_api.app.services.email_service import EmailService
from league_registry_api.app.services.payment_completion import (
    WAITLIST_SELECTIONS,
    CompletionEvent,
    PaymentCompletionProcessor,
)
from league_registry_api.app.services.payment_method_service import PaymentMethodService, has_valid_payment_method
from league_registry_api.app.services.payment_service import PaymentService
from league_registry_api.app.services.registration_service import RegistrationService, category_registration_count
from league_registry_api.app.services.user_service import UserService
from league_registry_api.app.services.xero_staging_service import StagingRequest, XeroStagingService

logger = logging.getLogger(__name__)


def _to_read(row: sqlite3.Row) -> WaitlistEntryRead:
    return WaitlistEntryRead(**dict(row))


class WaitlistService:
    """Join, leave and select from category waitlists."""

    @classmethod
    async def join(cls, user_id: int, data: WaitlistJoin) -> WaitlistEntryRead:
        registration = RegistrationService.get_registration_row(data.registration_id)
        category = RegistrationService.get_category_row(data.category_id, data.registration_id)
        user = UserService.get_user_row(user_id)
        if not has_valid_payment_method(user):
            raise ValueError("A saved payment method is required to join the waitlist")
        if category["max_capacity"] is None:
            raise ValueError("This category has no capacity limit")
        if category_registration_count(category["id"]) < category["max_capacity"]:
            raise ValueError("This category still has spots available")

        discount_code_id = None
        if data.discount_code:
            validation = await DiscountService.validate_code(
                data.discount_code, user_id, registration["season_id"], category["price"]
            )
            if not validation.is_valid:
                raise ValueError(validation.message)
            discount_code_id = validation.discount_code_id

        conn = get_connection()
        try:
            registered = conn.execute(
                "SELECT id FROM user_registrations WHERE user_id = ? AND registration_id = ? AND payment_status = 'paid'",
                (user_id, registration["id"]),
            ).fetchone()
            if registered:
                raise ConflictError("You are already registered for this registration")
            existing = conn.execute(
                "SELECT * FROM waitlists WHERE user_id = ? AND registration_id = ? AND registration_category_id = ?",
                (user_id, registration["id"], category["id"]),
            ).fetchone()
            if existing and existing["removed_at"] is None:
                raise ConflictError("You are already on the waitlist for this category")
            position = conn.execute(
                "SELECT COALESCE(MAX(position), 0) + 1 AS next FROM waitlists "
                "WHERE registration_category_id = ? AND removed_at IS NULL",
                (category["id"],),
            ).fetchone()["next"]
            if existing:
                # A member who left earlier rejoins at the back of the queue.
                conn.execute(
                    "UPDATE waitlists SET position = ?, discount_code_id = ?, removed_at = NULL, created_at = ? "
                    "WHERE id = ?",
                    (position, discount_code_id, timestamp(), existing["id"]),
                )
                entry_id = existing["id"]
            else:
                cursor = conn.execute(
                    """
                    INSERT INTO waitlists (user_id, registration_id, registration_category_id, position, discount_code_id)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (user_id, registration["id"], category["id"], position, discount_code_id),
                )
                entry_id = cursor.lastrowid
            conn.commit()
            row = conn.execute("SELECT * FROM waitlists WHERE id = ?", (entry_id,)).fetchone()
        finally:
            conn.close()

        EmailService.stage_for_user(
            user_id,
            email_service.WAITLIST_ADDED,
            {"registrationName": registration["name"], "categoryName": category["name"], "position": position},
        )
        logger.info("User %s joined waitlist for category %s at position %s", user_id, category["id"], position)
        return _to_read(row)

    @staticmethod
    def get_entry_row(entry_id: int) -> sqlite3.Row:
        conn = get_connection()
        try:
            row = conn.execute("SELECT * FROM waitlists WHERE id = ?", (entry_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError(f"Waitlist entry {entry_id} not found")
        return row

    @classmethod
    async def list_waitlist(cls, category_id: int) -> List[WaitlistEntryRead]:
        conn = get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM waitlists WHERE registration_category_id = ? AND removed_at IS NULL "
                "ORDER BY position, id",
                (category_id,),
            ).fetchall()
        finally:
            conn.close()
        return [_to_read(r) for r in rows]

    @classmethod
    async def list_user_entries(cls, user_id: int) -> List[WaitlistEntryRead]:
        conn = get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM waitlists WHERE user_id = ? AND removed_at IS NULL ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        finally:
            conn.close()
        return [_to_read(r) for r in rows]

    @classmethod
    async def leave(cls, user_id: int, entry_id: int, is_admin: bool = False) -> None:
        entry = cls.get_entry_row(entry_id)
        if entry["user_id"] != user_id and not is_admin:
            raise NotFoundError(f"Waitlist entry {entry_id} not found")
        if entry["removed_at"] is not None:
            return
        conn = get_connection()
        try:
            conn.execute("UPDATE waitlists SET removed_at = ? WHERE id = ?", (timestamp(), entry_id))
            conn.commit()
        finally:
            conn.close()
        logger.info("Waitlist entry %s removed", entry_id)

    @classmethod
    async def get_position(cls, entry_id: int) -> int:
        """1-based place in the queue among entries still waiting."""
        entry = cls.get_entry_row(entry_id)
        if entry["removed_at"] is not None:
            raise ValueError("This waitlist entry is no longer active")
        conn = get_connection()
        try:
            ahead = conn.execute(
                "SELECT COUNT(*) AS c FROM waitlists WHERE registration_category_id = ? AND removed_at IS NULL "
                "AND (position < ? OR (position = ? AND id < ?))",
                (entry["registration_category_id"], entry["position"], entry["position"], entry["id"]),
            ).fetchone()["c"]
        finally:
            conn.close()
        return ahead + 1

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------
    @classmethod
    async def select_from_waitlist(
        cls, entry_id: int, override_price: Optional[int] = None, selected_by: Optional[int] = None
    ) -> ChargeResult:
        """Charge a waiting member and register them in the category.

        Unlike a checkout there is no reservation: the admin decides
        the category may go over capacity.
        """
        entry = cls.get_entry_row(entry_id)
        if entry["removed_at"] is not None:
            raise ValueError("This waitlist entry is no longer active")
        registration = RegistrationService.get_registration_row(entry["registration_id"])
        category = RegistrationService.get_category_row(entry["registration_category_id"])
        user = UserService.get_user_row(entry["user_id"])

        base_price = category["price"]
        if override_price is not None:
            if override_price < 0 or override_price > base_price:
                raise ValueError(f"Override price must be between 0 and {base_price} cents")
            base_price = override_price

        conn = get_connection()
        try:
            registered = conn.execute(
                "SELECT id FROM user_registrations WHERE user_id = ? AND registration_id = ? AND payment_status = 'paid'",
                (user["id"], registration["id"]),
            ).fetchone()
        finally:
            conn.close()
        if registered:
            raise ConflictError("This member is already registered for this registration")

        discount_amount = 0
        code = None
        if entry["discount_code_id"] and base_price > 0:
            code = DiscountService.get_code_row(entry["discount_code_id"])
            requested = percent_of(base_price, code["percentage"])
            limit = await DiscountService.check_seasonal_discount_limit(
                user["id"], code, registration["season_id"], requested
            )
            discount_amount = limit.final_amount
        final_amount = base_price - discount_amount

        description = f"{registration['name']} - {category['name']} (waitlist)"
        staging = XeroStagingService.create_immediate_staging(
            StagingRequest(
                user_id=user["id"],
                total_amount=base_price,
                discount_amount=discount_amount,
                final_amount=final_amount,
                lines=registration_lines(description, category, base_price, discount_amount, code),
                metadata={
                    "purpose": "waitlist_selection",
                    "waitlist_id": entry_id,
                    "registration_id": registration["id"],
                    "category_id": category["id"],
                    "selected_by": selected_by,
                },
            ),
            is_free=final_amount == 0,
        )

        intent_id = None
        if final_amount > 0:
            try:
                intent = PaymentMethodService.charge_saved_card(
                    user,
                    final_amount,
                    description,
                    metadata={
                        "purpose": "waitlist_selection",
                        "userId": user["id"],
                        "registrationId": registration["id"],
                        "categoryId": category["id"],
                        "waitlistId": entry_id,
                        "xero_staging_record_id": staging["id"],
                    },
                    idempotency_key=f"waitlist-{entry_id}-staging-{staging['id']}",
                )
            except PaymentProviderError as e:
                XeroStagingService.set_status(staging["id"], "abandoned", f"Charge failed: {e}")
                EmailService.stage_for_user(
                    user["id"],
                    email_service.PAYMENT_FAILED,
                    {"amount": format_cents(final_amount), "failureReason": str(e)},
                )
                raise
            intent_id = intent["id"]

        try:
            payment_id = PaymentService.create_payment(
                user["id"],
                base_price,
                discount_amount,
                final_amount,
                intent_id,
                status="completed",
                payment_method="stripe" if intent_id else "free",
            )
            XeroStagingService.merge_metadata(staging["id"], {"stripe_payment_intent_id": intent_id}, payment_id)

            user_registration_id = cls._insert_paid_registration(
                user["id"], registration["id"], category["id"], base_price, final_amount, payment_id, intent_id
            )
            conn = get_connection()
            try:
                conn.execute("UPDATE waitlists SET removed_at = ? WHERE id = ?", (timestamp(), entry_id))
                conn.commit()
            finally:
                conn.close()

            await PaymentCompletionProcessor.process(
                CompletionEvent(
                    event_type=WAITLIST_SELECTIONS,
                    user_id=user["id"],
                    record_id=user_registration_id,
                    payment_id=payment_id,
                    amount=final_amount,
                    trigger_source="waitlist_selection",
                    metadata={
                        "xero_staging_record_id": staging["id"],
                        "stripe_payment_intent_id": intent_id,
                        "registrationId": registration["id"],
                        "seasonId": registration["season_id"],
                        "discountCodeId": code["id"] if code else None,
                        "discountAmount": discount_amount,
                    },
                )
            )
        except Exception as e:
            if intent_id:
                logger.exception("Waitlist entry %s charged as %s but not recorded", entry_id, intent_id)
                await report_critical(
                    f"Waitlist selection charged but not recorded: {e}",
                    user_id=user["id"],
                    object_type="payment_intent",
                    payment_intent_id=intent_id,
                    waitlist_id=entry_id,
                    staging_id=staging["id"],
                    amount=final_amount,
                )
            raise
        logger.info(
            "Selected waitlist entry %s: user %s charged %s cents (payment %s)",
            entry_id,
            user["id"],
            final_amount,
            payment_id,
        )
        return ChargeResult(
            payment_id=payment_id,
            amount_charged=final_amount,
            success=True,
            payment_intent_id=intent_id,
            staging_id=staging["id"],
        )

    @staticmethod
    def _insert_paid_registration(
        user_id: int,
        registration_id: int,
        category_id: int,
        fee: int,
        amount: int,
        payment_id: int,
        intent_id: Optional[str],
    ) -> int:
        """Insert the paid row, replacing any abandoned hold the member left behind."""
        conn = get_connection()
        try:
            conn.execute(
                "DELETE FROM user_registrations WHERE user_id = ? AND registration_id = ? AND payment_status != 'paid'",
                (user_id, registration_id),
            )
            cursor = conn.execute(
                """
                INSERT INTO user_registrations (user_id, registration_id, registration_category_id, payment_status,
                    registration_fee, amount_paid, payment_id, stripe_payment_intent_id, registered_at)
                VALUES (?, ?, ?, 'paid', ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    registration_id,
                    category_id,
                    fee,
                    amount,
                    payment_id,
                    intent_id,
                    timestamp(),
                ),
            )
            conn.commit()
        finally:
            conn.close()
        return cursor.lastrowid
