"""
Alternate players.

Members sign up as alternates for a registration that allows them.
Captains (or admins) create a game and pick alternates for it; each
picked member is charged ``alternate_price`` off-session with their
saved card.  One failing card does not stop the rest of the batch.
"""

import logging
import sqlite3
from typing import List, Optional

from league_registry_api.app.core.alerts import report_critical
from league_registry_api.app.core.db import get_connection
from league_registry_api.app.core.exceptions import ConflictError, NotFoundError, PaymentProviderError
from league_registry_api.app.schemas.alternate import (
    AlternateRead,
    AlternateSelectResult,
    GameCreate,
    GameRead,
    SelectionOutcome,
)
from league_registry_api.app.services.checkout_service import registration_lines
from league_registry_api.app.services.discount_service import DiscountService, percent_of
from league_registry_api.app.services.payment_completion import (
    ALTERNATE_SELECTIONS,
    CompletionEvent,
    PaymentCompletionProcessor,
)
from league_registry_api.app.services.payment_method_service import PaymentMethodService, has_valid_payment_method
from league_registry_api.app.services.payment_service import PaymentService
from league_registry_api.app.services.registration_service import RegistrationService
from league_registry_api.app.services.user_service import UserService
from league_registry_api.app.services.xero_staging_service import StagingRequest, XeroStagingService

logger = logging.getLogger(__name__)


class AlternateService:
    """Alternate sign-ups, captains, games and selections."""

    @classmethod
    async def register_as_alternate(
        cls, user_id: int, registration_id: int, discount_code: Optional[str] = None
    ) -> AlternateRead:
        registration = RegistrationService.get_registration_row(registration_id)
        if not registration["allow_alternates"]:
            raise ValueError("This registration does not accept alternates")
        user = UserService.get_user_row(user_id)
        if not has_valid_payment_method(user):
            raise ValueError("A saved payment method is required to sign up as an alternate")

        discount_code_id = None
        if discount_code:
            validation = await DiscountService.validate_code(
                discount_code, user_id, registration["season_id"], registration["alternate_price"] or 0
            )
            if not validation.is_valid:
                raise ValueError(validation.message)
            discount_code_id = validation.discount_code_id

        conn = get_connection()
        try:
            try:
                cursor = conn.execute(
                    "INSERT INTO user_alternate_registrations (user_id, registration_id, discount_code_id) "
                    "VALUES (?, ?, ?)",
                    (user_id, registration_id, discount_code_id),
                )
            except sqlite3.IntegrityError:
                raise ConflictError("You are already signed up as an alternate for this registration")
            conn.commit()
            alternate_id = cursor.lastrowid
        finally:
            conn.close()
        logger.info("User %s signed up as alternate for registration %s", user_id, registration_id)
        return next(a for a in await cls.list_alternates(registration_id) if a.id == alternate_id)

    @classmethod
    async def list_alternates(cls, registration_id: int) -> List[AlternateRead]:
        conn = get_connection()
        try:
            rows = conn.execute(
                """
                SELECT uar.*, u.first_name, u.last_name, u.email,
                    (SELECT COUNT(*) FROM alternate_selections s
                     JOIN alternate_registrations ar ON ar.id = s.alternate_registration_id
                     WHERE s.user_id = uar.user_id AND ar.registration_id = uar.registration_id) AS times_selected
                FROM user_alternate_registrations uar
                JOIN users u ON u.id = uar.user_id
                WHERE uar.registration_id = ?
                ORDER BY uar.created_at, uar.id
                """,
                (registration_id,),
            ).fetchall()
        finally:
            conn.close()
        return [AlternateRead(**dict(r)) for r in rows]

    @classmethod
    async def leave(cls, user_id: int, registration_id: int) -> None:
        conn = get_connection()
        try:
            deleted = conn.execute(
                "DELETE FROM user_alternate_registrations WHERE user_id = ? AND registration_id = ?",
                (user_id, registration_id),
            ).rowcount
            conn.commit()
        finally:
            conn.close()
        if not deleted:
            raise NotFoundError("You are not signed up as an alternate for this registration")

    # ------------------------------------------------------------------
    # Captains
    # ------------------------------------------------------------------
    @classmethod
    async def add_captain(cls, registration_id: int, user_id: int) -> None:
        RegistrationService.get_registration_row(registration_id)
        UserService.get_user_row(user_id)
        conn = get_connection()
        try:
            conn.execute(
                "INSERT OR IGNORE INTO registration_captains (registration_id, user_id) VALUES (?, ?)",
                (registration_id, user_id),
            )
            conn.commit()
        finally:
            conn.close()

    @classmethod
    async def remove_captain(cls, registration_id: int, user_id: int) -> None:
        conn = get_connection()
        try:
            conn.execute(
                "DELETE FROM registration_captains WHERE registration_id = ? AND user_id = ?",
                (registration_id, user_id),
            )
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def is_captain(registration_id: int, user_id: int) -> bool:
        conn = get_connection()
        try:
            row = conn.execute(
                "SELECT 1 FROM registration_captains WHERE registration_id = ? AND user_id = ?",
                (registration_id, user_id),
            ).fetchone()
        finally:
            conn.close()
        return row is not None

    # ------------------------------------------------------------------
    # Games
    # ------------------------------------------------------------------
    @classmethod
    async def create_game(cls, registration_id: int, data: GameCreate, created_by: Optional[int]) -> GameRead:
        registration = RegistrationService.get_registration_row(registration_id)
        if not registration["allow_alternates"]:
            raise ValueError("This registration does not accept alternates")
        conn = get_connection()
        try:
            cursor = conn.execute(
                "INSERT INTO alternate_registrations (registration_id, game_description, game_date, created_by) "
                "VALUES (?, ?, ?, ?)",
                (
                    registration_id,
                    data.game_description,
                    data.game_date.strftime("%Y-%m-%d %H:%M:%S") if data.game_date else None,
                    created_by,
                ),
            )
            conn.commit()
            game_id = cursor.lastrowid
        finally:
            conn.close()
        return cls.get_game(game_id)

    @staticmethod
    def get_game(game_id: int) -> GameRead:
        conn = get_connection()
        try:
            row = conn.execute(
                """
                SELECT ar.*, (SELECT COUNT(*) FROM alternate_selections s WHERE s.alternate_registration_id = ar.id)
                    AS selected_count
                FROM alternate_registrations ar WHERE ar.id = ?
                """,
                (game_id,),
            ).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError(f"Game {game_id} not found")
        return GameRead(**dict(row))

    @classmethod
    async def list_games(cls, registration_id: int) -> List[GameRead]:
        conn = get_connection()
        try:
            rows = conn.execute(
                """
                SELECT ar.*, (SELECT COUNT(*) FROM alternate_selections s WHERE s.alternate_registration_id = ar.id)
                    AS selected_count
                FROM alternate_registrations ar WHERE ar.registration_id = ?
                ORDER BY ar.game_date IS NULL, ar.game_date, ar.id
                """,
                (registration_id,),
            ).fetchall()
        finally:
            conn.close()
        return [GameRead(**dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------
    @classmethod
    async def select_alternates(
        cls, game_id: int, user_ids: List[int], selected_by: Optional[int]
    ) -> AlternateSelectResult:
        game = cls.get_game(game_id)
        registration = RegistrationService.get_registration_row(game.registration_id)
        results: List[SelectionOutcome] = []
        for user_id in dict.fromkeys(user_ids):
            try:
                outcome = await cls._select_one(game, registration, user_id, selected_by)
            except (ValueError, LookupError, PaymentProviderError) as e:
                logger.warning("Alternate selection of user %s for game %s failed: %s", user_id, game_id, e)
                outcome = SelectionOutcome(user_id=user_id, success=False, error=str(e))
            except Exception as e:
                # One member's failure must not stop the rest of the batch.
                logger.exception("Unexpected error selecting user %s for game %s", user_id, game_id)
                outcome = SelectionOutcome(user_id=user_id, success=False, error=str(e))
            results.append(outcome)
        selected = sum(1 for r in results if r.success)
        logger.info("Game %s: %s alternates selected, %s failed", game_id, selected, len(results) - selected)
        return AlternateSelectResult(
            game_id=game_id, selected=selected, failed=len(results) - selected, results=results
        )

    @classmethod
    async def _select_one(
        cls, game: GameRead, registration: sqlite3.Row, user_id: int, selected_by: Optional[int]
    ) -> SelectionOutcome:
        conn = get_connection()
        try:
            signup = conn.execute(
                "SELECT * FROM user_alternate_registrations WHERE user_id = ? AND registration_id = ?",
                (user_id, registration["id"]),
            ).fetchone()
            already = conn.execute(
                "SELECT id FROM alternate_selections WHERE alternate_registration_id = ? AND user_id = ?",
                (game.id, user_id),
            ).fetchone()
        finally:
            conn.close()
        if signup is None:
            raise ValueError("User is not signed up as an alternate")
        if already is not None:
            raise ConflictError("User was already selected for this game")

        user = UserService.get_user_row(user_id)
        price = registration["alternate_price"] or 0
        discount_amount = 0
        code = None
        if signup["discount_code_id"] and price > 0:
            code = DiscountService.get_code_row(signup["discount_code_id"])
            limit = await DiscountService.check_seasonal_discount_limit(
                user_id, code, registration["season_id"], percent_of(price, code["percentage"])
            )
            discount_amount = limit.final_amount
        final_amount = price - discount_amount

        description = f"{registration['name']} - Alternate: {game.game_description}"
        lines = registration_lines(
            description,
            {"id": registration["id"], "accounting_code": None},
            price,
            discount_amount,
            code,
            accounting_code=registration["alternate_accounting_code"],
        )
        staging = XeroStagingService.create_immediate_staging(
            StagingRequest(
                user_id=user_id,
                total_amount=price,
                discount_amount=discount_amount,
                final_amount=final_amount,
                lines=lines,
                metadata={"purpose": "alternate_selection", "game_id": game.id, "registration_id": registration["id"]},
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
                        "purpose": "alternate_selection",
                        "userId": user_id,
                        "registrationId": registration["id"],
                        "gameId": game.id,
                        "xero_staging_record_id": staging["id"],
                    },
                    idempotency_key=f"alternate-{game.id}-user-{user_id}-staging-{staging['id']}",
                )
            except PaymentProviderError as e:
                XeroStagingService.set_status(staging["id"], "abandoned", f"Charge failed: {e}")
                raise
            intent_id = intent["id"]

        try:
            payment_id = PaymentService.create_payment(
                user_id,
                price,
                discount_amount,
                final_amount,
                intent_id,
                status="completed",
                payment_method="stripe" if intent_id else "free",
            )
            XeroStagingService.merge_metadata(staging["id"], {"stripe_payment_intent_id": intent_id}, payment_id)

            conn = get_connection()
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO alternate_selections (alternate_registration_id, user_id, discount_code_id, payment_id,
                        amount_charged, selected_by)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (game.id, user_id, code["id"] if code else None, payment_id, final_amount, selected_by),
                )
                conn.commit()
                selection_id = cursor.lastrowid
            finally:
                conn.close()

            await PaymentCompletionProcessor.process(
                CompletionEvent(
                    event_type=ALTERNATE_SELECTIONS,
                    user_id=user_id,
                    record_id=selection_id,
                    payment_id=payment_id,
                    amount=final_amount,
                    trigger_source="alternate_selection",
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
                logger.exception("Alternate %s for game %s charged as %s but not recorded", user_id, game.id, intent_id)
                await report_critical(
                    f"Alternate selection charged but not recorded: {e}",
                    user_id=user_id,
                    object_type="payment_intent",
                    payment_intent_id=intent_id,
                    game_id=game.id,
                    staging_id=staging["id"],
                    amount=final_amount,
                )
            raise
        return SelectionOutcome(
            user_id=user_id,
            success=True,
            selection_id=selection_id,
            payment_id=payment_id,
            amount_charged=final_amount,
        )
