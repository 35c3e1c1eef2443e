"""
Saved payment methods.

Waitlist selections, alternate games and payment plan installments
are charged later, without the member present.  That requires a card
saved through a Stripe SetupIntent.  The user row tracks the
intent (``setup_intent_id``, ``setup_intent_status``) and, once it
succeeds, the attached ``stripe_payment_method_id``.
"""

import logging
from typing import Any, Dict, Optional

from league_registry_api.app.core.db import get_connection
from league_registry_api.app.core.exceptions import PaymentProviderError
from league_registry_api.app.schemas.user import SetupIntentResponse
from league_registry_api.app.services.stripe_gateway import StripeGateway
from league_registry_api.app.services.user_service import UserService

logger = logging.getLogger(__name__)


def has_valid_payment_method(user: Dict[str, Any]) -> bool:
    """True when the user can be charged off‑session."""
    return bool(user["stripe_payment_method_id"]) and user["setup_intent_status"] == "succeeded"


class PaymentMethodService:
    """Create, confirm and remove saved cards."""

    @classmethod
    async def create_setup_intent(cls, user_id: int) -> SetupIntentResponse:
        user = UserService.get_user_row(user_id)
        customer_id = UserService.ensure_stripe_customer(user)
        intent = StripeGateway.create_setup_intent(customer=customer_id, user_id=user_id)
        conn = get_connection()
        try:
            conn.execute(
                "UPDATE users SET setup_intent_id = ?, setup_intent_status = 'pending', "
                "updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (intent["id"], user_id),
            )
            conn.commit()
        finally:
            conn.close()
        return SetupIntentResponse(client_secret=intent["client_secret"], setup_intent_id=intent["id"])

    @classmethod
    async def handle_setup_succeeded(cls, setup_intent: Dict[str, Any]) -> Optional[int]:
        """Store the payment method from a ``setup_intent.succeeded`` event.

        The user is found through ``metadata.userId`` or, failing that,
        the stored ``setup_intent_id``.  Returns the user id, or ``None``
        if no user matches.
        """
        user_id = cls._resolve_user(setup_intent)
        if user_id is None:
            logger.warning("Setup intent %s does not match any user", setup_intent.get("id"))
            return None
        conn = get_connection()
        try:
            conn.execute(
                "UPDATE users SET stripe_payment_method_id = ?, setup_intent_status = 'succeeded', "
                "setup_intent_id = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (setup_intent.get("payment_method"), setup_intent.get("id"), user_id),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("Saved payment method for user %s", user_id)
        return user_id

    @classmethod
    async def handle_setup_failed(cls, setup_intent: Dict[str, Any]) -> Optional[int]:
        user_id = cls._resolve_user(setup_intent)
        if user_id is None:
            return None
        conn = get_connection()
        try:
            conn.execute(
                "UPDATE users SET setup_intent_status = 'failed', updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (user_id,),
            )
            conn.commit()
        finally:
            conn.close()
        return user_id

    @classmethod
    async def remove_payment_method(cls, user_id: int) -> None:
        """Detach the saved card and clear it locally.

        Members on a waitlist or signed up as alternates would no longer
        be chargeable, so removal is refused while such entries exist.
        """
        user = UserService.get_user_row(user_id)
        if not user["stripe_payment_method_id"]:
            return
        conn = get_connection()
        try:
            waiting = conn.execute(
                "SELECT COUNT(*) AS c FROM waitlists WHERE user_id = ? AND removed_at IS NULL", (user_id,)
            ).fetchone()["c"]
            alternates = conn.execute(
                "SELECT COUNT(*) AS c FROM user_alternate_registrations WHERE user_id = ?", (user_id,)
            ).fetchone()["c"]
            planned = conn.execute(
                """
                SELECT COUNT(*) AS c FROM xero_payments xp
                JOIN xero_invoices xi ON xi.id = xp.xero_invoice_id
                JOIN payments p ON p.id = xi.payment_id
                WHERE p.user_id = ? AND xp.sync_status = 'planned'
                """,
                (user_id,),
            ).fetchone()["c"]
        finally:
            conn.close()
        if waiting or alternates or planned:
            raise ValueError(
                "Your saved card is needed for waitlist, alternate or payment plan charges; leave those first"
            )
        StripeGateway.detach_payment_method(user["stripe_payment_method_id"])
        conn = get_connection()
        try:
            conn.execute(
                "UPDATE users SET stripe_payment_method_id = NULL, setup_intent_status = NULL, "
                "setup_intent_id = NULL, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (user_id,),
            )
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def charge_saved_card(
        user: Dict[str, Any],
        amount: int,
        description: str,
        metadata: Dict[str, Any],
        idempotency_key: str,
    ) -> Dict[str, Any]:
        """Charge the member's saved card; raises ``PaymentProviderError`` unless it succeeds."""
        if not has_valid_payment_method(user):
            raise PaymentProviderError("No valid saved payment method")
        intent = StripeGateway.charge_saved_method(
            amount=amount,
            customer=UserService.ensure_stripe_customer(user),
            payment_method=user["stripe_payment_method_id"],
            metadata=metadata,
            description=description,
            receipt_email=user["email"],
            idempotency_key=idempotency_key,
        )
        if intent["status"] != "succeeded":
            raise PaymentProviderError(f"Payment status: {intent['status']}")
        return intent

    @staticmethod
    def _resolve_user(setup_intent: Dict[str, Any]) -> Optional[int]:
        metadata = setup_intent.get("metadata") or {}
        conn = get_connection()
        try:
            if metadata.get("userId"):
                row = conn.execute("SELECT id FROM users WHERE id = ?", (int(metadata["userId"]),)).fetchone()
                if row:
                    return row["id"]
            row = conn.execute(
                "SELECT id FROM users WHERE setup_intent_id = ?", (setup_intent.get("id"),)
            ).fetchone()
            return row["id"] if row else None
        finally:
            conn.close()
