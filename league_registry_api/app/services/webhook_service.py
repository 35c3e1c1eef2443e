"""
Stripe webhook handling.

The endpoint verifies the signature and hands the decoded event to
``WebhookService.handle_event``.  Stripe retries any delivery that does
not get a 2xx answer, so once money has moved this module never lets
an exception escape: failures after a successful charge are reported
through ``report_critical`` and the event is still acknowledged.
Otherwise a retry could complete the same purchase twice.

On-session purchases (memberships and registrations) are completed
here.  Off-session charges (waitlist and alternate selections, payment
plan installments) are completed synchronously by the code that made
them, so their ``payment_intent.succeeded`` events are only
acknowledged.
"""

import logging
from typing import Any, Dict, Optional

from league_registry_api.app.core.alerts import report_critical
from league_registry_api.app.core.db import get_connection, timestamp
from league_registry_api.app.services.membership_service import MembershipService
from league_registry_api.app.services.payment_completion import (
    PAYMENTS_FAILED,
    USER_MEMBERSHIPS,
    USER_REGISTRATIONS,
    CompletionEvent,
    PaymentCompletionProcessor,
    meta_int,
)
from league_registry_api.app.services.payment_method_service import PaymentMethodService
from league_registry_api.app.services.payment_plan_service import PaymentPlanService
from league_registry_api.app.services.payment_service import PaymentService
from league_registry_api.app.services.reservation_service import ReservationService

logger = logging.getLogger(__name__)

OFF_SESSION_PURPOSES = ("alternate_selection", "waitlist_selection", "payment_plan")


def intent_purpose(metadata: Dict[str, Any]) -> Optional[str]:
    """Work out what a PaymentIntent paid for."""
    if metadata.get("purpose"):
        return metadata["purpose"]
    if metadata.get("membershipId"):
        return "membership"
    if metadata.get("registrationId"):
        return "registration"
    return None


class WebhookService:
    """Dispatch verified Stripe events."""

    @classmethod
    async def handle_event(cls, event: Dict[str, Any]) -> Dict[str, Any]:
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        logger.info("Stripe event %s (%s) for %s", event.get("id"), event_type, obj.get("id"))

        if event_type == "payment_intent.succeeded":
            return await cls.payment_succeeded(obj)
        if event_type == "payment_intent.payment_failed":
            return await cls.payment_failed(obj)
        if event_type == "setup_intent.succeeded":
            user_id = await PaymentMethodService.handle_setup_succeeded(obj)
            return {"status": "ok", "user_id": user_id}
        if event_type == "setup_intent.setup_failed":
            user_id = await PaymentMethodService.handle_setup_failed(obj)
            return {"status": "ok", "user_id": user_id}
        logger.debug("Ignoring Stripe event type %s", event_type)
        return {"status": "ignored"}

    @classmethod
    async def payment_succeeded(cls, intent: Dict[str, Any]) -> Dict[str, Any]:
        metadata = intent.get("metadata") or {}
        purpose = intent_purpose(metadata)
        payment = PaymentService.find_by_intent(intent["id"])

        if purpose in OFF_SESSION_PURPOSES:
            logger.info("Off-session %s charge %s acknowledged", purpose, intent["id"])
            return {"status": "ok", "purpose": purpose}
        if purpose not in ("membership", "registration"):
            logger.warning("Payment intent %s has no recognisable purpose", intent["id"])
            return {"status": "ignored"}

        user_id = meta_int(metadata, "userId")
        try:
            if payment is None:
                await report_critical(
                    "Stripe charge succeeded without a local payment row",
                    user_id=user_id,
                    object_type="payment_intent",
                    payment_intent_id=intent["id"],
                    amount=intent.get("amount"),
                )
                return {"status": "error_reported"}
            payment_id = payment["id"]
            newly_completed = PaymentService.mark_completed(payment_id)

            if purpose == "membership":
                record = MembershipService.record_membership_purchase(intent, payment_id=payment_id)
                if not newly_completed:
                    logger.info("Membership charge %s already processed", intent["id"])
                    return {"status": "duplicate"}
                event_type, record_id = USER_MEMBERSHIPS, record["id"]
            else:
                record_id, newly_paid = await cls._complete_registration(intent, metadata, payment_id)
                if not newly_completed and not newly_paid:
                    logger.info("Registration charge %s already processed", intent["id"])
                    return {"status": "duplicate"}
                event_type = USER_REGISTRATIONS

            process_metadata = dict(metadata)
            process_metadata["stripe_payment_intent_id"] = intent["id"]
            await PaymentCompletionProcessor.process(
                CompletionEvent(
                    event_type=event_type,
                    user_id=user_id,
                    record_id=record_id,
                    payment_id=payment_id,
                    amount=intent.get("amount_received") or intent.get("amount") or 0,
                    trigger_source="stripe_webhook",
                    metadata=process_metadata,
                )
            )
        except Exception as e:
            logger.exception("Post-payment processing failed for %s", intent["id"])
            await report_critical(
                f"Post-payment processing failed: {e}",
                user_id=user_id,
                object_type="payment_intent",
                payment_intent_id=intent["id"],
                purpose=purpose,
            )
            return {"status": "error_reported"}
        return {"status": "ok", "purpose": purpose, "record_id": record_id}

    @classmethod
    async def _complete_registration(cls, intent: Dict[str, Any], metadata: Dict[str, Any], payment_id: int):
        """Mark the hold paid; returns ``(user_registration_id, newly_paid)``.

        If the hold expired and was cleaned up before the webhook
        arrived, a paid row is inserted instead.
        """
        user_id = meta_int(metadata, "userId")
        registration_id = meta_int(metadata, "registrationId")
        reservation_id = meta_int(metadata, "reservationId")
        amount = intent.get("amount_received") or intent.get("amount") or 0

        newly_paid = False
        row = None
        conn = get_connection()
        try:
            if reservation_id:
                row = conn.execute("SELECT * FROM user_registrations WHERE id = ?", (reservation_id,)).fetchone()
            if row is None:
                row = conn.execute(
                    "SELECT * FROM user_registrations WHERE user_id = ? AND registration_id = ?",
                    (user_id, registration_id),
                ).fetchone()
            if row is None:
                logger.warning("Hold for intent %s is gone; inserting paid registration", intent["id"])
                cursor = conn.execute(
                    """
                    INSERT INTO user_registrations (user_id, registration_id, registration_category_id, payment_status,
                        registration_fee, amount_paid, payment_id, stripe_payment_intent_id, registered_at)
                    VALUES (?, ?, ?, 'paid', ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        registration_id,
                        meta_int(metadata, "categoryId"),
                        meta_int(metadata, "originalAmount") or amount,
                        amount,
                        payment_id,
                        intent["id"],
                        timestamp(),
                    ),
                )
                conn.commit()
                user_registration_id, newly_paid = cursor.lastrowid, True
            else:
                user_registration_id = row["id"]
        finally:
            conn.close()

        if row is not None:
            if row["payment_status"] == "paid":
                logger.info("Registration %s already paid", row["id"])
            else:
                newly_paid = ReservationService.mark_paid(row["id"], payment_id, amount)

        if metadata.get("paymentPlan") == "true":
            staging_id = meta_int(metadata, "xero_staging_record_id")
            await PaymentPlanService.create_plan(
                user_id,
                user_registration_id,
                meta_int(metadata, "planTotal") or amount,
                staging_id,
                payment_id,
                reference=intent["id"],
            )
        return user_registration_id, newly_paid

    @classmethod
    async def payment_failed(cls, intent: Dict[str, Any]) -> Dict[str, Any]:
        metadata = intent.get("metadata") or {}
        payment = PaymentService.find_by_intent(intent["id"])
        if payment is not None:
            PaymentService.mark_failed(payment["id"])
        released = ReservationService.release_for_intent(intent["id"])
        if not released and meta_int(metadata, "reservationId"):
            released = ReservationService.release(meta_int(metadata, "reservationId"))

        user_id = meta_int(metadata, "userId") or (payment["user_id"] if payment else None)
        if user_id:
            error = intent.get("last_payment_error") or {}
            await PaymentCompletionProcessor.process(
                CompletionEvent(
                    event_type=PAYMENTS_FAILED,
                    user_id=user_id,
                    payment_id=payment["id"] if payment else None,
                    amount=intent.get("amount") or 0,
                    trigger_source="stripe_webhook",
                    metadata={**metadata, "failure_reason": error.get("message")},
                    failed=True,
                )
            )
        logger.info("Payment intent %s failed (reservation released: %s)", intent["id"], released)
        return {"status": "ok", "released": released}
