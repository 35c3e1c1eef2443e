"""
Post-payment processing shared by every purchase flow.

Whatever was bought (a registration, a membership, a waitlist spot, an
alternate game), once the money has moved the same steps follow:

1. the accounting staging record is made ready for sync;
2. confirmation emails are staged;
3. discount usage is recorded against the seasonal cap;
4. an immediate Xero sync is attempted.

Step 1 is strict.  A paid charge whose staging record cannot be found
is a ledger divergence: it is reported as a critical alert and
``StagingRecordMissingError`` is raised.  No substitute record is
invented.  Steps 2 to 4 are best effort and only log their failures.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from league_registry_api.app.core.alerts import report_critical
from league_registry_api.app.core.db import get_connection
from league_registry_api.app.core.exceptions import StagingRecordMissingError
from league_registry_api.app.services import email_service
from league_registry_api.app.services.discount_service import DiscountService, format_cents
from league_registry_api.app.services.email_service import EmailService
from league_registry_api.app.services.xero_staging_service import StagingLine, StagingRequest, XeroStagingService
from league_registry_api.app.services.xero_sync_service import XeroSyncService

logger = logging.getLogger(__name__)

USER_REGISTRATIONS = "user_registrations"
USER_MEMBERSHIPS = "user_memberships"
ALTERNATE_SELECTIONS = "alternate_selections"
WAITLIST_SELECTIONS = "waitlist_selections"
PAYMENT_PLAN_INSTALLMENTS = "payment_plan_installments"
PAYMENTS_FAILED = "payments_failed"


def meta_int(metadata: Dict[str, Any], key: str) -> Optional[int]:
    """Read an integer from Stripe-style metadata, where every value is a string."""
    value = metadata.get(key)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class CompletionEvent:
    event_type: str
    user_id: int
    record_id: Optional[int] = None
    payment_id: Optional[int] = None
    amount: int = 0
    trigger_source: str = "webhook"
    metadata: Dict[str, Any] = field(default_factory=dict)
    failed: bool = False


class PaymentCompletionProcessor:
    """Run the post-payment steps for one completed (or failed) charge."""

    @classmethod
    async def process(cls, event: CompletionEvent) -> Dict[str, Any]:
        logger.info(
            "Processing %s completion for user %s (record=%s payment=%s amount=%s source=%s)",
            event.event_type,
            event.user_id,
            event.record_id,
            event.payment_id,
            event.amount,
            event.trigger_source,
        )
        if event.failed or event.event_type == PAYMENTS_FAILED:
            email_id = EmailService.stage_for_user(
                event.user_id,
                email_service.PAYMENT_FAILED,
                {
                    "amount": format_cents(event.amount),
                    "failureReason": event.metadata.get("failure_reason") or "Your card was declined",
                },
            )
            return {"status": "failed", "emails_staged": 1 if email_id else 0}

        staging_id = await cls._prepare_staging(event)

        emails_staged = 0
        try:
            emails_staged = cls._stage_confirmation(event)
        except Exception:
            logger.exception("Could not stage confirmation email for %s %s", event.event_type, event.record_id)

        try:
            await cls._record_discount_usage(event)
        except Exception:
            logger.exception("Could not record discount usage for payment %s", event.payment_id)

        synced = False
        if staging_id is not None:
            synced = await XeroSyncService.sync_single(staging_id)
        return {"status": "completed", "staging_id": staging_id, "emails_staged": emails_staged, "synced": synced}

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------
    @classmethod
    async def _prepare_staging(cls, event: CompletionEvent) -> Optional[int]:
        staging_id = meta_int(event.metadata, "xero_staging_record_id")
        record = XeroStagingService.find_active(staging_id)
        extra = {
            "stripe_payment_intent_id": event.metadata.get("stripe_payment_intent_id"),
            "trigger_source": event.trigger_source,
            "record_type": event.event_type,
            "record_id": event.record_id,
        }

        if event.amount == 0:
            if record is None:
                record = cls._stage_free_record(event)
                if record is None:
                    return None
            await XeroStagingService.mark_ready_for_sync(record["id"], event.payment_id, extra)
            return record["id"]

        if record is None:
            message = (
                f"Paid {event.event_type} charge has no accounting staging record "
                f"(staging id {staging_id!r}, payment {event.payment_id})"
            )
            await report_critical(
                message,
                user_id=event.user_id,
                object_type="payment",
                object_id=event.payment_id,
                staging_id=staging_id,
                amount=event.amount,
                record_id=event.record_id,
            )
            raise StagingRecordMissingError(message, staging_id)

        await XeroStagingService.mark_ready_for_sync(record["id"], event.payment_id, extra)
        return record["id"]

    @staticmethod
    def _stage_free_record(event: CompletionEvent) -> Optional[Dict[str, Any]]:
        """Stage a zero-value invoice for a free purchase that has none yet."""
        conn = get_connection()
        try:
            if event.event_type == USER_MEMBERSHIPS:
                row = conn.execute(
                    """
                    SELECT m.id AS item_id, m.name AS description, m.accounting_code
                    FROM user_memberships um JOIN memberships m ON m.id = um.membership_id
                    WHERE um.id = ?
                    """,
                    (event.record_id,),
                ).fetchone()
                item_type = "membership"
            else:
                row = conn.execute(
                    """
                    SELECT rc.id AS item_id, r.name || ' - ' || rc.name AS description, rc.accounting_code
                    FROM user_registrations ur
                    JOIN registration_categories rc ON rc.id = ur.registration_category_id
                    JOIN registrations r ON r.id = ur.registration_id
                    WHERE ur.id = ?
                    """,
                    (event.record_id,),
                ).fetchone()
                item_type = "registration"
        finally:
            conn.close()
        if row is None or not row["accounting_code"]:
            logger.warning("Cannot stage free %s %s: no accounting code", event.event_type, event.record_id)
            return None
        return XeroStagingService.create_immediate_staging(
            StagingRequest(
                user_id=event.user_id,
                total_amount=0,
                discount_amount=0,
                final_amount=0,
                payment_id=event.payment_id,
                lines=[StagingLine(item_type, 0, row["description"], row["accounting_code"], item_id=row["item_id"])],
                metadata={"trigger_source": event.trigger_source},
            ),
            is_free=True,
        )

    # ------------------------------------------------------------------
    # Emails and discounts
    # ------------------------------------------------------------------
    @classmethod
    def _stage_confirmation(cls, event: CompletionEvent) -> int:
        conn = get_connection()
        try:
            if event.event_type == USER_MEMBERSHIPS:
                row = conn.execute(
                    """
                    SELECT m.name, um.months_purchased, um.valid_from, um.valid_until
                    FROM user_memberships um JOIN memberships m ON m.id = um.membership_id
                    WHERE um.id = ?
                    """,
                    (event.record_id,),
                ).fetchone()
                if row is None:
                    return 0
                kind = email_service.MEMBERSHIP_PURCHASED
                data = {
                    "membershipName": row["name"],
                    "durationMonths": row["months_purchased"],
                    "validFrom": row["valid_from"],
                    "validUntil": row["valid_until"],
                }
            elif event.event_type == ALTERNATE_SELECTIONS:
                row = conn.execute(
                    """
                    SELECT r.name, ar.game_description, ar.game_date
                    FROM alternate_selections s
                    JOIN alternate_registrations ar ON ar.id = s.alternate_registration_id
                    JOIN registrations r ON r.id = ar.registration_id
                    WHERE s.id = ?
                    """,
                    (event.record_id,),
                ).fetchone()
                if row is None:
                    return 0
                kind = email_service.ALTERNATE_SELECTED
                data = {
                    "registrationName": row["name"],
                    "gameDescription": row["game_description"],
                    "gameDate": row["game_date"],
                }
            elif event.event_type == PAYMENT_PLAN_INSTALLMENTS:
                kind = email_service.PLAN_PAYMENT_PROCESSED
                data = {"installmentNumber": event.metadata.get("installmentNumber")}
            else:
                row = conn.execute(
                    """
                    SELECT r.name AS registration_name, rc.name AS category_name, r.start_date
                    FROM user_registrations ur
                    JOIN registrations r ON r.id = ur.registration_id
                    LEFT JOIN registration_categories rc ON rc.id = ur.registration_category_id
                    WHERE ur.id = ?
                    """,
                    (event.record_id,),
                ).fetchone()
                if row is None:
                    return 0
                kind = (
                    email_service.WAITLIST_SELECTED
                    if event.event_type == WAITLIST_SELECTIONS
                    else email_service.REGISTRATION_COMPLETED
                )
                data = {
                    "registrationName": row["registration_name"],
                    "categoryName": row["category_name"],
                    "startDate": row["start_date"],
                }
        finally:
            conn.close()
        data["amount"] = format_cents(event.amount)
        return 1 if EmailService.stage_for_user(event.user_id, kind, data) else 0

    @staticmethod
    async def _record_discount_usage(event: CompletionEvent) -> None:
        code_id = meta_int(event.metadata, "discountCodeId")
        saved = meta_int(event.metadata, "discountAmount") or 0
        if not code_id or saved <= 0:
            return
        registration_id = meta_int(event.metadata, "registrationId")
        season_id = meta_int(event.metadata, "seasonId")
        if season_id is None and registration_id is not None:
            season_id = DiscountService.season_for_registration(registration_id)
        if season_id is None:
            logger.warning("Discount usage for payment %s has no season; not recorded", event.payment_id)
            return
        await DiscountService.record_usage(
            event.user_id,
            code_id,
            season_id,
            saved,
            registration_id,
            once_per_registration=event.event_type != ALTERNATE_SELECTIONS,
        )
