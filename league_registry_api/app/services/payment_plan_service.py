"""
Installment payment plans.

A plan splits a registration fee into four payments thirty days apart.
The invoice is staged once for the full amount (``is_payment_plan``)
and each installment is an ``xero_payments`` row:

* the first installment is paid at checkout and starts ``pending``;
* the others start ``planned`` with a ``planned_payment_date``;
* the ``/cron/payment-plans`` job charges due installments with the
  member's saved card and moves them to ``pending`` on success;
* a failed attempt goes back to ``planned`` and is retried after
  ``payment_plan_retry_hours``, up to ``payment_plan_max_attempts``.
"""

import logging
import sqlite3
from datetime import timedelta
from typing import Any, Dict, List, Optional

from league_registry_api.app.core.alerts import report_critical
from league_registry_api.app.core.config import settings
from league_registry_api.app.core.db import from_json, get_connection, timestamp, to_json, utc_now
from league_registry_api.app.core.exceptions import NotFoundError, PaymentProviderError
from league_registry_api.app.schemas.payment_plan import InstallmentRunResult, PaymentPlanSummary
from league_registry_api.app.schemas.waitlist import ChargeResult
from league_registry_api.app.services import email_service
from league_registry_api.app.services.discount_service import format_cents
from league_registry_api.app.services.email_service import EmailService
from league_registry_api.app.services.payment_method_service import PaymentMethodService, has_valid_payment_method
from league_registry_api.app.services.payment_service import PaymentService
from league_registry_api.app.services.user_service import UserService
from league_registry_api.app.services.xero_staging_service import DEFAULT_BANK_ACCOUNT, XeroStagingService

logger = logging.getLogger(__name__)


def installment_amounts(total: int, count: Optional[int] = None) -> List[int]:
    """Split ``total`` cents into ``count`` installments; the last absorbs rounding."""
    count = count or settings.payment_plan_installments
    each = round(total / count)
    return [each] * (count - 1) + [total - each * (count - 1)]


class PaymentPlanService:
    """Create, collect, pay off and cancel installment plans."""

    @staticmethod
    def can_create(user: Dict[str, Any]) -> bool:
        return has_valid_payment_method(user)

    @classmethod
    async def create_plan(
        cls,
        user_id: int,
        user_registration_id: int,
        total_amount: int,
        staging_id: int,
        first_payment_id: int,
        reference: Optional[str] = None,
    ) -> int:
        """Stage the installment rows for a plan; returns the invoice id.

        Calling it again for the same invoice does nothing.
        """
        from league_registry_api.app.services.settings_service import SettingsService

        XeroStagingService.mark_payment_plan(staging_id)
        bank_account = await SettingsService.get_value("stripe_bank_account", DEFAULT_BANK_ACCOUNT)
        today = utc_now().date()
        amounts = installment_amounts(total_amount)
        created_at = timestamp()
        conn = get_connection()
        try:
            existing = conn.execute(
                "SELECT COUNT(*) AS c FROM xero_payments WHERE xero_invoice_id = ? AND payment_type = 'installment'",
                (staging_id,),
            ).fetchone()["c"]
            if existing:
                logger.info("Payment plan for invoice %s already exists", staging_id)
                return staging_id
            rows = []
            for number, amount in enumerate(amounts, start=1):
                planned = today + timedelta(days=settings.payment_plan_interval_days * (number - 1))
                metadata: Dict[str, Any] = {
                    "user_id": user_id,
                    "user_registration_id": user_registration_id,
                    "payment_plan_created_at": created_at,
                }
                if number == 1:
                    metadata["payment_id"] = first_payment_id
                rows.append(
                    (
                        staging_id,
                        bank_account,
                        amount,
                        reference if number == 1 else None,
                        "pending" if number == 1 else "planned",
                        created_at,
                        to_json(metadata),
                        number,
                        planned.isoformat(),
                        1 if number == 1 else 0,
                        created_at if number == 1 else None,
                    )
                )
            conn.executemany(
                """
                INSERT INTO xero_payments (xero_invoice_id, bank_account_code, amount_paid, reference, sync_status,
                    staged_at, staging_metadata, payment_type, installment_number, planned_payment_date,
                    attempt_count, last_attempt_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'installment', ?, ?, ?, ?)
                """,
                rows,
            )
            conn.commit()
        finally:
            conn.close()
        logger.info(
            "Created %s-installment plan on invoice %s for user %s (%s cents)",
            len(amounts),
            staging_id,
            user_id,
            total_amount,
        )
        return staging_id

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------
    @classmethod
    async def process_due_installments(cls) -> InstallmentRunResult:
        result = InstallmentRunResult()
        retry_before = timestamp(hours=-settings.payment_plan_retry_hours)
        conn = get_connection()
        try:
            due = conn.execute(
                """
                SELECT xp.* FROM xero_payments xp
                JOIN xero_invoices xi ON xi.id = xp.xero_invoice_id
                WHERE xp.sync_status = 'planned' AND xp.payment_type = 'installment'
                  AND xp.planned_payment_date <= ?
                  AND xp.attempt_count < ?
                  AND (xp.last_attempt_at IS NULL OR xp.last_attempt_at <= ?)
                ORDER BY xp.planned_payment_date, xp.id
                """,
                (utc_now().date().isoformat(), settings.payment_plan_max_attempts, retry_before),
            ).fetchall()
        finally:
            conn.close()

        for installment in due:
            result.processed += 1
            error = await cls._collect(installment)
            if error is None:
                result.succeeded += 1
            else:
                result.failed += 1
                result.errors.append(f"Installment {installment['id']}: {error}")
        if due:
            logger.info("Payment plan run: %s succeeded, %s failed", result.succeeded, result.failed)
        return result

    @classmethod
    async def _collect(cls, installment: sqlite3.Row) -> Optional[str]:
        """Charge one installment; returns an error message or ``None`` on success."""
        metadata = from_json(installment["staging_metadata"])
        user_id = metadata.get("user_id")
        attempt = installment["attempt_count"] + 1
        conn = get_connection()
        try:
            conn.execute(
                "UPDATE xero_payments SET sync_status = 'processing', attempt_count = ?, last_attempt_at = ? "
                "WHERE id = ?",
                (attempt, timestamp(), installment["id"]),
            )
            conn.commit()
        finally:
            conn.close()

        try:
            user = UserService.get_user_row(user_id)
            intent = PaymentMethodService.charge_saved_card(
                user,
                installment["amount_paid"],
                f"Payment plan installment {installment['installment_number']}",
                metadata={
                    "purpose": "payment_plan",
                    "userId": user_id,
                    "xeroInvoiceId": installment["xero_invoice_id"],
                    "xeroPaymentId": installment["id"],
                    "installmentNumber": installment["installment_number"],
                },
                idempotency_key=f"installment-{installment['id']}-attempt-{attempt}",
            )
        except (PaymentProviderError, NotFoundError) as e:
            await cls._installment_failed(installment, user_id, attempt, str(e))
            return str(e)
        except Exception as e:
            logger.exception("Unexpected error charging installment %s", installment["id"])
            await cls._installment_failed(installment, user_id, attempt, f"Unexpected error: {e}")
            return str(e)

        try:
            payment_id = PaymentService.create_payment(
                user_id,
                installment["amount_paid"],
                0,
                installment["amount_paid"],
                intent["id"],
                status="completed",
            )
            metadata.update({"payment_id": payment_id, "processed_at": timestamp()})
            conn = get_connection()
            try:
                conn.execute(
                    "UPDATE xero_payments SET sync_status = 'pending', reference = ?, staging_metadata = ?, "
                    "failure_reason = NULL WHERE id = ?",
                    (intent["id"], to_json(metadata), installment["id"]),
                )
                conn.commit()
            finally:
                conn.close()
        except Exception as e:
            # The card was charged; the row must not go back to 'planned' or it would be charged again.
            logger.exception("Installment %s charged as %s but could not be recorded", installment["id"], intent["id"])
            cls._set_status(installment["id"], "failed", f"Charged as {intent['id']} but not recorded: {e}")
            await report_critical(
                f"Installment charged but not recorded: {e}",
                user_id=user_id,
                object_type="xero_payment",
                object_id=installment["id"],
                payment_intent_id=intent["id"],
            )
            return str(e)

        EmailService.stage_for_user(
            user_id,
            email_service.PLAN_PAYMENT_PROCESSED,
            {
                "installmentNumber": installment["installment_number"],
                "amount": format_cents(installment["amount_paid"]),
            },
        )
        logger.info("Collected installment %s (payment %s)", installment["id"], payment_id)
        return None

    @classmethod
    async def _installment_failed(cls, installment: sqlite3.Row, user_id: Any, attempt: int, reason: str) -> None:
        conn = get_connection()
        try:
            conn.execute(
                "UPDATE xero_payments SET sync_status = 'planned', failure_reason = ? WHERE id = ?",
                (reason, installment["id"]),
            )
            conn.commit()
        finally:
            conn.close()
        logger.warning("Installment %s attempt %s failed: %s", installment["id"], attempt, reason)
        if user_id:
            EmailService.stage_for_user(
                user_id,
                email_service.PLAN_PAYMENT_FAILED,
                {
                    "installmentNumber": installment["installment_number"],
                    "amount": format_cents(installment["amount_paid"]),
                    "failureReason": reason,
                    "remainingRetries": max(settings.payment_plan_max_attempts - attempt, 0),
                },
            )
        if attempt >= settings.payment_plan_max_attempts:
            await report_critical(
                "Payment plan installment exhausted its retries",
                user_id=user_id,
                object_type="xero_payment",
                object_id=installment["id"],
                reason=reason,
            )

    @staticmethod
    def _set_status(installment_id: int, status: str, reason: str) -> None:
        conn = get_connection()
        try:
            conn.execute(
                "UPDATE xero_payments SET sync_status = ?, failure_reason = ? WHERE id = ?", (status, reason, installment_id)
            )
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Member and admin actions
    # ------------------------------------------------------------------
    @classmethod
    async def early_payoff(cls, invoice_id: int, user_id: Optional[int] = None) -> ChargeResult:
        """Charge everything still planned and close the plan.

        The first planned row becomes the payoff payment (``pending``,
        for the full remaining balance); the rest are ``cancelled``.
        """
        planned = cls._planned_rows(invoice_id)
        if not planned:
            raise ValueError("No planned installments remain on this plan")
        owner = from_json(planned[0]["staging_metadata"]).get("user_id")
        if user_id is not None and owner != user_id:
            raise NotFoundError(f"Payment plan {invoice_id} not found")
        remaining = sum(row["amount_paid"] for row in planned)

        user = UserService.get_user_row(owner)
        if not has_valid_payment_method(user):
            raise ValueError("A saved payment method is required for early payoff")
        intent = PaymentMethodService.charge_saved_card(
            user,
            remaining,
            "Payment plan early payoff",
            metadata={"purpose": "payment_plan", "userId": owner, "xeroInvoiceId": invoice_id, "earlyPayoff": "true"},
            idempotency_key=f"payoff-{invoice_id}-{planned[0]['id']}",
        )

        payoff = planned[0]
        try:
            payment_id = PaymentService.create_payment(owner, remaining, 0, remaining, intent["id"], status="completed")
            metadata = from_json(payoff["staging_metadata"])
            metadata.update({"payment_id": payment_id, "early_payoff": True, "processed_at": timestamp()})
            conn = get_connection()
            try:
                conn.execute(
                    "UPDATE xero_payments SET sync_status = 'pending', amount_paid = ?, reference = ?, "
                    "staging_metadata = ? WHERE id = ?",
                    (remaining, intent["id"], to_json(metadata), payoff["id"]),
                )
                conn.execute(
                    "UPDATE xero_payments SET sync_status = 'cancelled', failure_reason = 'Paid off early' "
                    "WHERE xero_invoice_id = ? AND sync_status = 'planned'",
                    (invoice_id,),
                )
                conn.commit()
            finally:
                conn.close()
        except Exception as e:
            logger.exception("Early payoff of invoice %s charged as %s but not recorded", invoice_id, intent["id"])
            await report_critical(
                f"Early payoff charged but not recorded: {e}",
                user_id=owner,
                object_type="xero_invoice",
                object_id=invoice_id,
                payment_intent_id=intent["id"],
                amount=remaining,
            )
            raise
        logger.info("Plan on invoice %s paid off early: %s cents", invoice_id, remaining)
        return ChargeResult(
            payment_id=payment_id,
            amount_charged=remaining,
            success=True,
            payment_intent_id=intent["id"],
            staging_id=invoice_id,
        )

    @classmethod
    async def cancel_plan(cls, invoice_id: int, reason: str = "Cancelled by administrator") -> int:
        conn = get_connection()
        try:
            count = conn.execute(
                "UPDATE xero_payments SET sync_status = 'cancelled', failure_reason = ? "
                "WHERE xero_invoice_id = ? AND sync_status = 'planned'",
                (f"Payment plan cancelled: {reason}", invoice_id),
            ).rowcount
            conn.commit()
        finally:
            conn.close()
        if not count:
            raise ValueError("No planned installments to cancel")
        logger.info("Cancelled %s planned installments on invoice %s", count, invoice_id)
        return count

    @classmethod
    async def user_plans(cls, user_id: Optional[int] = None) -> List[PaymentPlanSummary]:
        """Summaries of payment plans, for one member or (``None``) everyone."""
        query = "SELECT * FROM xero_invoices WHERE is_payment_plan = 1"
        params: tuple = ()
        if user_id is not None:
            query += " AND json_extract(staging_metadata, '$.user_id') = ?"
            params = (user_id,)
        query += " ORDER BY staged_at DESC"
        conn = get_connection()
        try:
            invoices = conn.execute(query, params).fetchall()
            summaries = []
            for invoice in invoices:
                installments = conn.execute(
                    "SELECT * FROM xero_payments WHERE xero_invoice_id = ? AND payment_type = 'installment' "
                    "ORDER BY installment_number",
                    (invoice["id"],),
                ).fetchall()
                metadata = from_json(invoice["staging_metadata"])
                registration = None
                if metadata.get("registration_id"):
                    registration = conn.execute(
                        "SELECT name FROM registrations WHERE id = ?", (metadata["registration_id"],)
                    ).fetchone()
                summaries.append(cls._summary(invoice, installments, registration["name"] if registration else None))
        finally:
            conn.close()
        return summaries

    @staticmethod
    def _summary(invoice: sqlite3.Row, installments: List[sqlite3.Row], registration_name: Optional[str]) -> PaymentPlanSummary:
        collected = [i for i in installments if i["sync_status"] in ("pending", "synced")]
        planned = [i for i in installments if i["sync_status"] in ("planned", "processing")]
        paid = sum(i["amount_paid"] for i in collected)
        if planned:
            status = "active"
        elif any(i["sync_status"] == "cancelled" for i in installments) and paid < invoice["net_amount"]:
            status = "cancelled"
        else:
            status = "completed"
        return PaymentPlanSummary(
            id=invoice["id"],
            registration_name=registration_name,
            total_amount=invoice["net_amount"],
            paid_amount=paid,
            remaining_balance=max(invoice["net_amount"] - paid, 0),
            installment_amount=installments[0]["amount_paid"] if installments else 0,
            installments_count=len(installments),
            installments_paid=len(collected),
            next_payment_date=min((i["planned_payment_date"] for i in planned), default=None),
            status=status,
            created_at=invoice["staged_at"],
        )

    @staticmethod
    def _planned_rows(invoice_id: int) -> List[sqlite3.Row]:
        conn = get_connection()
        try:
            return conn.execute(
                "SELECT * FROM xero_payments WHERE xero_invoice_id = ? AND sync_status = 'planned' "
                "ORDER BY installment_number",
                (invoice_id,),
            ).fetchall()
        finally:
            conn.close()
