"""
Registration checkout.

``create_registration_payment_intent`` is the entry point of the
payment pipeline.  It checks that the member may register, works out
the price after discounts, holds a spot, stages the accounting record
and only then asks Stripe for a PaymentIntent.  The order matters:
every charge Stripe can confirm already has a staging record
(``metadata.xero_staging_record_id``) for the webhook to complete.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from league_registry_api.app.core.db import get_connection
from league_registry_api.app.core.exceptions import NotFoundError
from league_registry_api.app.schemas.payment import CheckoutResponse, RegistrationCheckout
from league_registry_api.app.services.discount_service import DiscountService
from league_registry_api.app.services.membership_service import MembershipService
from league_registry_api.app.services.payment_completion import (
    USER_REGISTRATIONS,
    CompletionEvent,
    PaymentCompletionProcessor,
)
from league_registry_api.app.services.payment_plan_service import PaymentPlanService, installment_amounts
from league_registry_api.app.services.payment_service import PaymentService
from league_registry_api.app.services.registration_service import RegistrationService, is_registration_available
from league_registry_api.app.services.reservation_service import ReservationService
from league_registry_api.app.services.stripe_gateway import StripeGateway
from league_registry_api.app.services.user_service import UserService
from league_registry_api.app.services.xero_staging_service import StagingLine, StagingRequest, XeroStagingService

logger = logging.getLogger(__name__)


def registration_lines(
    description: str,
    category: Dict[str, Any],
    price: int,
    discount_amount: int = 0,
    code: Optional[Dict[str, Any]] = None,
    item_type: str = "registration",
    accounting_code: Optional[str] = None,
) -> List[StagingLine]:
    """Registration line plus, when discounted, a negative line on the discount category's account."""
    lines = [
        StagingLine(
            item_type,
            price,
            description,
            accounting_code or category["accounting_code"],
            item_id=category["id"],
        )
    ]
    if discount_amount > 0 and code is not None:
        if not code["category_accounting_code"]:
            raise ValueError(f"Discount category '{code['category_name']}' has no accounting code configured")
        lines.append(
            StagingLine(
                "discount",
                -discount_amount,
                f"Discount - {code['code']} ({code['percentage']}%)",
                code["category_accounting_code"],
                discount_code_id=code["id"],
            )
        )
    return lines


class CheckoutService:
    """Build registration checkouts."""

    @classmethod
    async def create_registration_payment_intent(cls, user_id: int, data: RegistrationCheckout) -> CheckoutResponse:
        registration = RegistrationService.get_registration_row(data.registration_id)
        category = RegistrationService.get_category_row(data.category_id, data.registration_id)
        user = UserService.get_user_row(user_id)

        if not is_registration_available(registration, data.presale_code):
            raise ValueError("Registration is not currently available")
        duplicate = ReservationService.check_duplicate(user_id, registration["id"])
        if duplicate.is_registered:
            raise ValueError("You are already registered for this registration")

        season = cls._season(registration["season_id"])
        if category["required_membership_id"]:
            coverage = MembershipService.validate_membership_coverage(
                category["required_membership_id"], user_id, season["end_date"]
            )
            if not coverage.is_valid:
                raise ValueError(coverage.message)

        price = category["price"]
        discount_amount = 0
        code = None
        if data.discount_code:
            validation = await DiscountService.validate_code(data.discount_code, user_id, season["id"], price)
            if not validation.is_valid:
                raise ValueError(validation.message)
            discount_amount = validation.discount_amount
            code = DiscountService.get_code_row(validation.discount_code_id)
        final_amount = price - discount_amount

        if data.use_payment_plan:
            if final_amount <= 0:
                raise ValueError("Free registrations cannot use a payment plan")
            if not PaymentPlanService.can_create(user):
                raise ValueError("A saved payment method is required for payment plans")

        reservation = ReservationService.reserve(
            user_id,
            registration["id"],
            category["id"],
            registration_fee=price,
            amount=final_amount,
            presale_code=data.presale_code,
            max_capacity=category["max_capacity"],
        )
        try:
            description = f"{registration['name']} - {category['name']}"
            staging = XeroStagingService.create_immediate_staging(
                StagingRequest(
                    user_id=user_id,
                    total_amount=price,
                    discount_amount=discount_amount,
                    final_amount=final_amount,
                    lines=registration_lines(description, category, price, discount_amount, code),
                    metadata={
                        "purpose": "registration",
                        "registration_id": registration["id"],
                        "category_id": category["id"],
                        "reservation_id": reservation["id"],
                    },
                ),
                is_free=final_amount == 0,
            )
            if final_amount == 0:
                return await cls._complete_free(user_id, registration, reservation, staging, price, discount_amount, code)

            metadata = {
                "purpose": "registration",
                "userId": user_id,
                "registrationId": registration["id"],
                "categoryId": category["id"],
                "seasonId": season["id"],
                "reservationId": reservation["id"],
                "originalAmount": price,
                "discountAmount": discount_amount,
                "discountCode": code["code"] if code else None,
                "discountCodeId": code["id"] if code else None,
                "discountCategoryId": code["discount_category_id"] if code else None,
                "xero_staging_record_id": staging["id"],
            }
            charge_amount = final_amount
            if data.use_payment_plan:
                charge_amount = installment_amounts(final_amount)[0]
                metadata["paymentPlan"] = "true"
                metadata["planTotal"] = final_amount
                XeroStagingService.mark_payment_plan(staging["id"])

            customer = UserService.ensure_stripe_customer(user)
            intent = StripeGateway.create_payment_intent(
                amount=charge_amount,
                description=description,
                receipt_email=user["email"],
                customer=customer,
                metadata=metadata,
                idempotency_key=f"reservation-{reservation['id']}",
            )
            if data.use_payment_plan:
                payment_id = PaymentService.create_payment(user_id, charge_amount, 0, charge_amount, intent["id"])
            else:
                payment_id = PaymentService.create_payment(user_id, price, discount_amount, final_amount, intent["id"])
            ReservationService.attach_payment_intent(reservation["id"], intent["id"], payment_id)
            XeroStagingService.merge_metadata(staging["id"], {"stripe_payment_intent_id": intent["id"]}, payment_id)
        except Exception:
            logger.exception("Checkout for user %s failed after reserving spot %s", user_id, reservation["id"])
            ReservationService.release(reservation["id"])
            raise

        return CheckoutResponse(
            payment_id=payment_id,
            payment_intent_id=intent["id"],
            client_secret=intent["client_secret"],
            reservation_id=reservation["id"],
            reservation_expires_at=reservation["processing_expires_at"],
            staging_id=staging["id"],
            original_amount=price,
            discount_amount=discount_amount,
            final_amount=charge_amount,
        )

    @classmethod
    async def _complete_free(
        cls,
        user_id: int,
        registration: Dict[str, Any],
        reservation: Dict[str, Any],
        staging: Dict[str, Any],
        price: int,
        discount_amount: int,
        code: Optional[Dict[str, Any]],
    ) -> CheckoutResponse:
        payment_id = PaymentService.create_payment(
            user_id, price, discount_amount, 0, status="completed", payment_method="free"
        )
        ReservationService.mark_paid(reservation["id"], payment_id, 0)
        await PaymentCompletionProcessor.process(
            CompletionEvent(
                event_type=USER_REGISTRATIONS,
                user_id=user_id,
                record_id=reservation["id"],
                payment_id=payment_id,
                amount=0,
                trigger_source="free_registration",
                metadata={
                    "xero_staging_record_id": staging["id"],
                    "registrationId": registration["id"],
                    "discountCodeId": code["id"] if code else None,
                    "discountAmount": discount_amount,
                },
            )
        )
        logger.info("Free registration %s completed for user %s", reservation["id"], user_id)
        return CheckoutResponse(
            payment_id=payment_id,
            reservation_id=reservation["id"],
            staging_id=staging["id"],
            original_amount=price,
            discount_amount=discount_amount,
            final_amount=0,
            is_free=True,
            message="Registration complete",
        )

    @staticmethod
    def _season(season_id: int) -> Dict[str, Any]:
        conn = get_connection()
        try:
            row = conn.execute("SELECT * FROM seasons WHERE id = ?", (season_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError(f"Season {season_id} not found")
        season = dict(row)
        season["end_date"] = date.fromisoformat(str(row["end_date"])[:10])
        return season
