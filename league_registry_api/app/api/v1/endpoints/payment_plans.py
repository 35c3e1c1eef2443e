"""
Payment plan endpoints for API v1.

Plans are created at checkout (``use_payment_plan``).  Members list
their plans and can pay off the remaining balance early; administrators
see every plan and can cancel the outstanding installments.
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Body, Depends, Path

from league_registry_api.app.core.exceptions import SERVICE_ERRORS, http_error
from league_registry_api.app.core.security import get_current_user, require_roles
from league_registry_api.app.schemas.payment_plan import PaymentPlanSummary
from league_registry_api.app.schemas.waitlist import ChargeResult
from league_registry_api.app.services.payment_plan_service import PaymentPlanService

router = APIRouter()


@router.get("/mine", response_model=List[PaymentPlanSummary])
async def my_plans(current_user: dict = Depends(get_current_user)) -> List[PaymentPlanSummary]:
    return await PaymentPlanService.user_plans(current_user["user_id"])


@router.post("/{plan_id}/payoff", response_model=ChargeResult)
async def pay_off(
    plan_id: int = Path(..., description="Payment plan (invoice) ID"),
    current_user: dict = Depends(get_current_user),
) -> ChargeResult:
    try:
        return await PaymentPlanService.early_payoff(plan_id, user_id=current_user["user_id"])
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.get("/", response_model=List[PaymentPlanSummary])
async def list_plans(current_user: dict = Depends(require_roles(1, 2))) -> List[PaymentPlanSummary]:
    return await PaymentPlanService.user_plans()


@router.post("/{plan_id}/cancel")
async def cancel_plan(
    plan_id: int = Path(..., description="Payment plan (invoice) ID"),
    reason: str = Body("Cancelled by administrator", embed=True),
    current_user: dict = Depends(require_roles(1, 2)),
) -> Dict[str, Any]:
    try:
        cancelled = await PaymentPlanService.cancel_plan(plan_id, reason)
    except SERVICE_ERRORS as e:
        raise http_error(e)
    return {"plan_id": plan_id, "cancelled_installments": cancelled}
