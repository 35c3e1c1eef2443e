"""
Membership endpoints for API v1.

Membership types are managed by administrators.  Members buy a
membership for a number of months through ``POST /memberships/purchase``,
which returns a Stripe client secret (or completes immediately when
the purchase is free).
"""

from typing import List

from fastapi import APIRouter, Depends, Path, Query, status

from league_registry_api.app.core.exceptions import SERVICE_ERRORS, http_error
from league_registry_api.app.core.security import get_current_user, require_roles
from league_registry_api.app.schemas.membership import (
    MembershipCoverage,
    MembershipCreate,
    MembershipPurchaseRequest,
    MembershipRead,
    MembershipUpdate,
)
from league_registry_api.app.schemas.payment import CheckoutResponse
from league_registry_api.app.services.membership_service import MembershipService
from league_registry_api.app.services.season_service import SeasonService

router = APIRouter()


@router.get("/", response_model=List[MembershipRead])
async def list_memberships() -> List[MembershipRead]:
    return await MembershipService.list_memberships()


@router.post("/", response_model=MembershipRead, status_code=status.HTTP_201_CREATED)
async def create_membership(
    membership: MembershipCreate, current_user: dict = Depends(require_roles(1, 2))
) -> MembershipRead:
    try:
        return await MembershipService.create_membership(membership)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.post("/purchase", response_model=CheckoutResponse)
async def purchase_membership(
    purchase: MembershipPurchaseRequest, current_user: dict = Depends(get_current_user)
) -> CheckoutResponse:
    try:
        return await MembershipService.create_membership_payment_intent(
            current_user["user_id"], purchase.membership_id, purchase.months
        )
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.get("/{membership_id}/coverage", response_model=MembershipCoverage)
async def check_coverage(
    membership_id: int = Path(..., description="Membership ID"),
    season_id: int = Query(..., description="Season the membership must cover"),
    current_user: dict = Depends(get_current_user),
) -> MembershipCoverage:
    """Does the current member hold this membership through the end of the season?"""
    try:
        season = await SeasonService.get_season(season_id)
        return MembershipService.validate_membership_coverage(membership_id, current_user["user_id"], season.end_date)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.get("/{membership_id}", response_model=MembershipRead)
async def get_membership(membership_id: int = Path(..., description="Membership ID")) -> MembershipRead:
    try:
        return await MembershipService.get_membership(membership_id)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.put("/{membership_id}", response_model=MembershipRead)
async def update_membership(
    membership: MembershipUpdate,
    membership_id: int = Path(..., description="Membership ID"),
    current_user: dict = Depends(require_roles(1, 2)),
) -> MembershipRead:
    try:
        return await MembershipService.update_membership(membership_id, membership)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.delete("/{membership_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_membership(
    membership_id: int = Path(..., description="Membership ID"),
    current_user: dict = Depends(require_roles(1, 2)),
) -> None:
    try:
        await MembershipService.delete_membership(membership_id)
    except SERVICE_ERRORS as e:
        raise http_error(e)
