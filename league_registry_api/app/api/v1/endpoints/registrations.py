"""
Registration endpoints for API v1.

Anyone can browse published registrations; presale codes are only
shown to administrators.  Members check for an existing registration
and start a checkout here; the checkout response carries the Stripe
client secret and the reservation expiry.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, status

from league_registry_api.app.core.exceptions import SERVICE_ERRORS, http_error
from league_registry_api.app.core.security import get_current_user, require_roles
from league_registry_api.app.schemas.payment import CheckoutResponse, RegistrationCheckout
from league_registry_api.app.schemas.registration import (
    CategoryCreate,
    CategoryRead,
    CategoryUpdate,
    DuplicateCheck,
    RegistrationCreate,
    RegistrationRead,
    RegistrationUpdate,
)
from league_registry_api.app.services.checkout_service import CheckoutService
from league_registry_api.app.services.registration_service import RegistrationService
from league_registry_api.app.services.reservation_service import ReservationService

router = APIRouter()


def _public(registration: RegistrationRead) -> RegistrationRead:
    return registration.model_copy(update={"presale_code": None})


@router.get("/", response_model=List[RegistrationRead])
async def list_registrations(season_id: Optional[int] = Query(None)) -> List[RegistrationRead]:
    """List published registrations, optionally for a single season."""
    return [_public(r) for r in await RegistrationService.list_registrations(season_id=season_id)]


@router.get("/admin", response_model=List[RegistrationRead])
async def list_all_registrations(
    season_id: Optional[int] = Query(None), current_user: dict = Depends(require_roles(1, 2))
) -> List[RegistrationRead]:
    """List every registration including drafts, with presale codes."""
    return await RegistrationService.list_registrations(season_id=season_id, include_drafts=True)


@router.post("/", response_model=RegistrationRead, status_code=status.HTTP_201_CREATED)
async def create_registration(
    registration: RegistrationCreate, current_user: dict = Depends(require_roles(1, 2))
) -> RegistrationRead:
    try:
        return await RegistrationService.create_registration(registration, current_user)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.post("/checkout", response_model=CheckoutResponse)
async def checkout(data: RegistrationCheckout, current_user: dict = Depends(get_current_user)) -> CheckoutResponse:
    """Reserve a spot and create the payment intent for it.

    A full category answers 400 with ``shouldShowWaitlist``; a member
    with a checkout already in progress gets 409.
    """
    try:
        return await CheckoutService.create_registration_payment_intent(current_user["user_id"], data)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.get("/{registration_id}", response_model=RegistrationRead)
async def get_registration(registration_id: int = Path(..., description="Registration ID")) -> RegistrationRead:
    try:
        return _public(await RegistrationService.get_registration(registration_id))
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.get("/{registration_id}/duplicate-check", response_model=DuplicateCheck)
async def duplicate_check(
    registration_id: int = Path(..., description="Registration ID"),
    current_user: dict = Depends(get_current_user),
) -> DuplicateCheck:
    return ReservationService.check_duplicate(current_user["user_id"], registration_id)


@router.put("/{registration_id}", response_model=RegistrationRead)
async def update_registration(
    registration: RegistrationUpdate,
    registration_id: int = Path(..., description="Registration ID"),
    current_user: dict = Depends(require_roles(1, 2)),
) -> RegistrationRead:
    try:
        return await RegistrationService.update_registration(registration_id, registration)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.delete("/{registration_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_registration(
    registration_id: int = Path(..., description="Registration ID"),
    current_user: dict = Depends(require_roles(1, 2)),
) -> None:
    try:
        await RegistrationService.delete_registration(registration_id)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.post("/{registration_id}/categories", response_model=CategoryRead, status_code=status.HTTP_201_CREATED)
async def add_category(
    category: CategoryCreate,
    registration_id: int = Path(..., description="Registration ID"),
    current_user: dict = Depends(require_roles(1, 2)),
) -> CategoryRead:
    try:
        return await RegistrationService.add_category(registration_id, category)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.put("/{registration_id}/categories/{category_id}", response_model=CategoryRead)
async def update_category(
    category: CategoryUpdate,
    registration_id: int = Path(..., description="Registration ID"),
    category_id: int = Path(..., description="Category ID"),
    current_user: dict = Depends(require_roles(1, 2)),
) -> CategoryRead:
    try:
        return await RegistrationService.update_category(registration_id, category_id, category)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.delete("/{registration_id}/categories/{category_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_category(
    registration_id: int = Path(..., description="Registration ID"),
    category_id: int = Path(..., description="Category ID"),
    current_user: dict = Depends(require_roles(1, 2)),
) -> None:
    try:
        await RegistrationService.delete_category(registration_id, category_id)
    except SERVICE_ERRORS as e:
        raise http_error(e)
