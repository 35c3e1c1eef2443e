"""
User endpoints for API v1.

Registration, login and the current member's profile, plus saved card
management.  Listing users and changing roles is restricted to
administrators.
"""

from typing import List

from fastapi import APIRouter, Body, Depends, HTTPException, Path, Query, status

from league_registry_api.app.core.exceptions import SERVICE_ERRORS, http_error
from league_registry_api.app.core.security import create_access_token, get_current_user, require_roles
from league_registry_api.app.schemas.membership import UserMembershipRead
from league_registry_api.app.schemas.registration import UserRegistrationRead
from league_registry_api.app.schemas.user import SetupIntentResponse, TokenResponse, UserCreate, UserLogin, UserRead
from league_registry_api.app.services.membership_service import MembershipService
from league_registry_api.app.services.payment_method_service import PaymentMethodService
from league_registry_api.app.services.registration_service import RegistrationService
from league_registry_api.app.services.user_service import UserService

router = APIRouter()


@router.post("/register", response_model=UserRead, status_code=status.HTTP_201_CREATED)
async def register_user(user: UserCreate) -> UserRead:
    """Create an account.  The very first account becomes the super administrator."""
    try:
        return await UserService.create_user(user)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/login", response_model=TokenResponse)
async def login_user(credentials: UserLogin) -> TokenResponse:
    user = await UserService.authenticate(credentials.email, credentials.password)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect email or password")
    return TokenResponse(access_token=create_access_token({"sub": user.email}))


@router.get("/me", response_model=UserRead)
async def read_me(current_user: dict = Depends(get_current_user)) -> UserRead:
    try:
        return await UserService.get_user(current_user["user_id"])
    except LookupError as e:
        raise http_error(e)


@router.get("/me/registrations", response_model=List[UserRegistrationRead])
async def my_registrations(current_user: dict = Depends(get_current_user)) -> List[UserRegistrationRead]:
    return await RegistrationService.list_user_registrations(current_user["user_id"])


@router.get("/me/memberships", response_model=List[UserMembershipRead])
async def my_memberships(current_user: dict = Depends(get_current_user)) -> List[UserMembershipRead]:
    return await MembershipService.list_user_memberships(current_user["user_id"])


@router.post("/me/setup-intent", response_model=SetupIntentResponse)
async def create_setup_intent(current_user: dict = Depends(get_current_user)) -> SetupIntentResponse:
    """Start saving a card for waitlist, alternate and payment plan charges."""
    try:
        return await PaymentMethodService.create_setup_intent(current_user["user_id"])
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.delete("/me/payment-method", status_code=status.HTTP_204_NO_CONTENT)
async def remove_payment_method(current_user: dict = Depends(get_current_user)) -> None:
    try:
        await PaymentMethodService.remove_payment_method(current_user["user_id"])
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.get("/", response_model=List[UserRead])
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(require_roles(1, 2)),
) -> List[UserRead]:
    return await UserService.list_users(limit=limit, offset=offset)


@router.put("/{user_id}/role", response_model=UserRead)
async def set_user_role(
    user_id: int = Path(..., description="User ID"),
    role_id: int = Body(..., embed=True, ge=1, le=3),
    current_user: dict = Depends(require_roles(1)),
) -> UserRead:
    try:
        return await UserService.set_role(user_id, role_id, current_user.get("user_id"))
    except (ValueError, LookupError) as e:
        raise http_error(e)
