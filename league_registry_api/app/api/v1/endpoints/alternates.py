"""
Alternate player endpoints for API v1.

Members sign up as alternates for a registration.  Captains of that
registration, and administrators, create games and select alternates
for them.
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Path, status

from league_registry_api.app.core.exceptions import SERVICE_ERRORS, http_error
from league_registry_api.app.core.security import ADMIN_ROLES, get_current_user, require_roles
from league_registry_api.app.schemas.alternate import (
    AlternateRead,
    AlternateSelectRequest,
    AlternateSelectResult,
    AlternateSignup,
    CaptainAssign,
    GameCreate,
    GameRead,
)
from league_registry_api.app.services.alternate_service import AlternateService

router = APIRouter()


def _require_captain(registration_id: int, current_user: dict) -> None:
    if current_user.get("role_id") in ADMIN_ROLES:
        return
    if not AlternateService.is_captain(registration_id, current_user["user_id"]):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only captains can manage alternates")


@router.post("/{registration_id}/signup", response_model=AlternateRead, status_code=status.HTTP_201_CREATED)
async def sign_up(
    data: AlternateSignup,
    registration_id: int = Path(..., description="Registration ID"),
    current_user: dict = Depends(get_current_user),
) -> AlternateRead:
    try:
        return await AlternateService.register_as_alternate(current_user["user_id"], registration_id, data.discount_code)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.delete("/{registration_id}/signup", status_code=status.HTTP_204_NO_CONTENT)
async def leave(
    registration_id: int = Path(..., description="Registration ID"),
    current_user: dict = Depends(get_current_user),
) -> None:
    try:
        await AlternateService.leave(current_user["user_id"], registration_id)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.get("/{registration_id}", response_model=List[AlternateRead])
async def list_alternates(
    registration_id: int = Path(..., description="Registration ID"),
    current_user: dict = Depends(get_current_user),
) -> List[AlternateRead]:
    _require_captain(registration_id, current_user)
    return await AlternateService.list_alternates(registration_id)


@router.post("/{registration_id}/captains", status_code=status.HTTP_204_NO_CONTENT)
async def add_captain(
    data: CaptainAssign,
    registration_id: int = Path(..., description="Registration ID"),
    current_user: dict = Depends(require_roles(1, 2)),
) -> None:
    try:
        await AlternateService.add_captain(registration_id, data.user_id)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.delete("/{registration_id}/captains/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_captain(
    registration_id: int = Path(..., description="Registration ID"),
    user_id: int = Path(..., description="User ID"),
    current_user: dict = Depends(require_roles(1, 2)),
) -> None:
    await AlternateService.remove_captain(registration_id, user_id)


@router.get("/{registration_id}/games", response_model=List[GameRead])
async def list_games(
    registration_id: int = Path(..., description="Registration ID"),
    current_user: dict = Depends(get_current_user),
) -> List[GameRead]:
    return await AlternateService.list_games(registration_id)


@router.post("/{registration_id}/games", response_model=GameRead, status_code=status.HTTP_201_CREATED)
async def create_game(
    data: GameCreate,
    registration_id: int = Path(..., description="Registration ID"),
    current_user: dict = Depends(get_current_user),
) -> GameRead:
    _require_captain(registration_id, current_user)
    try:
        return await AlternateService.create_game(registration_id, data, current_user.get("user_id"))
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.post("/games/{game_id}/select", response_model=AlternateSelectResult)
async def select_alternates(
    data: AlternateSelectRequest,
    game_id: int = Path(..., description="Game ID"),
    current_user: dict = Depends(get_current_user),
) -> AlternateSelectResult:
    """Charge and confirm the chosen alternates; per-member failures are listed in the result."""
    try:
        game = AlternateService.get_game(game_id)
    except SERVICE_ERRORS as e:
        raise http_error(e)
    _require_captain(game.registration_id, current_user)
    try:
        return await AlternateService.select_alternates(game_id, data.user_ids, current_user.get("user_id"))
    except SERVICE_ERRORS as e:
        raise http_error(e)
