"""
Waitlist endpoints for API v1.

Members join the waitlist of a full category and can leave it again.
Administrators list a category's queue and select entries, which
charges the member's saved card.
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Path, status

from league_registry_api.app.core.exceptions import SERVICE_ERRORS, http_error
from league_registry_api.app.core.security import ADMIN_ROLES, get_current_user, require_roles
from league_registry_api.app.schemas.waitlist import ChargeResult, WaitlistEntryRead, WaitlistJoin, WaitlistSelect
from league_registry_api.app.services.waitlist_service import WaitlistService

router = APIRouter()


@router.post("/", response_model=WaitlistEntryRead, status_code=status.HTTP_201_CREATED)
async def join_waitlist(data: WaitlistJoin, current_user: dict = Depends(get_current_user)) -> WaitlistEntryRead:
    try:
        return await WaitlistService.join(current_user["user_id"], data)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.get("/mine", response_model=List[WaitlistEntryRead])
async def my_entries(current_user: dict = Depends(get_current_user)) -> List[WaitlistEntryRead]:
    return await WaitlistService.list_user_entries(current_user["user_id"])


@router.get("/categories/{category_id}", response_model=List[WaitlistEntryRead])
async def list_waitlist(
    category_id: int = Path(..., description="Registration category ID"),
    current_user: dict = Depends(require_roles(1, 2)),
) -> List[WaitlistEntryRead]:
    return await WaitlistService.list_waitlist(category_id)


@router.get("/{entry_id}/position")
async def get_position(
    entry_id: int = Path(..., description="Waitlist entry ID"),
    current_user: dict = Depends(get_current_user),
) -> Dict[str, Any]:
    try:
        entry = WaitlistService.get_entry_row(entry_id)
        if entry["user_id"] != current_user["user_id"] and current_user.get("role_id") not in ADMIN_ROLES:
            raise LookupError(f"Waitlist entry {entry_id} not found")
        return {"entry_id": entry_id, "position": await WaitlistService.get_position(entry_id)}
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.delete("/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
async def leave_waitlist(
    entry_id: int = Path(..., description="Waitlist entry ID"),
    current_user: dict = Depends(get_current_user),
) -> None:
    try:
        await WaitlistService.leave(
            current_user["user_id"], entry_id, is_admin=current_user.get("role_id") in ADMIN_ROLES
        )
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.post("/{entry_id}/select", response_model=ChargeResult)
async def select_entry(
    data: WaitlistSelect,
    entry_id: int = Path(..., description="Waitlist entry ID"),
    current_user: dict = Depends(require_roles(1, 2)),
) -> ChargeResult:
    try:
        return await WaitlistService.select_from_waitlist(
            entry_id, override_price=data.override_price, selected_by=current_user.get("user_id")
        )
    except SERVICE_ERRORS as e:
        raise http_error(e)
