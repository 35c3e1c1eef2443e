"""
Settings endpoints for API v1.

Runtime-editable business settings such as ``stripe_bank_account``.
Each setting is stored as a key/value pair with a type used to
deserialize it.  Only administrators may read or change settings.
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, status

from league_registry_api.app.core.security import require_roles
from league_registry_api.app.services.settings_service import SettingsService

router = APIRouter()


@router.get("/", response_model=List[Dict[str, Any]])
async def list_settings(current_user: dict = Depends(require_roles(1, 2))) -> List[Dict[str, Any]]:
    return await SettingsService.list_settings()


@router.get("/{key}", response_model=Dict[str, Any])
async def get_setting(key: str, current_user: dict = Depends(require_roles(1, 2))) -> Dict[str, Any]:
    setting = await SettingsService.get_setting(key)
    if not setting:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Setting not found")
    return setting


@router.post("/{key}", response_model=Dict[str, Any])
async def upsert_setting(
    key: str, body: Dict[str, Any], current_user: dict = Depends(require_roles(1, 2))
) -> Dict[str, Any]:
    """Insert or update a setting.

    The body must include ``value`` and ``type``; supported types are
    ``string``, ``int``, ``float`` and ``bool``.
    """
    if "value" not in body or "type" not in body:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Body must include 'value' and 'type'")
    try:
        return await SettingsService.upsert_setting(key, body["value"], body["type"], current_user.get("user_id"))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.delete("/{key}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_setting(key: str, current_user: dict = Depends(require_roles(1))) -> None:
    await SettingsService.delete_setting(key)
