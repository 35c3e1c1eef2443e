"""Season endpoints for API v1.  Reading is public, changes need an administrator."""

from typing import List

from fastapi import APIRouter, Depends, Path, Query, status

from league_registry_api.app.core.exceptions import SERVICE_ERRORS, http_error
from league_registry_api.app.core.security import require_roles
from league_registry_api.app.schemas.season import SeasonCreate, SeasonRead, SeasonUpdate
from league_registry_api.app.services.season_service import SeasonService

router = APIRouter()


@router.get("/", response_model=List[SeasonRead])
async def list_seasons(active_only: bool = Query(False)) -> List[SeasonRead]:
    return await SeasonService.list_seasons(active_only=active_only)


@router.post("/", response_model=SeasonRead, status_code=status.HTTP_201_CREATED)
async def create_season(season: SeasonCreate, current_user: dict = Depends(require_roles(1, 2))) -> SeasonRead:
    try:
        return await SeasonService.create_season(season, current_user)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.get("/{season_id}", response_model=SeasonRead)
async def get_season(season_id: int = Path(..., description="Season ID")) -> SeasonRead:
    try:
        return await SeasonService.get_season(season_id)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.put("/{season_id}", response_model=SeasonRead)
async def update_season(
    season: SeasonUpdate,
    season_id: int = Path(..., description="Season ID"),
    current_user: dict = Depends(require_roles(1, 2)),
) -> SeasonRead:
    try:
        return await SeasonService.update_season(season_id, season)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.delete("/{season_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_season(
    season_id: int = Path(..., description="Season ID"),
    current_user: dict = Depends(require_roles(1, 2)),
) -> None:
    try:
        await SeasonService.delete_season(season_id)
    except SERVICE_ERRORS as e:
        raise http_error(e)
