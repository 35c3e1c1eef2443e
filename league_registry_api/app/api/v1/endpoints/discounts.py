"""
Discount endpoints for API v1.

Administrators manage discount categories (each with an accounting
code and an optional per-season cap) and the codes inside them.
Members validate a code against a registration before checkout.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, status

from league_registry_api.app.core.exceptions import SERVICE_ERRORS, http_error
from league_registry_api.app.core.security import get_current_user, require_roles
from league_registry_api.app.schemas.discount import (
    DiscountCategoryCreate,
    DiscountCategoryRead,
    DiscountCodeCreate,
    DiscountCodeRead,
    DiscountCodeUpdate,
    DiscountValidationRequest,
    DiscountValidationResult,
)
from league_registry_api.app.services.discount_service import DiscountService

router = APIRouter()


@router.post("/validate", response_model=DiscountValidationResult)
async def validate_code(
    request: DiscountValidationRequest, current_user: dict = Depends(get_current_user)
) -> DiscountValidationResult:
    try:
        season_id = DiscountService.season_for_registration(request.registration_id)
        return await DiscountService.validate_code(request.code, current_user["user_id"], season_id, request.amount)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.get("/categories", response_model=List[DiscountCategoryRead])
async def list_categories(current_user: dict = Depends(require_roles(1, 2))) -> List[DiscountCategoryRead]:
    return await DiscountService.list_categories()


@router.post("/categories", response_model=DiscountCategoryRead, status_code=status.HTTP_201_CREATED)
async def create_category(
    category: DiscountCategoryCreate, current_user: dict = Depends(require_roles(1, 2))
) -> DiscountCategoryRead:
    try:
        return await DiscountService.create_category(category)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.get("/codes", response_model=List[DiscountCodeRead])
async def list_codes(
    category_id: Optional[int] = Query(None), current_user: dict = Depends(require_roles(1, 2))
) -> List[DiscountCodeRead]:
    return await DiscountService.list_codes(category_id)


@router.post("/codes", response_model=DiscountCodeRead, status_code=status.HTTP_201_CREATED)
async def create_code(code: DiscountCodeCreate, current_user: dict = Depends(require_roles(1, 2))) -> DiscountCodeRead:
    try:
        return await DiscountService.create_code(code)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.get("/codes/{code_id}", response_model=DiscountCodeRead)
async def get_code(
    code_id: int = Path(..., description="Discount code ID"), current_user: dict = Depends(require_roles(1, 2))
) -> DiscountCodeRead:
    try:
        return await DiscountService.get_code(code_id)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.put("/codes/{code_id}", response_model=DiscountCodeRead)
async def update_code(
    code: DiscountCodeUpdate,
    code_id: int = Path(..., description="Discount code ID"),
    current_user: dict = Depends(require_roles(1, 2)),
) -> DiscountCodeRead:
    try:
        return await DiscountService.update_code(code_id, code)
    except SERVICE_ERRORS as e:
        raise http_error(e)
