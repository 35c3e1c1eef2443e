"""
Pydantic models for discount categories, codes and validation results.

A category groups codes under one accounting code and an optional cap
on the total a user may save per season.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class DiscountCategoryBase(BaseModel):
    name: str = Field(..., example="Scholarship")
    accounting_code: Optional[str] = Field(None, example="420")
    max_discount_per_user_per_season: Optional[int] = Field(None, example=50000, description="Cents; None means no cap")
    is_active: bool = True


class DiscountCategoryCreate(DiscountCategoryBase):
    pass


class DiscountCategoryRead(DiscountCategoryBase):
    id: int

    model_config = {
        "from_attributes": True,
    }


class DiscountCodeBase(BaseModel):
    discount_category_id: int = Field(..., example=1)
    code: str = Field(..., min_length=2, example="PRIDE25")
    percentage: int = Field(..., ge=1, le=100, example=25)
    is_active: bool = True
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=1, description="Uses per user")


class DiscountCodeCreate(DiscountCodeBase):
    pass


class DiscountCodeUpdate(BaseModel):
    percentage: Optional[int] = Field(None, ge=1, le=100)
    is_active: Optional[bool] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=1)


class DiscountCodeRead(DiscountCodeBase):
    id: int
    category_name: Optional[str] = None
    category_accounting_code: Optional[str] = None

    model_config = {
        "from_attributes": True,
    }


class DiscountValidationRequest(BaseModel):
    code: str = Field(..., example="PRIDE25")
    registration_id: int = Field(..., example=1)
    amount: int = Field(..., ge=0, example=35000)


class SeasonalLimitResult(BaseModel):
    final_amount: int
    is_partial_discount: bool = False
    seasonal_usage: int = 0
    season_cap: Optional[int] = None
    message: Optional[str] = None


class DiscountValidationResult(BaseModel):
    is_valid: bool
    discount_code_id: Optional[int] = None
    discount_category_id: Optional[int] = None
    percentage: Optional[int] = None
    discount_amount: int = 0
    final_amount: int = 0
    is_partial_discount: bool = False
    message: Optional[str] = None
