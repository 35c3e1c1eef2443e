"""
Pydantic models for registrations and their categories.

A registration (team season, scrimmage or one‑off event) belongs to a
season and is sold through one or more categories, each with its own
price, optional capacity and accounting code.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


RegistrationType = Literal["team", "scrimmage", "event"]


class CategoryBase(BaseModel):
    name: str = Field(..., example="Skater")
    price: int = Field(0, ge=0, example=35000, description="Price in cents")
    max_capacity: Optional[int] = Field(None, ge=1, example=20, description="None means unlimited")
    accounting_code: Optional[str] = Field(None, example="410")
    required_membership_id: Optional[int] = Field(None, example=1)
    sort_order: int = Field(0, example=0)


class CategoryCreate(CategoryBase):
    pass


class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    price: Optional[int] = Field(None, ge=0)
    max_capacity: Optional[int] = Field(None, ge=1)
    accounting_code: Optional[str] = None
    required_membership_id: Optional[int] = None
    sort_order: Optional[int] = None


class CategoryRead(CategoryBase):
    id: int
    registration_id: int
    current_count: int = 0
    is_full: bool = False

    model_config = {
        "from_attributes": True,
    }


class RegistrationBase(BaseModel):
    season_id: int = Field(..., example=1)
    name: str = Field(..., example="Tuesday Night League")
    type: RegistrationType = Field("team", example="team")
    is_active: bool = Field(False, example=True)
    presale_start_at: Optional[datetime] = None
    regular_start_at: Optional[datetime] = None
    registration_end_at: Optional[datetime] = None
    presale_code: Optional[str] = Field(None, example="EARLYBIRD")
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    allow_alternates: bool = Field(False, example=True)
    alternate_price: Optional[int] = Field(None, ge=0, example=2500)
    alternate_accounting_code: Optional[str] = Field(None, example="411")


class RegistrationCreate(RegistrationBase):
    categories: List[CategoryCreate] = Field(default_factory=list)


class RegistrationUpdate(BaseModel):
    name: Optional[str] = None
    type: Optional[RegistrationType] = None
    is_active: Optional[bool] = None
    presale_start_at: Optional[datetime] = None
    regular_start_at: Optional[datetime] = None
    registration_end_at: Optional[datetime] = None
    presale_code: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    allow_alternates: Optional[bool] = None
    alternate_price: Optional[int] = Field(None, ge=0)
    alternate_accounting_code: Optional[str] = None


class RegistrationRead(RegistrationBase):
    id: int
    status: str = Field("draft", description="draft, past, expired, coming_soon, presale or open")
    categories: List[CategoryRead] = Field(default_factory=list)

    model_config = {
        "from_attributes": True,
    }


class UserRegistrationRead(BaseModel):
    id: int
    user_id: int
    registration_id: int
    registration_category_id: Optional[int] = None
    payment_status: str
    processing_expires_at: Optional[datetime] = None
    registration_fee: int = 0
    amount_paid: int = 0
    payment_id: Optional[int] = None
    registered_at: Optional[datetime] = None

    model_config = {
        "from_attributes": True,
    }


class DuplicateCheck(BaseModel):
    is_registered: bool
    has_active_hold: bool
    expires_at: Optional[datetime] = None
