"""
Pydantic models for membership types and purchased memberships.

Prices are integer cents.  ``price_annual`` may not exceed twelve
months at the monthly price.
"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class MembershipBase(BaseModel):
    name: str = Field(..., example="Adult Membership")
    description: Optional[str] = Field(None, example="Required for all adult league play")
    price_monthly: int = Field(..., ge=0, example=1500)
    price_annual: int = Field(..., ge=0, example=15000)
    accounting_code: Optional[str] = Field(None, example="400")
    allow_discounts: bool = Field(True, example=True)


class MembershipCreate(MembershipBase):
    @model_validator(mode="after")
    def check_annual_price(self) -> "MembershipCreate":
        if self.price_annual > self.price_monthly * 12:
            raise ValueError("price_annual cannot exceed 12 months of price_monthly")
        return self


class MembershipUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price_monthly: Optional[int] = Field(None, ge=0)
    price_annual: Optional[int] = Field(None, ge=0)
    accounting_code: Optional[str] = None
    allow_discounts: Optional[bool] = None


class MembershipRead(MembershipBase):
    id: int

    model_config = {
        "from_attributes": True,
    }


class MembershipPurchaseRequest(BaseModel):
    membership_id: int = Field(..., example=1)
    months: int = Field(..., ge=1, le=12, example=12)


class UserMembershipRead(BaseModel):
    id: int
    user_id: int
    membership_id: int
    membership_name: Optional[str] = None
    valid_from: date
    valid_until: date
    months_purchased: int
    payment_status: str
    amount_paid: int
    stripe_payment_intent_id: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {
        "from_attributes": True,
    }


class MembershipCoverage(BaseModel):
    """Result of checking a membership against a season's end date."""

    is_valid: bool
    membership_name: Optional[str] = None
    valid_until: Optional[date] = None
    season_end_date: Optional[date] = None
    months_needed: Optional[int] = None
    days_short: Optional[int] = None
    message: str = ""
