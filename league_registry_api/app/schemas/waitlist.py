"""Pydantic models for waitlist entries and selections."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class WaitlistJoin(BaseModel):
    registration_id: int = Field(..., example=1)
    category_id: int = Field(..., example=1)
    discount_code: Optional[str] = Field(None, example="PRIDE25")


class WaitlistEntryRead(BaseModel):
    id: int
    user_id: int
    registration_id: int
    registration_category_id: int
    position: int
    discount_code_id: Optional[int] = None
    removed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = {
        "from_attributes": True,
    }


class WaitlistSelect(BaseModel):
    override_price: Optional[int] = Field(None, ge=0, description="Charge this many cents instead of the category price")


class ChargeResult(BaseModel):
    payment_id: int
    amount_charged: int
    success: bool
    payment_intent_id: Optional[str] = None
    staging_id: Optional[int] = None
