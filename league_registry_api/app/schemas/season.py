"""
Pydantic models for seasons.

A season is the time frame registrations belong to and the window a
membership must cover.
"""

from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator


SeasonType = Literal["fall_winter", "spring_summer"]


class SeasonBase(BaseModel):
    name: str = Field(..., example="Fall/Winter 2025-26")
    type: SeasonType = Field(..., example="fall_winter")
    start_date: date = Field(..., example="2025-09-01")
    end_date: date = Field(..., example="2026-02-28")
    is_active: bool = Field(True, example=True)


class SeasonCreate(SeasonBase):
    """Schema for creating a season."""

    @model_validator(mode="after")
    def check_dates(self) -> "SeasonCreate":
        if self.start_date >= self.end_date:
            raise ValueError("start_date must be before end_date")
        return self


class SeasonUpdate(BaseModel):
    """Partial update; only provided fields are changed."""

    name: Optional[str] = None
    type: Optional[SeasonType] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_active: Optional[bool] = None


class SeasonRead(SeasonBase):
    id: int
    created_at: Optional[datetime] = None

    model_config = {
        "from_attributes": True,
    }
