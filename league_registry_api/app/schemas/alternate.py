"""Pydantic models for alternate players, games and selections."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class AlternateSignup(BaseModel):
    discount_code: Optional[str] = Field(None, example="PRIDE25")


class AlternateRead(BaseModel):
    id: int
    user_id: int
    registration_id: int
    discount_code_id: Optional[int] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    times_selected: int = 0
    created_at: Optional[datetime] = None


class GameCreate(BaseModel):
    game_description: str = Field(..., example="Tue 10/14 vs. Rangers")
    game_date: Optional[datetime] = None


class GameRead(GameCreate):
    id: int
    registration_id: int
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    selected_count: int = 0


class AlternateSelectRequest(BaseModel):
    user_ids: List[int] = Field(..., min_length=1)


class SelectionOutcome(BaseModel):
    user_id: int
    success: bool
    selection_id: Optional[int] = None
    payment_id: Optional[int] = None
    amount_charged: int = 0
    error: Optional[str] = None


class AlternateSelectResult(BaseModel):
    game_id: int
    selected: int
    failed: int
    results: List[SelectionOutcome]


class CaptainAssign(BaseModel):
    user_id: int
