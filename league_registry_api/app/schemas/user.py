"""
Pydantic models for user accounts.

Passwords are accepted on create and login only and never returned.
``UserRead`` exposes whether a saved card is on file, which gates
waitlists, alternates and payment plans.
"""

from typing import Optional

from pydantic import BaseModel, Field


class UserBase(BaseModel):
    email: str = Field(..., example="player@example.com")
    first_name: Optional[str] = Field(None, example="Alex")
    last_name: Optional[str] = Field(None, example="Morgan")


class UserCreate(UserBase):
    """Schema for registering a user."""

    password: str = Field(..., min_length=8, example="correct-horse-battery")


class UserLogin(BaseModel):
    email: str = Field(..., example="player@example.com")
    password: str = Field(..., example="correct-horse-battery")


class UserRead(UserBase):
    """Schema for reading a user from the API."""

    id: int
    role_id: Optional[int] = None
    disabled: bool = False
    has_payment_method: bool = Field(False, description="A saved card usable off-session is on file")

    model_config = {
        "from_attributes": True,
    }


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class SetupIntentResponse(BaseModel):
    client_secret: str
    setup_intent_id: str
