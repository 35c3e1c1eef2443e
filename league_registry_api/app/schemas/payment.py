"""
Pydantic models for checkout and payment records.

Every checkout returns either a Stripe ``client_secret`` for the front
end to confirm, or ``is_free`` when discounts brought the total to
zero and nothing is charged.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class RegistrationCheckout(BaseModel):
    registration_id: int = Field(..., example=1)
    category_id: int = Field(..., example=1)
    presale_code: Optional[str] = Field(None, example="EARLYBIRD")
    discount_code: Optional[str] = Field(None, example="PRIDE25")
    use_payment_plan: bool = Field(False, description="Pay in four monthly installments")


class CheckoutResponse(BaseModel):
    payment_id: int
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    reservation_id: Optional[int] = None
    reservation_expires_at: Optional[datetime] = None
    staging_id: Optional[int] = None
    original_amount: int
    discount_amount: int = 0
    final_amount: int
    is_free: bool = False
    message: Optional[str] = None


class PaymentRead(BaseModel):
    id: int
    user_id: int
    total_amount: int
    discount_amount: int = 0
    final_amount: int
    stripe_payment_intent_id: Optional[str] = None
    status: str = Field(..., example="completed")
    payment_method: str = Field(..., example="stripe")
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {
        "from_attributes": True,
    }
