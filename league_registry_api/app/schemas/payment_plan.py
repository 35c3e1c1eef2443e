"""Pydantic models for installment payment plans."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class PaymentPlanSummary(BaseModel):
    id: int
    registration_name: Optional[str] = None
    total_amount: int
    paid_amount: int
    remaining_balance: int
    installment_amount: int
    installments_count: int
    installments_paid: int
    next_payment_date: Optional[str] = None
    status: str
    created_at: Optional[datetime] = None


class InstallmentRunResult(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = []
