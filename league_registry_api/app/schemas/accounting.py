"""
Pydantic models for the accounting staging area and sync results.

Amounts are cents, exactly as stored; conversion to dollars happens
only when talking to Xero.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class LineItemRead(BaseModel):
    id: int
    line_item_type: str
    item_id: Optional[int] = None
    discount_code_id: Optional[int] = None
    description: str
    quantity: int
    unit_amount: int
    account_code: str
    tax_type: str
    line_amount: int


class StagedPaymentRead(BaseModel):
    id: int
    xero_invoice_id: int
    amount_paid: int
    bank_account_code: Optional[str] = None
    reference: Optional[str] = None
    sync_status: str
    xero_payment_id: Optional[str] = None
    payment_type: str = "full"
    installment_number: Optional[int] = None
    planned_payment_date: Optional[str] = None
    sync_error: Optional[str] = None


class StagingRecordRead(BaseModel):
    id: int
    payment_id: Optional[int] = None
    tenant_id: Optional[str] = None
    xero_invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    invoice_status: str
    total_amount: int
    discount_amount: int
    net_amount: int
    sync_status: str
    staged_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    sync_error: Optional[str] = None
    is_payment_plan: bool = False
    staging_metadata: Dict[str, Any] = Field(default_factory=dict)
    line_items: List[LineItemRead] = Field(default_factory=list)
    payments: List[StagedPaymentRead] = Field(default_factory=list)


class RecordIds(BaseModel):
    invoice_ids: List[int] = Field(default_factory=list)
    payment_ids: List[int] = Field(default_factory=list)


class SyncResult(BaseModel):
    invoices_synced: int = 0
    invoices_failed: int = 0
    invoices_skipped: int = 0
    payments_synced: int = 0
    payments_failed: int = 0
    skipped_reason: Optional[str] = None
    errors: List[str] = Field(default_factory=list)


class SyncLogRead(BaseModel):
    id: int
    tenant_id: Optional[str] = None
    operation_type: str
    record_type: Optional[str] = None
    record_id: Optional[int] = None
    xero_id: Optional[str] = None
    status: str
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None


class XeroConnection(BaseModel):
    """Payload an admin posts after completing the Xero OAuth consent."""

    tenant_id: str
    tenant_name: Optional[str] = None
    access_token: str
    refresh_token: str
    expires_in: int = Field(1800, description="Seconds until the access token expires")


class CleanupResult(BaseModel):
    reservations_released: int = 0
    invoices_abandoned: int = 0
    payments_abandoned: int = 0
    staging_records_cleaned: int = 0
    log_entries_cleaned: int = 0
    errors: List[str] = Field(default_factory=list)
