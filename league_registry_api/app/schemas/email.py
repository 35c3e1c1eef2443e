"""Pydantic models for the outbound email log."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EmailLogRead(BaseModel):
    id: int
    user_id: Optional[int] = None
    email_address: str
    event_type: str
    subject: str
    template_id: Optional[str] = None
    status: str
    email_data: Dict[str, Any] = Field(default_factory=dict)
    triggered_by: str
    loops_event_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    bounce_reason: Optional[str] = None
    retry_count: int = 0
    created_at: Optional[datetime] = None


class EmailBatchResult(BaseModel):
    processed: int = 0
    sent: int = 0
    failed: int = 0
