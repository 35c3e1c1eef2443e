"""Email log endpoints for API v1 (administrators only)."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from league_registry_api.app.core.security import require_roles
from league_registry_api.app.schemas.email import EmailBatchResult, EmailLogRead
from league_registry_api.app.services.email_service import EmailService

router = APIRouter()


@router.get("/logs", response_model=List[EmailLogRead])
async def list_email_logs(
    status_filter: Optional[str] = Query(None, alias="status", description="pending, sent, failed or bounced"),
    user_id: Optional[int] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(require_roles(1, 2)),
) -> List[EmailLogRead]:
    return await EmailService.list_logs(status=status_filter, user_id=user_id, limit=limit, offset=offset)


@router.post("/send-pending", response_model=EmailBatchResult)
async def send_pending(current_user: dict = Depends(require_roles(1, 2))) -> EmailBatchResult:
    return await EmailService.send_pending()


@router.post("/retry", response_model=EmailBatchResult)
async def retry_failed(current_user: dict = Depends(require_roles(1, 2))) -> EmailBatchResult:
    return await EmailService.retry_failed()
