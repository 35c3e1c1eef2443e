"""
Audit log endpoints for API v1.

Audit rows record administrative changes and critical payment alerts
(``action=critical_alert``).  Only the super administrator may read
them.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from league_registry_api.app.core.security import require_roles
from league_registry_api.app.services.audit_service import AuditService

router = APIRouter()


@router.get("/logs")
async def list_audit_logs(
    user_id: Optional[int] = Query(None, description="Filter by acting user ID"),
    object_type: Optional[str] = Query(None, description="Filter by object type (registration, payment, ...)"),
    action: Optional[str] = Query(None, description="Filter by action (create, update, critical_alert, ...)"),
    start_date: Optional[str] = Query(None, description="Start date (ISO format) for filtering"),
    end_date: Optional[str] = Query(None, description="End date (ISO format) for filtering"),
    limit: int = Query(100, ge=1, le=500, description="Maximum number of logs to return"),
    offset: int = Query(0, ge=0, description="Number of logs to skip"),
    current_user: dict = Depends(require_roles(1)),
) -> List[dict]:
    return await AuditService.list_logs(
        user_id=user_id,
        object_type=object_type,
        action=action,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
