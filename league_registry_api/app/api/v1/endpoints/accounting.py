"""
Accounting administration endpoints for API v1.

Administrators inspect the staging area, retry or ignore failed
records, trigger a manual Xero sync and manage the Xero connection.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Path, Query, status

from league_registry_api.app.core.exceptions import SERVICE_ERRORS, http_error
from league_registry_api.app.core.security import require_roles
from league_registry_api.app.schemas.accounting import (
    RecordIds,
    StagingRecordRead,
    SyncLogRead,
    SyncResult,
    XeroConnection,
)
from league_registry_api.app.services.audit_service import AuditService
from league_registry_api.app.services.xero_client import XeroClient
from league_registry_api.app.services.xero_staging_service import XeroStagingService
from league_registry_api.app.services.xero_sync_service import XeroSyncService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/staging", response_model=List[StagingRecordRead])
async def list_staging(
    sync_status: Optional[str] = Query(None, description="staged, pending, synced, failed, ignored or abandoned"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(require_roles(1, 2)),
) -> List[StagingRecordRead]:
    return await XeroStagingService.list_records(sync_status, limit=limit, offset=offset)


@router.get("/staging/{staging_id}", response_model=StagingRecordRead)
async def get_staging(
    staging_id: int = Path(..., description="Staging record ID"),
    current_user: dict = Depends(require_roles(1, 2)),
) -> StagingRecordRead:
    try:
        return await XeroStagingService.get_record_detail(staging_id)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.post("/retry")
async def retry_failed(ids: RecordIds, current_user: dict = Depends(require_roles(1, 2))) -> Dict[str, int]:
    """Reset failed records to pending.  An empty body resets every failed record."""
    result = await XeroStagingService.retry_failed(ids.invoice_ids, ids.payment_ids)
    try:
        await AuditService.log(current_user.get("user_id"), "retry", "xero_sync", details=result)
    except Exception:
        logger.warning("Audit log failed for sync retry")
    return result


@router.post("/ignore")
async def ignore_failed(ids: RecordIds, current_user: dict = Depends(require_roles(1, 2))) -> Dict[str, int]:
    try:
        return await XeroStagingService.ignore_failed(ids.invoice_ids, ids.payment_ids)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.post("/sync", response_model=SyncResult)
async def manual_sync(current_user: dict = Depends(require_roles(1, 2))) -> SyncResult:
    return await XeroSyncService.sync_all_pending()


@router.get("/logs", response_model=List[SyncLogRead])
async def list_sync_logs(
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(require_roles(1, 2)),
) -> List[SyncLogRead]:
    return await XeroStagingService.list_sync_logs(status_filter, limit=limit, offset=offset)


@router.get("/xero/status")
async def connection_status(current_user: dict = Depends(require_roles(1, 2))) -> Dict[str, Any]:
    tenant = XeroClient.get_active_tenant()
    if not tenant:
        return {"connected": False}
    return {
        "connected": True,
        "tenant_id": tenant["tenant_id"],
        "tenant_name": tenant["tenant_name"],
        "expires_at": tenant["expires_at"],
    }


@router.post("/xero/connect", status_code=status.HTTP_201_CREATED)
async def connect_xero(data: XeroConnection, current_user: dict = Depends(require_roles(1))) -> Dict[str, Any]:
    """Store the tokens from a completed Xero OAuth consent as the active tenant."""
    tenant = XeroClient.save_connection(data)
    return {"connected": True, "tenant_id": tenant["tenant_id"], "tenant_name": tenant["tenant_name"]}


@router.delete("/xero/{tenant_id}", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect_xero(
    tenant_id: str = Path(..., description="Xero tenant ID"),
    current_user: dict = Depends(require_roles(1)),
) -> None:
    XeroClient.disconnect(tenant_id)
