"""
Scheduled job endpoints for API v1.

An external scheduler calls these with ``Authorization: Bearer
<CRON_SECRET>``.  Each job reports what it did; a job never fails the
request because of a single bad record.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from league_registry_api.app.core.security import require_cron_secret
from league_registry_api.app.schemas.accounting import CleanupResult, SyncResult
from league_registry_api.app.schemas.email import EmailBatchResult
from league_registry_api.app.schemas.payment_plan import InstallmentRunResult
from league_registry_api.app.services.email_service import EmailService
from league_registry_api.app.services.maintenance_service import MaintenanceService
from league_registry_api.app.services.payment_plan_service import PaymentPlanService
from league_registry_api.app.services.xero_sync_service import XeroSyncService

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_cron_secret)])


@router.get("/xero-sync", response_model=SyncResult)
async def xero_sync() -> SyncResult:
    logger.info("Cron: Xero sync started")
    return await XeroSyncService.sync_all_pending()


@router.get("/email-sync", response_model=EmailBatchResult)
async def email_sync() -> EmailBatchResult:
    return await EmailService.send_pending()


@router.get("/email-retry", response_model=EmailBatchResult)
async def email_retry() -> EmailBatchResult:
    return await EmailService.retry_failed()


@router.get("/payment-plans", response_model=InstallmentRunResult)
async def payment_plans() -> InstallmentRunResult:
    logger.info("Cron: processing due payment plan installments")
    return await PaymentPlanService.process_due_installments()


@router.get("/cleanup", response_model=CleanupResult)
async def cleanup() -> CleanupResult:
    return await MaintenanceService.cleanup()


@router.get("/health")
async def health() -> Dict[str, Any]:
    return {"status": "ok"}
