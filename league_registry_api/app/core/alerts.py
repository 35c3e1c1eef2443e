"""
Critical alerting for payment and ledger divergence.

When money has moved but the local records or the accounting staging
could not be brought in line, ``report_critical`` logs at CRITICAL
level and writes an audit row with action ``critical_alert``.
Operators list open alerts through ``GET /api/v1/audit/logs?action=critical_alert``.
"""

import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


async def report_critical(message: str, user_id: Optional[int] = None, **context: Any) -> None:
    """Record a critical alert.  Never raises."""
    logger.critical("%s | context=%s", message, context)
    try:
        from league_registry_api.app.services.audit_service import AuditService
        await AuditService.log(
            user_id=user_id,
            action="critical_alert",
            object_type=context.get("object_type", "payment"),
            object_id=context.get("object_id"),
            details={"message": message, **context},
        )
    except Exception:
        logger.exception("Failed to persist critical alert: %s", message)
