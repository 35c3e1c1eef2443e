"""
Payment endpoints for API v1.

Members see their own payments and administrators see everyone's.
``POST /payments/webhook`` receives Stripe events; it reads the raw
body because the signature is computed over the exact bytes sent.
"""

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, status

from league_registry_api.app.core.exceptions import SERVICE_ERRORS, http_error
from league_registry_api.app.core.security import ADMIN_ROLES, get_current_user
from league_registry_api.app.schemas.payment import PaymentRead
from league_registry_api.app.services.payment_service import PaymentService
from league_registry_api.app.services.stripe_gateway import StripeGateway
from league_registry_api.app.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=List[PaymentRead])
async def list_payments(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(get_current_user),
) -> List[PaymentRead]:
    user_id = None if current_user.get("role_id") in ADMIN_ROLES else current_user["user_id"]
    return await PaymentService.list_payments(user_id=user_id, limit=limit, offset=offset)


@router.get("/{payment_id}", response_model=PaymentRead)
async def get_payment(
    payment_id: int = Path(..., description="Payment ID"),
    current_user: dict = Depends(get_current_user),
) -> PaymentRead:
    user_id = None if current_user.get("role_id") in ADMIN_ROLES else current_user["user_id"]
    try:
        return await PaymentService.get_payment(payment_id, user_id=user_id)
    except SERVICE_ERRORS as e:
        raise http_error(e)


@router.post("/webhook")
async def stripe_webhook(request: Request) -> Dict[str, Any]:
    """Verify and process a Stripe event.

    Returns 400 for a bad signature or payload.  Once verified the
    event is always acknowledged, unless processing fails before any
    money has moved, in which case the 500 lets Stripe retry.
    """
    payload = await request.body()
    try:
        event = StripeGateway.construct_event(payload, request.headers.get("stripe-signature"))
    except ValueError as e:
        logger.warning("Rejected Stripe webhook: %s", e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    result = await WebhookService.handle_event(event)
    return {"received": True, **result}
