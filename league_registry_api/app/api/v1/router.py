"""
Top‑level router for version 1 of the API.

This router aggregates domain‑specific routers (registrations,
memberships, payments, accounting, etc.) under a unified prefix.  When
new endpoints are added or when new domains are introduced, update
this file to include their routers.
"""

from fastapi import APIRouter

from .endpoints import (
    accounting,
    alternates,
    audit,
    cron,
    discounts,
    emails,
    memberships,
    payment_plans,
    payments,
    registrations,
    seasons,
    settings,
    users,
    waitlists,
)

router = APIRouter()

router.include_router(users.router, prefix="/users", tags=["users"])
router.include_router(seasons.router, prefix="/seasons", tags=["seasons"])
router.include_router(memberships.router, prefix="/memberships", tags=["memberships"])
router.include_router(registrations.router, prefix="/registrations", tags=["registrations"])
router.include_router(discounts.router, prefix="/discounts", tags=["discounts"])
router.include_router(payments.router, prefix="/payments", tags=["payments"])
router.include_router(waitlists.router, prefix="/waitlists", tags=["waitlists"])
router.include_router(alternates.router, prefix="/alternates", tags=["alternates"])
router.include_router(payment_plans.router, prefix="/payment-plans", tags=["payment plans"])
router.include_router(accounting.router, prefix="/accounting", tags=["accounting"])
router.include_router(emails.router, prefix="/emails", tags=["emails"])
router.include_router(settings.router, prefix="/settings", tags=["settings"])
router.include_router(audit.router, prefix="/audit", tags=["audit"])
router.include_router(cron.router, prefix="/cron", tags=["cron"])
