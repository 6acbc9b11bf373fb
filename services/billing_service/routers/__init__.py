"""Billing service routers."""

from services.billing_service.routers.admin import router as admin_router
from services.billing_service.routers.payments import router as payments_router
from services.billing_service.routers.renewals import router as renewals_router
from services.billing_service.routers.subscriptions import (
    router as subscriptions_router,
)
from services.billing_service.routers.withdrawals import router as withdrawals_router

__all__ = [
    "admin_router",
    "payments_router",
    "renewals_router",
    "subscriptions_router",
    "withdrawals_router",
]
