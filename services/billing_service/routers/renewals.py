"""Renewal batch trigger, called by an external cron or by hand."""

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from libs.common.config import get_settings
from libs.db.session import get_async_db
from services.billing_service.paychangu_client import (
    PaymentGateway,
    get_paychangu_client,
)
from services.billing_service.schemas import RenewalRunResponse
from services.billing_service.services.renewals import run_renewal_batch
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/renewals", tags=["renewals"])


def verify_cron_secret(
    x_cron_secret: Optional[str] = Header(default=None),
) -> None:
    """Only enforced when RENEWAL_CRON_SECRET is configured."""
    expected = get_settings().RENEWAL_CRON_SECRET
    if not expected:
        return
    if not x_cron_secret or not hmac.compare_digest(
        x_cron_secret.encode(), expected.encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret",
        )


@router.api_route(
    "/coach-subscriptions/run",
    methods=["GET", "POST"],
    response_model=RenewalRunResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def run_coach_subscription_renewals(
    limit: Optional[int] = Query(default=None, ge=1),
    gateway: PaymentGateway = Depends(get_paychangu_client),
    db: AsyncSession = Depends(get_async_db),
):
    """Process one batch of due coach subscriptions."""
    return await run_renewal_batch(db, gateway, limit=limit)
