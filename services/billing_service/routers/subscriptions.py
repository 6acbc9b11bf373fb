"""Coach subscription self-service."""

import uuid

from fastapi import APIRouter, Body, Depends
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from libs.db.session import get_async_db
from services.billing_service.schemas import (
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    CoachSubscriptionResponse,
)
from services.billing_service.services.subscriptions import (
    cancel_coach_subscription,
    list_coach_subscriptions,
)
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.get("/coach/me", response_model=list[CoachSubscriptionResponse])
async def list_my_coach_subscriptions(
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    return await list_coach_subscriptions(db, current_user.user_id)


@router.post("/coach/{subscription_id}/cancel", response_model=CancelSubscriptionResponse)
async def cancel_my_coach_subscription(
    subscription_id: uuid.UUID,
    payload: CancelSubscriptionRequest = Body(default_factory=CancelSubscriptionRequest),
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    return await cancel_coach_subscription(db, current_user, subscription_id, payload)
