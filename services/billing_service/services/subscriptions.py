"""Coach-facing subscription management."""

import uuid
from datetime import datetime
from typing import Optional

from fastapi import HTTPException, status
from libs.auth.models import AuthUser
from libs.common.datetime_utils import isoformat_utc, utc_now
from libs.common.logging import get_logger
from services.billing_service.models import (
    AppRole,
    CoachSubscription,
    SubscriptionStatus,
)
from services.billing_service.schemas import (
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
)
from services.billing_service.services.notifications import write_audit_entry
from services.billing_service.services.roles import get_user_role
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

CANCELLABLE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING)


async def list_coach_subscriptions(
    db: AsyncSession, coach_id: str
) -> list[CoachSubscription]:
    result = await db.execute(
        select(CoachSubscription)
        .where(CoachSubscription.coach_id == coach_id)
        .order_by(CoachSubscription.created_at.desc())
    )
    return list(result.scalars().all())


async def cancel_coach_subscription(
    db: AsyncSession,
    user: AuthUser,
    subscription_id: uuid.UUID,
    payload: CancelSubscriptionRequest,
    *,
    now: Optional[datetime] = None,
) -> CancelSubscriptionResponse:
    """Cancel now, or at the end of the paid period."""
    now = now or utc_now()

    result = await db.execute(
        select(CoachSubscription)
        .where(CoachSubscription.id == subscription_id)
        .with_for_update()
    )
    subscription = result.scalar_one_or_none()
    if subscription is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscription not found",
        )

    if subscription.coach_id != user.user_id:
        role = await get_user_role(db, user.user_id)
        if role != AppRole.ADMIN:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not allowed to manage this subscription",
            )

    if subscription.status == SubscriptionStatus.CANCELLED:
        return CancelSubscriptionResponse(
            status="already_cancelled",
            cancelled_effective_at=subscription.end_date,
        )

    if subscription.status not in CANCELLABLE_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot cancel a subscription in status {subscription.status.value}",
        )

    old_status = subscription.status.value
    if payload.cancel_immediately:
        effective_at = now
        subscription.renewal_date = None
    else:
        effective_at = subscription.renewal_date or now
    subscription.status = SubscriptionStatus.CANCELLED
    subscription.end_date = effective_at
    await db.commit()

    reason = payload.reason or (
        "cancel_immediate" if payload.cancel_immediately else "cancel_at_period_end"
    )
    logger.info("Subscription %s cancelled by %s (%s)", subscription_id, user.user_id, reason)
    await write_audit_entry(
        db,
        subscription_id=subscription_id,
        old_status=old_status,
        new_status=SubscriptionStatus.CANCELLED.value,
        reason=reason,
        metadata={
            "cancel_immediately": payload.cancel_immediately,
            "effective_at": isoformat_utc(effective_at),
        },
        changed_by=user.user_id,
    )

    return CancelSubscriptionResponse(
        status=SubscriptionStatus.CANCELLED.value,
        cancelled_effective_at=effective_at,
        cancel_immediately=payload.cancel_immediately,
    )
