"""Coach subscription renewal batch.

Each run picks up to ``batch_size`` subscriptions in ``active``/``grace`` whose
renewal date has passed, oldest first, and for each one either expires it
(grace elapsed or attempt budget spent), skips it (a charge is already
outstanding), or opens a new renewal checkout. A refused checkout consumes one
attempt and moves the subscription into grace, or straight to expired once the
budget is used up.

Subscriptions are processed one at a time; a failure on one of them is
recorded in its result and never stops the rest of the batch.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode

from libs.common.config import Settings, get_settings
from libs.common.datetime_utils import ensure_utc, isoformat_utc, utc_now
from libs.common.logging import get_logger
from services.billing_service.models import (
    CoachSubscription,
    Profile,
    SubscriptionStatus,
    Tier,
    Transaction,
    TransactionMode,
    TransactionStatus,
)
from services.billing_service.paychangu_client import (
    PayChanguError,
    Payer,
    PaymentGateway,
)
from services.billing_service.schemas import RenewalResult, RenewalRunResponse
from services.billing_service.services.notifications import (
    SubscriptionAlerter,
    notify_subscription_status_change,
)
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

RENEWAL_REFERENCE_PREFIX = "RN"
RENEWABLE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE)


@dataclass(frozen=True)
class RenewalPolicy:
    """Knobs for one renewal run."""

    grace_period_days: int = 3
    max_attempts: int = 3
    batch_size: int = 25
    currency: str = "MWK"
    app_base_url: str = "https://experts-coaching-hub.com"
    callback_url: str = ""

    @classmethod
    def from_settings(cls, settings: Settings) -> "RenewalPolicy":
        return cls(
            grace_period_days=settings.GRACE_PERIOD_DAYS,
            max_attempts=settings.RENEWAL_MAX_ATTEMPTS,
            batch_size=settings.RENEWAL_BATCH_SIZE,
            currency=settings.PAYCHANGU_DEFAULT_CURRENCY,
            app_base_url=settings.APP_BASE_URL,
            callback_url=settings.paychangu_callback_url,
        )

    def batch_limit(self, requested: Optional[int] = None) -> int:
        """Requested limit, capped at the configured batch size."""
        if not requested or requested <= 0:
            return self.batch_size
        return min(requested, self.batch_size)

    def return_url(self, reference: str) -> str:
        query = urlencode({"tx_ref": reference, "source": "renewal"})
        return f"{self.app_base_url.rstrip('/')}/coach/billing/success?{query}"


async def find_pending_transaction(
    db: AsyncSession, subscription_id: uuid.UUID
) -> Optional[Transaction]:
    result = await db.execute(
        select(Transaction)
        .where(
            Transaction.subscription_id == subscription_id,
            Transaction.status == TransactionStatus.PENDING,
        )
        .order_by(Transaction.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _expire(
    db: AsyncSession,
    subscription: CoachSubscription,
    *,
    end_date: datetime,
    reason: str,
    metadata: dict,
    alerter: Optional[SubscriptionAlerter],
) -> RenewalResult:
    subscription_id = subscription.id
    old_status = subscription.status.value

    subscription.status = SubscriptionStatus.EXPIRED
    subscription.end_date = end_date
    subscription.grace_expires_at = None
    await db.commit()

    logger.info("Subscription %s expired (%s)", subscription_id, reason)
    await notify_subscription_status_change(
        db,
        subscription_id=subscription_id,
        old_status=old_status,
        new_status=SubscriptionStatus.EXPIRED.value,
        reason=reason,
        metadata=metadata,
        alerter=alerter,
    )
    return RenewalResult(
        subscription_id=subscription_id,
        status=SubscriptionStatus.EXPIRED.value,
        reason=reason,
    )


async def _record_failed_attempt(
    db: AsyncSession,
    subscription: CoachSubscription,
    transaction: Transaction,
    error: PayChanguError,
    *,
    policy: RenewalPolicy,
    now: datetime,
    alerter: Optional[SubscriptionAlerter],
) -> RenewalResult:
    subscription_id = subscription.id
    old_status = subscription.status.value
    next_attempts = (subscription.failed_renewal_attempts or 0) + 1

    transaction.status = TransactionStatus.FAILED
    transaction.gateway_response = error.response_data

    subscription.failed_renewal_attempts = next_attempts
    if next_attempts >= policy.max_attempts:
        new_status = SubscriptionStatus.EXPIRED
        grace_expires_at = None
        subscription.end_date = now
    else:
        new_status = SubscriptionStatus.GRACE
        grace_expires_at = now + timedelta(days=policy.grace_period_days)
    subscription.status = new_status
    subscription.grace_expires_at = grace_expires_at
    await db.commit()

    logger.warning(
        "Renewal charge for subscription %s refused (attempt %d/%d): %s",
        subscription_id,
        next_attempts,
        policy.max_attempts,
        error.message,
    )

    reason = "payment_initialization_failed"
    await notify_subscription_status_change(
        db,
        subscription_id=subscription_id,
        old_status=old_status,
        new_status=new_status.value,
        reason=reason,
        metadata={
            "failed_attempts": next_attempts,
            "grace_expires_at": isoformat_utc(grace_expires_at),
            "payment_status": error.gateway_status,
        },
        alerter=alerter,
    )

    return RenewalResult(
        subscription_id=subscription_id,
        status=new_status.value,
        reason=reason,
        payment_status=error.gateway_status,
        failed_attempts=next_attempts,
        grace_expires_at=grace_expires_at,
    )


async def renew_subscription(
    db: AsyncSession,
    gateway: PaymentGateway,
    subscription_id: uuid.UUID,
    *,
    policy: RenewalPolicy,
    now: datetime,
    alerter: Optional[SubscriptionAlerter] = None,
) -> RenewalResult:
    """Apply one renewal step to a single due subscription."""
    result = await db.execute(
        select(CoachSubscription)
        .where(CoachSubscription.id == subscription_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    subscription = result.scalar_one()

    if subscription.renewal_date is None:
        return RenewalResult(
            subscription_id=subscription_id,
            status="skipped",
            reason="missing_renewal_date",
        )

    grace_expires_at = ensure_utc(subscription.grace_expires_at)
    if (
        subscription.status == SubscriptionStatus.GRACE
        and grace_expires_at is not None
        and grace_expires_at < now
    ):
        return await _expire(
            db,
            subscription,
            end_date=grace_expires_at,
            reason="grace_period_elapsed",
            metadata={"grace_expires_at": isoformat_utc(grace_expires_at)},
            alerter=alerter,
        )

    failed_attempts = subscription.failed_renewal_attempts or 0
    if failed_attempts >= policy.max_attempts:
        return await _expire(
            db,
            subscription,
            end_date=now,
            reason="max_attempts_reached",
            metadata={"failed_attempts": failed_attempts},
            alerter=alerter,
        )

    # Guard against double charging: never open a second checkout while one
    # is still waiting on the webhook.
    pending = await find_pending_transaction(db, subscription_id)
    if pending is not None:
        return RenewalResult(
            subscription_id=subscription_id,
            status="skipped",
            reason="pending_transaction_exists",
            pending_transaction_id=pending.id,
        )

    tier = await db.get(Tier, subscription.tier_id)
    if tier is None:
        return RenewalResult(
            subscription_id=subscription_id,
            status="failed",
            reason="tier_not_found",
        )

    amount = tier.price_for(subscription.billing_cycle)
    if not amount or amount <= 0:
        return RenewalResult(
            subscription_id=subscription_id,
            status="failed",
            reason="invalid_amount",
        )

    profile = await db.get(Profile, subscription.coach_id)
    reference = Transaction.generate_reference(RENEWAL_REFERENCE_PREFIX)
    transaction = Transaction(
        user_id=subscription.coach_id,
        transaction_ref=reference,
        amount=amount,
        currency=policy.currency,
        status=TransactionStatus.PENDING,
        subscription_id=subscription_id,
        transaction_mode=TransactionMode.COACH_SUBSCRIPTION_RENEWAL.value,
    )
    db.add(transaction)
    try:
        await db.commit()
    except IntegrityError:
        # Lost a race with a concurrent run that opened a charge first.
        await db.rollback()
        pending = await find_pending_transaction(db, subscription_id)
        return RenewalResult(
            subscription_id=subscription_id,
            status="skipped",
            reason="pending_transaction_exists",
            pending_transaction_id=pending.id if pending else None,
        )

    cycle = subscription.billing_cycle.value
    try:
        checkout = await gateway.initiate_payment(
            amount=amount,
            currency=policy.currency,
            payer=Payer(
                email=profile.email if profile else None,
                first_name=profile.first_name if profile else "",
                last_name=profile.last_name if profile else "",
            ),
            callback_url=policy.callback_url,
            return_url=policy.return_url(reference),
            reference=reference,
            description=f"Coach subscription renewal ({tier.name} - {cycle})",
            meta={
                "mode": "coach_subscription",
                "subscription_id": str(subscription_id),
                "user_id": subscription.coach_id,
                "auto_renewal": True,
            },
        )
    except PayChanguError as exc:
        return await _record_failed_attempt(
            db,
            subscription,
            transaction,
            exc,
            policy=policy,
            now=now,
            alerter=alerter,
        )

    # Stays pending; the gateway webhook settles it and reactivates the plan.
    transaction.gateway_response = checkout.raw
    await db.commit()

    logger.info(
        "Renewal checkout %s opened for subscription %s", reference, subscription_id
    )
    return RenewalResult(
        subscription_id=subscription_id,
        status="initiated",
        transaction_id=transaction.id,
        checkout_url=checkout.checkout_url,
    )


async def run_renewal_batch(
    db: AsyncSession,
    gateway: PaymentGateway,
    *,
    limit: Optional[int] = None,
    policy: Optional[RenewalPolicy] = None,
    now: Optional[datetime] = None,
    alerter: Optional[SubscriptionAlerter] = None,
) -> RenewalRunResponse:
    """Process one bounded batch of due coach subscriptions."""
    policy = policy or RenewalPolicy.from_settings(get_settings())
    now = now or utc_now()
    alerter = alerter or SubscriptionAlerter.from_settings()

    result = await db.execute(
        select(CoachSubscription.id)
        .where(
            CoachSubscription.status.in_(RENEWABLE_STATUSES),
            CoachSubscription.renewal_date <= now,
        )
        .order_by(CoachSubscription.renewal_date.asc())
        .limit(policy.batch_limit(limit))
    )
    due_ids = list(result.scalars().all())

    if not due_ids:
        return RenewalRunResponse(
            processed=0,
            results=[],
            message="No coach subscriptions due for renewal",
        )

    results: list[RenewalResult] = []
    for subscription_id in due_ids:
        try:
            outcome = await renew_subscription(
                db,
                gateway,
                subscription_id,
                policy=policy,
                now=now,
                alerter=alerter,
            )
        except Exception as exc:
            logger.exception("Renewal failed for subscription %s", subscription_id)
            await db.rollback()
            outcome = RenewalResult(
                subscription_id=subscription_id,
                status="error",
                reason="unexpected_error",
                error=str(exc) or exc.__class__.__name__,
            )
        results.append(outcome)

    logger.info(
        "Renewal run processed %d subscriptions",
        len(results),
        extra={
            "extra_fields": {
                "statuses": [r.status for r in results],
            }
        },
    )
    return RenewalRunResponse(processed=len(results), results=results)
