"""Checkout creation for coach subscriptions and client purchases.

Order of effects:
1. pending domain record (CoachSubscription or ClientOrder)
2. pending Transaction with a fresh reference pointing at it
3. gateway checkout for that reference

Authorization and validation run before anything is written. If the gateway
refuses, the transaction is kept as ``failed`` with the raw response.
"""

import math
from datetime import datetime
from typing import Optional

from fastapi import HTTPException, status
from libs.auth.models import AuthUser
from libs.common.config import Settings, get_settings
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.billing_service.models import (
    AppRole,
    BillingCycle,
    ClientOrder,
    CoachSubscription,
    OrderStatus,
    OrderType,
    PaymentMode,
    Profile,
    SubscriptionStatus,
    Tier,
    Transaction,
    TransactionStatus,
)
from services.billing_service.paychangu_client import (
    PayChanguError,
    Payer,
    PaymentGateway,
)
from services.billing_service.schemas import CreatePaymentRequest, CreatePaymentResponse
from services.billing_service.services.roles import require_role
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

COACH_ROLES = (AppRole.COACH, AppRole.ADMIN)
CLIENT_ROLES = (AppRole.CLIENT, AppRole.ADMIN)


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)


def _require_positive_amount(amount: Optional[float], mode: PaymentMode) -> float:
    if amount is None or not math.isfinite(amount) or amount <= 0:
        raise _bad_request(f"valid amount is required for {mode.value}")
    return float(amount)


def _default_return_url(mode: PaymentMode, settings: Settings) -> str:
    base = settings.APP_BASE_URL.rstrip("/")
    if mode == PaymentMode.COACH_SUBSCRIPTION:
        return f"{base}/coach/billing/success"
    return f"{base}/client/billing/success"


async def create_payment_link(
    db: AsyncSession,
    gateway: PaymentGateway,
    user: AuthUser,
    payload: CreatePaymentRequest,
    *,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> CreatePaymentResponse:
    """Create the pending records for ``payload.mode`` and return a checkout URL."""
    settings = settings or get_settings()
    now = now or utc_now()
    mode = payload.mode

    if mode == PaymentMode.COACH_SUBSCRIPTION:
        await require_role(
            db,
            user.user_id,
            COACH_ROLES,
            "Forbidden: user must be a coach to subscribe to coach plans",
        )
    else:
        await require_role(
            db,
            user.user_id,
            CLIENT_ROLES,
            "Forbidden: user must be a client to purchase courses",
        )

    currency = payload.currency or settings.PAYCHANGU_DEFAULT_CURRENCY
    subscription: Optional[CoachSubscription] = None
    order: Optional[ClientOrder] = None

    if mode == PaymentMode.COACH_SUBSCRIPTION:
        if not payload.tier_id:
            raise _bad_request("tier_id is required for coach_subscription")
        cycle = payload.billing_cycle or BillingCycle.MONTHLY
        tier = await db.get(Tier, payload.tier_id)
        if tier is None:
            raise _bad_request("Tier not found")

        # Price always comes from the tier, never from the request body.
        amount = tier.price_for(cycle)
        if not amount or amount <= 0:
            raise _bad_request("Tier has no valid price for the requested cycle")
        description = f"Coach subscription: {tier.name} ({cycle.value})"

        subscription = CoachSubscription(
            coach_id=user.user_id,
            tier_id=tier.id,
            status=SubscriptionStatus.PENDING,
            billing_cycle=cycle,
            start_date=now,
            failed_renewal_attempts=0,
        )

    elif mode == PaymentMode.CLIENT_ONE_TIME:
        if not payload.coach_id:
            raise _bad_request("coach_id is required for client_one_time")
        if not payload.course_id:
            raise _bad_request("course_id is required for client_one_time")
        amount = _require_positive_amount(payload.amount, mode)
        description = f"One-time purchase for course {payload.course_id}"

        order = ClientOrder(
            client_id=user.user_id,
            coach_id=payload.coach_id,
            course_id=payload.course_id,
            type=OrderType.ONE_TIME,
            amount=amount,
            currency=currency,
            status=OrderStatus.PENDING,
            start_date=now,
        )

    else:
        if not payload.coach_id:
            raise _bad_request("coach_id is required for client_subscription")
        cycle = payload.billing_cycle or BillingCycle.MONTHLY
        amount = _require_positive_amount(payload.amount, mode)
        description = f"Coach subscription ({cycle.value})"

        order = ClientOrder(
            client_id=user.user_id,
            coach_id=payload.coach_id,
            type=OrderType(cycle.value),
            amount=amount,
            currency=currency,
            status=OrderStatus.PENDING,
            start_date=now,
        )

    domain_record = subscription or order
    db.add(domain_record)
    await db.flush()

    transaction = Transaction(
        user_id=user.user_id,
        transaction_ref=Transaction.generate_reference("TX"),
        amount=amount,
        currency=currency,
        status=TransactionStatus.PENDING,
        transaction_mode=mode.value,
        order_id=order.id if order else None,
        subscription_id=subscription.id if subscription else None,
    )
    db.add(transaction)
    await db.commit()

    profile = await db.get(Profile, user.user_id)
    payer = Payer(
        email=(profile.email if profile and profile.email else user.email),
        first_name=profile.first_name if profile else "",
        last_name=profile.last_name if profile else "",
    )
    meta = {
        **(payload.metadata or {}),
        "mode": mode.value,
        "order_id": str(order.id) if order else None,
        "subscription_id": str(subscription.id) if subscription else None,
        "user_id": user.user_id,
    }

    try:
        checkout = await gateway.initiate_payment(
            amount=amount,
            currency=currency,
            payer=payer,
            callback_url=settings.paychangu_callback_url,
            return_url=payload.return_url or _default_return_url(mode, settings),
            reference=transaction.transaction_ref,
            description=description,
            meta=meta,
        )
    except PayChanguError as exc:
        logger.warning(
            "Checkout initialization failed for %s (%s): %s",
            transaction.transaction_ref,
            mode.value,
            exc.message,
        )
        transaction.status = TransactionStatus.FAILED
        transaction.gateway_response = exc.response_data
        if subscription is not None:
            subscription.status = SubscriptionStatus.CANCELLED
            subscription.end_date = now
        if order is not None:
            order.status = OrderStatus.FAILED
        await db.commit()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "Failed to initialize payment",
                "details": exc.response_data,
            },
        )

    transaction.gateway_response = checkout.raw
    await db.commit()

    logger.info(
        "Checkout %s created for user %s (%s, %s %s)",
        transaction.transaction_ref,
        user.user_id,
        mode.value,
        amount,
        currency,
    )

    return CreatePaymentResponse(
        checkout_url=checkout.checkout_url,
        transaction_ref=transaction.transaction_ref,
        order_id=order.id if order else None,
        subscription_id=subscription.id if subscription else None,
    )
