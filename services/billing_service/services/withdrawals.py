"""Coach withdrawal requests and the admin decision that settles them.

Credits stay in the wallet while a request is pending. Approval deducts them
under a wallet row lock, then either pays out to mobile money immediately or
leaves the request ``approved`` for a manual transfer. A payout PayChangu
refuses moves the request to ``failed`` and returns the credits exactly once.
A payout it accepted without confirming stays ``processing`` until
``reconcile_processing_withdrawals`` reads its final status.
"""

import re
import uuid
from datetime import datetime, time, timedelta, timezone
from typing import Optional

from fastapi import HTTPException, status
from libs.auth.models import AuthUser
from libs.common.config import Settings, get_settings
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.billing_service.models import (
    AppRole,
    CreditTransactionType,
    PaymentMethod,
    WithdrawalAction,
    WithdrawalRequest,
    WithdrawalStatus,
)
from services.billing_service.paychangu_client import (
    PAYOUT_FAILED_STATUSES,
    PAYOUT_IN_FLIGHT_STATUSES,
    PAYOUT_SUCCESS_STATUSES,
    PayChanguError,
    PaymentGateway,
    PayoutPending,
)
from services.billing_service.schemas import (
    WithdrawalCreate,
    WithdrawalProcess,
    WithdrawalProcessResponse,
    WithdrawalReconcileResponse,
    WithdrawalReconcileResult,
)
from services.billing_service.services.roles import require_role
from services.billing_service.services.wallet import (
    debit_credits,
    get_wallet,
    refund_credits,
)
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

WITHDRAWAL_ROLES = (AppRole.COACH, AppRole.ADMIN)
MALAWI_MOBILE = re.compile(r"^(?:\+?265)?(?:99|88|77|76)\d{7}$")
REFERENCE_TYPE = "withdrawal_request"

# Requests in these states no longer count towards the daily limit.
INACTIVE_STATUSES = (
    WithdrawalStatus.REJECTED,
    WithdrawalStatus.CANCELLED,
    WithdrawalStatus.FAILED,
)


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)


def is_valid_malawi_mobile(mobile: str) -> bool:
    return bool(MALAWI_MOBILE.match(re.sub(r"[\s-]", "", mobile or "")))


async def _withdrawn_today(db: AsyncSession, coach_id: str, now: datetime) -> float:
    day_start = datetime.combine(now.astimezone(timezone.utc).date(), time.min, tzinfo=timezone.utc)
    result = await db.execute(
        select(func.coalesce(func.sum(WithdrawalRequest.credits_amount), 0)).where(
            WithdrawalRequest.coach_id == coach_id,
            WithdrawalRequest.created_at >= day_start,
            WithdrawalRequest.status.not_in(INACTIVE_STATUSES),
        )
    )
    return float(result.scalar_one())


async def get_withdrawal_for_update(
    db: AsyncSession, withdrawal_id: uuid.UUID
) -> WithdrawalRequest:
    result = await db.execute(
        select(WithdrawalRequest)
        .where(WithdrawalRequest.id == withdrawal_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    withdrawal = result.scalar_one_or_none()
    if not withdrawal:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Withdrawal request not found",
        )
    return withdrawal


async def request_withdrawal(
    db: AsyncSession,
    user: AuthUser,
    payload: WithdrawalCreate,
    *,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> WithdrawalRequest:
    """Validate and record a pending withdrawal. No credits move here."""
    settings = settings or get_settings()
    now = now or utc_now()

    await require_role(
        db, user.user_id, WITHDRAWAL_ROLES, "Only coaches can request withdrawals"
    )

    credits = payload.credits_amount
    if credits < settings.WITHDRAWAL_MIN_CREDITS:
        raise _bad_request(
            f"Minimum withdrawal is {settings.WITHDRAWAL_MIN_CREDITS} credits"
        )
    if credits > settings.WITHDRAWAL_MAX_CREDITS:
        raise _bad_request(
            f"Maximum withdrawal is {settings.WITHDRAWAL_MAX_CREDITS} credits"
        )

    if payload.payment_method == PaymentMethod.MOBILE_MONEY.value:
        mobile = str(payload.payment_details.get("mobile") or "")
        if not is_valid_malawi_mobile(mobile):
            raise _bad_request(
                "Invalid mobile number format. Example: +265999123456"
            )

    already_today = await _withdrawn_today(db, user.user_id, now)
    if already_today + credits > settings.WITHDRAWAL_DAILY_LIMIT_CREDITS:
        raise _bad_request(
            f"Daily withdrawal limit of {settings.WITHDRAWAL_DAILY_LIMIT_CREDITS} credits exceeded"
        )

    wallet = await get_wallet(db, user.user_id)
    if wallet.balance < credits:
        raise _bad_request("Insufficient balance")

    withdrawal = WithdrawalRequest(
        coach_id=user.user_id,
        credits_amount=credits,
        amount_mwk=credits * settings.CREDIT_CONVERSION_RATE,
        status=WithdrawalStatus.PENDING,
        payment_method=payload.payment_method,
        payment_details=payload.payment_details,
        notes=payload.notes,
    )
    db.add(withdrawal)
    await db.commit()
    await db.refresh(withdrawal)

    logger.info(
        "Withdrawal %s requested by %s for %s credits",
        withdrawal.id,
        user.user_id,
        credits,
    )
    return withdrawal


async def list_withdrawals(
    db: AsyncSession,
    user: AuthUser,
    *,
    status_filter: Optional[WithdrawalStatus] = None,
) -> list[WithdrawalRequest]:
    """Admins see every request; coaches only their own."""
    role = await require_role(db, user.user_id, WITHDRAWAL_ROLES)

    query = select(WithdrawalRequest).order_by(WithdrawalRequest.created_at.desc())
    if role != AppRole.ADMIN:
        query = query.where(WithdrawalRequest.coach_id == user.user_id)
    if status_filter is not None:
        query = query.where(WithdrawalRequest.status == status_filter)

    result = await db.execute(query)
    return list(result.scalars().all())


async def cancel_withdrawal(
    db: AsyncSession, user: AuthUser, withdrawal_id: uuid.UUID
) -> WithdrawalRequest:
    withdrawal = await get_withdrawal_for_update(db, withdrawal_id)
    if withdrawal.coach_id != user.user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only cancel your own withdrawal requests",
        )
    if withdrawal.status != WithdrawalStatus.PENDING:
        raise _bad_request("Only pending withdrawals can be cancelled")

    withdrawal.status = WithdrawalStatus.CANCELLED
    await db.commit()
    await db.refresh(withdrawal)
    logger.info("Withdrawal %s cancelled by %s", withdrawal.id, user.user_id)
    return withdrawal


async def _execute_payout(
    db: AsyncSession,
    gateway: PaymentGateway,
    withdrawal: WithdrawalRequest,
    *,
    currency: str,
) -> WithdrawalStatus:
    """Send the mobile-money payout.

    Credits go back only when PayChangu definitely refused it. A payout that
    was accepted but is not final (or whose outcome is unknown) stays
    ``processing`` until reconciliation settles it.
    """
    details = withdrawal.payment_details or {}
    try:
        payout = await gateway.initiate_payout(
            mobile=str(details.get("mobile") or ""),
            amount=withdrawal.amount_mwk,
            currency=currency,
            charge_id=withdrawal.payout_charge_id,
            reason=f"Coach withdrawal {withdrawal.id}",
        )
    except PayoutPending as pending:
        logger.warning(
            "Payout for withdrawal %s not final yet: %s", withdrawal.id, pending.message
        )
        withdrawal.payout_reference = pending.ref_id or pending.charge_id
        withdrawal.gateway_response = pending.response_data
        await db.commit()
        return WithdrawalStatus.PROCESSING
    except PayChanguError as exc:
        logger.warning("Payout for withdrawal %s failed: %s", withdrawal.id, exc.message)
        await _fail_and_refund(
            db,
            withdrawal,
            reason=exc.message,
            gateway_response=exc.response_data,
            gateway_status=exc.gateway_status,
        )
        await db.commit()
        return WithdrawalStatus.FAILED

    withdrawal.status = WithdrawalStatus.COMPLETED
    withdrawal.payout_reference = payout.ref_id or payout.trans_id or payout.charge_id
    withdrawal.gateway_response = payout.raw
    await db.commit()
    return WithdrawalStatus.COMPLETED


async def _fail_and_refund(
    db: AsyncSession,
    withdrawal: WithdrawalRequest,
    *,
    reason: str,
    gateway_response: Optional[dict],
    gateway_status: Optional[str],
) -> None:
    withdrawal.status = WithdrawalStatus.FAILED
    withdrawal.gateway_response = gateway_response
    withdrawal.admin_notes = "\n".join(
        note for note in (withdrawal.admin_notes, f"Payout failed: {reason}") if note
    )
    await refund_credits(
        db,
        user_id=withdrawal.coach_id,
        amount=withdrawal.credits_amount,
        description=f"Refund for failed withdrawal {withdrawal.id}",
        reference_type=REFERENCE_TYPE,
        reference_id=str(withdrawal.id),
        metadata={"gateway_status": gateway_status},
    )


async def process_withdrawal(
    db: AsyncSession,
    gateway: PaymentGateway,
    admin: AuthUser,
    withdrawal_id: uuid.UUID,
    payload: WithdrawalProcess,
    *,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> WithdrawalProcessResponse:
    """Apply an admin approve/reject decision to a pending withdrawal."""
    settings = settings or get_settings()
    now = now or utc_now()

    await require_role(
        db, admin.user_id, (AppRole.ADMIN,), "Only admins can process withdrawals"
    )

    withdrawal = await get_withdrawal_for_update(db, withdrawal_id)
    if withdrawal.status != WithdrawalStatus.PENDING:
        raise _bad_request("Only pending withdrawals can be processed")

    withdrawal.processed_at = now
    withdrawal.processed_by = admin.user_id
    if payload.admin_notes:
        withdrawal.admin_notes = payload.admin_notes

    if payload.action == WithdrawalAction.REJECT:
        withdrawal.status = WithdrawalStatus.REJECTED
        withdrawal.rejection_reason = (
            payload.rejection_reason or payload.admin_notes or "Rejected by admin"
        )
        await db.commit()
        logger.info("Withdrawal %s rejected by %s", withdrawal.id, admin.user_id)
        return WithdrawalProcessResponse(
            action=payload.action.value,
            withdrawal_request_id=withdrawal.id,
            status=WithdrawalStatus.REJECTED,
            message="Withdrawal rejected",
        )

    # Balance is re-checked under the wallet lock: credits may have been
    # spent since the request was filed.
    debit = await debit_credits(
        db,
        user_id=withdrawal.coach_id,
        amount=withdrawal.credits_amount,
        transaction_type=CreditTransactionType.WITHDRAWAL,
        description=f"Withdrawal {withdrawal.id}",
        reference_type=REFERENCE_TYPE,
        reference_id=str(withdrawal.id),
        metadata={"amount_mwk": withdrawal.amount_mwk},
    )
    withdrawal.status = WithdrawalStatus.PROCESSING
    await db.commit()

    auto_payout = (
        settings.WITHDRAWAL_AUTO_PAYOUT
        and withdrawal.payment_method == PaymentMethod.MOBILE_MONEY.value
    )
    if auto_payout:
        final_status = await _execute_payout(
            db, gateway, withdrawal, currency=settings.PAYCHANGU_DEFAULT_CURRENCY
        )
    else:
        withdrawal.status = WithdrawalStatus.APPROVED
        await db.commit()
        final_status = WithdrawalStatus.APPROVED

    new_balance = debit.balance_after
    if final_status == WithdrawalStatus.FAILED:
        new_balance = debit.balance_before

    messages = {
        WithdrawalStatus.COMPLETED: "Withdrawal approved and paid out",
        WithdrawalStatus.FAILED: "Payout failed; credits have been refunded",
        WithdrawalStatus.APPROVED: "Withdrawal approved for manual payout",
        WithdrawalStatus.PROCESSING: "Payout submitted; awaiting confirmation from PayChangu",
    }
    logger.info(
        "Withdrawal %s approved by %s -> %s",
        withdrawal.id,
        admin.user_id,
        final_status.value,
    )
    return WithdrawalProcessResponse(
        action=payload.action.value,
        withdrawal_request_id=withdrawal.id,
        status=final_status,
        credits_deducted=withdrawal.credits_amount,
        new_balance=new_balance,
        message=messages[final_status],
    )


async def _reconcile_one(
    db: AsyncSession,
    gateway: PaymentGateway,
    withdrawal_id: uuid.UUID,
    *,
    now: datetime,
) -> WithdrawalReconcileResult:
    withdrawal = await get_withdrawal_for_update(db, withdrawal_id)
    if withdrawal.status != WithdrawalStatus.PROCESSING:
        # Settled by a concurrent run since the batch was selected.
        await db.rollback()
        return WithdrawalReconcileResult(
            withdrawal_id=withdrawal_id, status="skipped", reason="not_processing"
        )

    reference = withdrawal.payout_reference or withdrawal.payout_charge_id
    try:
        payout = await gateway.get_payout_status(reference)
    except PayChanguError as exc:
        await db.rollback()
        logger.warning(
            "Payout status lookup for withdrawal %s failed: %s",
            withdrawal_id,
            exc.message,
        )
        return WithdrawalReconcileResult(
            withdrawal_id=withdrawal_id,
            status="error",
            reason=f"api_error_{exc.status_code}" if exc.status_code else "api_error",
        )

    if payout.status in PAYOUT_SUCCESS_STATUSES:
        withdrawal.status = WithdrawalStatus.COMPLETED
        withdrawal.gateway_response = payout.raw
        withdrawal.updated_at = now
        await db.commit()
        logger.info("Withdrawal %s confirmed completed", withdrawal_id)
        return WithdrawalReconcileResult(
            withdrawal_id=withdrawal_id, status=WithdrawalStatus.COMPLETED.value
        )

    if payout.status in PAYOUT_FAILED_STATUSES:
        reason = payout.failure_reason or "Payment provider reported failure"
        await _fail_and_refund(
            db,
            withdrawal,
            reason=reason,
            gateway_response=payout.raw,
            gateway_status=payout.status,
        )
        await db.commit()
        logger.info("Withdrawal %s failed at PayChangu: %s", withdrawal_id, reason)
        return WithdrawalReconcileResult(
            withdrawal_id=withdrawal_id,
            status=WithdrawalStatus.FAILED.value,
            reason=reason,
        )

    await db.rollback()
    if payout.status in PAYOUT_IN_FLIGHT_STATUSES:
        return WithdrawalReconcileResult(
            withdrawal_id=withdrawal_id, status="still_processing", reason=payout.status
        )
    return WithdrawalReconcileResult(
        withdrawal_id=withdrawal_id,
        status="unknown",
        reason=payout.status or "no_status_in_response",
    )


async def reconcile_processing_withdrawals(
    db: AsyncSession,
    gateway: PaymentGateway,
    *,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> WithdrawalReconcileResponse:
    """Settle payouts left ``processing`` by asking PayChangu for their status.

    Only requests submitted at least ``WITHDRAWAL_RECONCILE_MIN_AGE_MINUTES``
    ago are checked, at most ``WITHDRAWAL_RECONCILE_BATCH_SIZE`` per run.
    """
    settings = settings or get_settings()
    now = now or utc_now()
    cutoff = now - timedelta(minutes=settings.WITHDRAWAL_RECONCILE_MIN_AGE_MINUTES)

    result = await db.execute(
        select(WithdrawalRequest.id)
        .where(
            WithdrawalRequest.status == WithdrawalStatus.PROCESSING,
            func.coalesce(WithdrawalRequest.processed_at, WithdrawalRequest.created_at)
            < cutoff,
        )
        .order_by(WithdrawalRequest.created_at.asc())
        .limit(settings.WITHDRAWAL_RECONCILE_BATCH_SIZE)
    )
    withdrawal_ids = list(result.scalars().all())

    results: list[WithdrawalReconcileResult] = []
    for withdrawal_id in withdrawal_ids:
        try:
            outcome = await _reconcile_one(db, gateway, withdrawal_id, now=now)
        except Exception as exc:
            logger.exception("Reconciliation failed for withdrawal %s", withdrawal_id)
            await db.rollback()
            outcome = WithdrawalReconcileResult(
                withdrawal_id=withdrawal_id,
                status="error",
                reason=str(exc) or exc.__class__.__name__,
            )
        results.append(outcome)

    logger.info(
        "Withdrawal reconciliation checked %d payouts",
        len(results),
        extra={"extra_fields": {"statuses": [r.status for r in results]}},
    )
    return WithdrawalReconcileResponse(processed=len(results), results=results)
