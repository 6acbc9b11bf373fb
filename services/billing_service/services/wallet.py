"""Credit wallet mutations with row-level locking and balance snapshots.

Unlike a standalone wallet service these helpers only flush; the caller owns
the commit so the balance change and the state change that caused it land in
the same database transaction.
"""

from typing import Optional

from fastapi import HTTPException, status
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.billing_service.models import (
    CreditTransaction,
    CreditTransactionType,
    CreditWallet,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


async def get_wallet(db: AsyncSession, user_id: str) -> CreditWallet:
    """Get a wallet by owner. Raises 404 if not found."""
    result = await db.execute(select(CreditWallet).where(CreditWallet.user_id == user_id))
    wallet = result.scalar_one_or_none()
    if not wallet:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Wallet not found",
        )
    return wallet


async def get_wallet_for_update(db: AsyncSession, user_id: str) -> CreditWallet:
    """Lock and return the owner's wallet row. Raises 404 if not found."""
    result = await db.execute(
        select(CreditWallet)
        .where(CreditWallet.user_id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    wallet = result.scalar_one_or_none()
    if not wallet:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Wallet not found",
        )
    return wallet


async def find_credit_transaction(
    db: AsyncSession,
    *,
    transaction_type: CreditTransactionType,
    reference_type: str,
    reference_id: str,
) -> Optional[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction).where(
            CreditTransaction.transaction_type == transaction_type,
            CreditTransaction.reference_type == reference_type,
            CreditTransaction.reference_id == reference_id,
        )
    )
    return result.scalars().first()


async def debit_credits(
    db: AsyncSession,
    *,
    user_id: str,
    amount: float,
    transaction_type: CreditTransactionType,
    description: str,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> CreditTransaction:
    """Deduct ``amount`` from a locked wallet, recording before/after balances."""
    wallet = await get_wallet_for_update(db, user_id)
    if wallet.balance < amount:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Insufficient credits. Requested {amount:g}, available {wallet.balance:g}.",
        )

    balance_before = wallet.balance
    balance_after = balance_before - amount

    txn = CreditTransaction(
        user_id=user_id,
        transaction_type=transaction_type,
        amount=-amount,
        balance_before=balance_before,
        balance_after=balance_after,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        credit_metadata=metadata,
    )
    db.add(txn)

    wallet.balance = balance_after
    wallet.updated_at = utc_now()
    await db.flush()

    logger.info(
        "Debit %s credits from wallet %s, balance %s->%s",
        amount,
        wallet.id,
        balance_before,
        balance_after,
    )
    return txn


async def refund_credits(
    db: AsyncSession,
    *,
    user_id: str,
    amount: float,
    description: str,
    reference_type: str,
    reference_id: str,
    metadata: Optional[dict] = None,
) -> tuple[CreditTransaction, bool]:
    """Return credits to a wallet at most once per reference.

    Returns ``(transaction, created)``; ``created`` is False on a replay.
    """
    existing = await find_credit_transaction(
        db,
        transaction_type=CreditTransactionType.WITHDRAWAL_REFUND,
        reference_type=reference_type,
        reference_id=reference_id,
    )
    if existing:
        logger.info(
            "Refund already recorded for %s %s -> %s",
            reference_type,
            reference_id,
            existing.id,
        )
        return existing, False

    wallet = await get_wallet_for_update(db, user_id)
    balance_before = wallet.balance
    balance_after = balance_before + amount

    txn = CreditTransaction(
        user_id=user_id,
        transaction_type=CreditTransactionType.WITHDRAWAL_REFUND,
        amount=amount,
        balance_before=balance_before,
        balance_after=balance_after,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        credit_metadata=metadata,
    )
    db.add(txn)

    wallet.balance = balance_after
    wallet.updated_at = utc_now()
    await db.flush()

    logger.info(
        "Refund %s credits to wallet %s, balance %s->%s",
        amount,
        wallet.id,
        balance_before,
        balance_after,
    )
    return txn, True
