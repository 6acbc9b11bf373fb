"""Background jobs for the billing service."""

from typing import Optional

from libs.common.logging import get_logger
from libs.db.session import session_scope
from services.billing_service.paychangu_client import PayChanguClient
from services.billing_service.schemas import (
    RenewalRunResponse,
    WithdrawalReconcileResponse,
)
from services.billing_service.services.renewals import run_renewal_batch
from services.billing_service.services.withdrawals import (
    reconcile_processing_withdrawals,
)

logger = get_logger(__name__)


async def run_coach_subscription_renewals(limit: Optional[int] = None) -> RenewalRunResponse:
    """Run one renewal batch outside of a request, with its own session."""
    gateway = PayChanguClient()
    async with session_scope() as db:
        summary = await run_renewal_batch(db, gateway, limit=limit)

    logger.info(
        "Scheduled renewal run finished: %d processed",
        summary.processed,
    )
    return summary


async def reconcile_withdrawal_payouts() -> WithdrawalReconcileResponse:
    """Settle mobile-money payouts still waiting on PayChangu."""
    gateway = PayChanguClient()
    async with session_scope() as db:
        summary = await reconcile_processing_withdrawals(db, gateway)

    logger.info("Payout reconciliation finished: %d checked", summary.processed)
    return summary
