"""Unit tests for withdrawal requests, admin processing and wallet helpers."""

import uuid
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fastapi import HTTPException
from libs.common.config import get_settings
from services.billing_service.models import (
    CreditTransaction,
    CreditTransactionType,
    CreditWallet,
    WithdrawalRequest,
    WithdrawalStatus,
)
from services.billing_service.paychangu_client import PayChanguClient, PayChanguError
from services.billing_service.schemas import WithdrawalCreate, WithdrawalProcess
from services.billing_service.services.wallet import refund_credits
from services.billing_service.services.withdrawals import (
    cancel_withdrawal,
    is_valid_malawi_mobile,
    list_withdrawals,
    process_withdrawal,
    reconcile_processing_withdrawals,
    request_withdrawal,
)
from sqlalchemy import select
from tests.factories import (
    CreditWalletFactory,
    FakeGateway,
    ProfileFactory,
    UserRoleFactory,
    WithdrawalRequestFactory,
    make_user,
    seed,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _coach(db, balance=500.0):
    profile = ProfileFactory.create()
    await seed(
        db,
        profile,
        UserRoleFactory.create(profile.id, "coach"),
        CreditWalletFactory.create(profile.id, balance=balance),
    )
    return make_user(profile.id)


async def _admin(db):
    profile = ProfileFactory.create()
    await seed(db, profile, UserRoleFactory.create(profile.id, "admin"))
    return make_user(profile.id)


async def _wallet(db, user_id) -> CreditWallet:
    result = await db.execute(
        select(CreditWallet)
        .where(CreditWallet.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _credit_transactions(db, user_id) -> list[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at)
    )
    return list(result.scalars().all())


def _mobile_request(credits=100.0, mobile="+265991234567") -> WithdrawalCreate:
    return WithdrawalCreate(
        credits_amount=credits,
        payment_method="mobile_money",
        payment_details={"mobile": mobile},
    )


# ---------------------------------------------------------------------------
# request_withdrawal
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_request_withdrawal_holds_credits(db_session):
    """The request is recorded as pending; the wallet balance does not move."""
    coach = await _coach(db_session, balance=500.0)

    withdrawal = await request_withdrawal(db_session, coach, _mobile_request(120.0))

    assert withdrawal.status == WithdrawalStatus.PENDING
    assert withdrawal.credits_amount == 120.0
    assert withdrawal.amount_mwk == 12000.0
    assert (await _wallet(db_session, coach.user_id)).balance == 500.0
    assert await _credit_transactions(db_session, coach.user_id) == []


@pytest.mark.asyncio
@pytest.mark.unit
async def test_request_withdrawal_requires_coach_role(db_session):
    profile = ProfileFactory.create()
    await seed(db_session, profile, UserRoleFactory.create(profile.id, "client"))

    with pytest.raises(HTTPException) as exc_info:
        await request_withdrawal(db_session, make_user(profile.id), _mobile_request())

    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
@pytest.mark.unit
@pytest.mark.parametrize("credits", [5.0, 20000.0])
async def test_request_withdrawal_limits(db_session, credits):
    coach = await _coach(db_session, balance=50000.0)

    with pytest.raises(HTTPException) as exc_info:
        await request_withdrawal(db_session, coach, _mobile_request(credits))

    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
@pytest.mark.unit
async def test_request_withdrawal_daily_limit(db_session, monkeypatch):
    from libs.common.config import get_settings

    monkeypatch.setattr(get_settings(), "WITHDRAWAL_DAILY_LIMIT_CREDITS", 250)
    coach = await _coach(db_session, balance=1000.0)

    await request_withdrawal(db_session, coach, _mobile_request(200.0))
    with pytest.raises(HTTPException) as exc_info:
        await request_withdrawal(db_session, coach, _mobile_request(100.0))

    assert exc_info.value.status_code == 400
    assert "Daily withdrawal limit" in exc_info.value.detail


@pytest.mark.asyncio
@pytest.mark.unit
async def test_request_withdrawal_insufficient_balance(db_session):
    coach = await _coach(db_session, balance=50.0)

    with pytest.raises(HTTPException) as exc_info:
        await request_withdrawal(db_session, coach, _mobile_request(100.0))

    assert exc_info.value.status_code == 400
    assert exc_info.value.detail == "Insufficient balance"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_request_withdrawal_without_wallet(db_session):
    profile = ProfileFactory.create()
    await seed(db_session, profile, UserRoleFactory.create(profile.id, "coach"))

    with pytest.raises(HTTPException) as exc_info:
        await request_withdrawal(db_session, make_user(profile.id), _mobile_request())

    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
@pytest.mark.unit
async def test_request_withdrawal_rejects_bad_mobile(db_session):
    coach = await _coach(db_session)

    with pytest.raises(HTTPException) as exc_info:
        await request_withdrawal(db_session, coach, _mobile_request(mobile="+265123"))

    assert exc_info.value.status_code == 400


@pytest.mark.unit
@pytest.mark.parametrize(
    "mobile,valid",
    [
        ("+265991234567", True),
        ("265881234567", True),
        ("0991234567", False),
        ("771234567", True),
        ("+265 76 123 4567", True),
        ("+265661234567", False),
        ("", False),
    ],
)
def test_malawi_mobile_validation(mobile, valid):
    assert is_valid_malawi_mobile(mobile) is valid


# ---------------------------------------------------------------------------
# list / cancel
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_coach_lists_only_own_withdrawals_admin_sees_all(db_session):
    coach_a = await _coach(db_session)
    coach_b = await _coach(db_session)
    admin = await _admin(db_session)
    await seed(
        db_session,
        WithdrawalRequestFactory.create(coach_a.user_id),
        WithdrawalRequestFactory.create(coach_b.user_id, status=WithdrawalStatus.REJECTED),
    )

    own = await list_withdrawals(db_session, coach_a)
    everything = await list_withdrawals(db_session, admin)
    rejected = await list_withdrawals(
        db_session, admin, status_filter=WithdrawalStatus.REJECTED
    )

    assert [w.coach_id for w in own] == [coach_a.user_id]
    assert len(everything) == 2
    assert [w.coach_id for w in rejected] == [coach_b.user_id]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_cancel_pending_withdrawal(db_session):
    coach = await _coach(db_session)
    withdrawal = WithdrawalRequestFactory.create(coach.user_id)
    await seed(db_session, withdrawal)

    cancelled = await cancel_withdrawal(db_session, coach, withdrawal.id)

    assert cancelled.status == WithdrawalStatus.CANCELLED


@pytest.mark.asyncio
@pytest.mark.unit
async def test_cannot_cancel_someone_elses_withdrawal(db_session):
    owner = await _coach(db_session)
    other = await _coach(db_session)
    withdrawal = WithdrawalRequestFactory.create(owner.user_id)
    await seed(db_session, withdrawal)

    with pytest.raises(HTTPException) as exc_info:
        await cancel_withdrawal(db_session, other, withdrawal.id)

    assert exc_info.value.status_code == 403


# ---------------------------------------------------------------------------
# process_withdrawal
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_approve_pays_out_and_deducts_credits(db_session):
    coach = await _coach(db_session, balance=500.0)
    admin = await _admin(db_session)
    withdrawal = WithdrawalRequestFactory.create(coach.user_id, credits_amount=100.0)
    await seed(db_session, withdrawal)
    gateway = FakeGateway()

    response = await process_withdrawal(
        db_session,
        gateway,
        admin,
        withdrawal.id,
        WithdrawalProcess(action="approve", admin_notes="looks fine"),
    )

    assert response.status == WithdrawalStatus.COMPLETED
    assert response.credits_deducted == 100.0
    assert response.new_balance == 400.0
    assert gateway.payouts[0]["charge_id"] == f"WD-{withdrawal.id}"
    assert gateway.payouts[0]["amount"] == 10000.0

    stored = await db_session.get(WithdrawalRequest, withdrawal.id, populate_existing=True)
    assert stored.status == WithdrawalStatus.COMPLETED
    assert stored.payout_reference == f"ref-WD-{withdrawal.id}"
    assert stored.processed_by == admin.user_id
    assert stored.processed_at is not None

    assert (await _wallet(db_session, coach.user_id)).balance == 400.0
    txns = await _credit_transactions(db_session, coach.user_id)
    assert len(txns) == 1
    assert txns[0].transaction_type == CreditTransactionType.WITHDRAWAL
    assert txns[0].amount == -100.0
    assert (txns[0].balance_before, txns[0].balance_after) == (500.0, 400.0)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_failed_payout_refunds_credits(db_session):
    coach = await _coach(db_session, balance=500.0)
    admin = await _admin(db_session)
    withdrawal = WithdrawalRequestFactory.create(coach.user_id, credits_amount=100.0)
    await seed(db_session, withdrawal)

    response = await process_withdrawal(
        db_session,
        FakeGateway(fail_payouts=True),
        admin,
        withdrawal.id,
        WithdrawalProcess(action="approve"),
    )

    assert response.status == WithdrawalStatus.FAILED
    assert response.new_balance == 500.0

    stored = await db_session.get(WithdrawalRequest, withdrawal.id, populate_existing=True)
    assert stored.status == WithdrawalStatus.FAILED
    assert "Insufficient float" in stored.admin_notes
    assert stored.gateway_response["status"] == "failed"

    assert (await _wallet(db_session, coach.user_id)).balance == 500.0
    types = {t.transaction_type for t in await _credit_transactions(db_session, coach.user_id)}
    assert types == {
        CreditTransactionType.WITHDRAWAL,
        CreditTransactionType.WITHDRAWAL_REFUND,
    }


@pytest.mark.asyncio
@pytest.mark.unit
async def test_refund_written_once_per_withdrawal(db_session):
    coach = await _coach(db_session, balance=0.0)

    first, created_first = await refund_credits(
        db_session,
        user_id=coach.user_id,
        amount=50.0,
        description="refund",
        reference_type="withdrawal_request",
        reference_id="w-1",
    )
    await db_session.commit()
    second, created_second = await refund_credits(
        db_session,
        user_id=coach.user_id,
        amount=50.0,
        description="refund",
        reference_type="withdrawal_request",
        reference_id="w-1",
    )
    await db_session.commit()

    assert created_first is True
    assert created_second is False
    assert first.id == second.id
    assert (await _wallet(db_session, coach.user_id)).balance == 50.0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_manual_method_is_approved_without_payout(db_session):
    coach = await _coach(db_session, balance=500.0)
    admin = await _admin(db_session)
    withdrawal = WithdrawalRequestFactory.create(
        coach.user_id,
        payment_method="bank_transfer",
        payment_details={"account": "123"},
    )
    await seed(db_session, withdrawal)
    gateway = FakeGateway()

    response = await process_withdrawal(
        db_session, gateway, admin, withdrawal.id, WithdrawalProcess(action="approve")
    )

    assert response.status == WithdrawalStatus.APPROVED
    assert gateway.payouts == []
    assert (await _wallet(db_session, coach.user_id)).balance == 400.0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_reject_leaves_wallet_untouched(db_session):
    coach = await _coach(db_session, balance=500.0)
    admin = await _admin(db_session)
    withdrawal = WithdrawalRequestFactory.create(coach.user_id)
    await seed(db_session, withdrawal)

    response = await process_withdrawal(
        db_session,
        FakeGateway(),
        admin,
        withdrawal.id,
        WithdrawalProcess(action="reject", rejection_reason="Details mismatch"),
    )

    assert response.status == WithdrawalStatus.REJECTED
    assert response.credits_deducted is None

    stored = await db_session.get(WithdrawalRequest, withdrawal.id, populate_existing=True)
    assert stored.rejection_reason == "Details mismatch"
    assert (await _wallet(db_session, coach.user_id)).balance == 500.0
    assert await _credit_transactions(db_session, coach.user_id) == []


@pytest.mark.asyncio
@pytest.mark.unit
async def test_only_pending_withdrawals_are_processed(db_session):
    coach = await _coach(db_session)
    admin = await _admin(db_session)
    withdrawal = WithdrawalRequestFactory.create(
        coach.user_id, status=WithdrawalStatus.COMPLETED
    )
    await seed(db_session, withdrawal)

    with pytest.raises(HTTPException) as exc_info:
        await process_withdrawal(
            db_session,
            FakeGateway(),
            admin,
            withdrawal.id,
            WithdrawalProcess(action="approve"),
        )

    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
@pytest.mark.unit
async def test_approve_rechecks_balance(db_session):
    """Credits spent after the request was filed block the approval."""
    coach = await _coach(db_session, balance=50.0)
    admin = await _admin(db_session)
    withdrawal = WithdrawalRequestFactory.create(coach.user_id, credits_amount=100.0)
    await seed(db_session, withdrawal)

    with pytest.raises(HTTPException) as exc_info:
        await process_withdrawal(
            db_session,
            FakeGateway(),
            admin,
            withdrawal.id,
            WithdrawalProcess(action="approve"),
        )

    assert exc_info.value.status_code == 400
    await db_session.rollback()
    assert (await _wallet(db_session, coach.user_id)).balance == 50.0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_non_admin_cannot_process(db_session):
    coach = await _coach(db_session)
    withdrawal = WithdrawalRequestFactory.create(coach.user_id)
    await seed(db_session, withdrawal)

    with pytest.raises(HTTPException) as exc_info:
        await process_withdrawal(
            db_session,
            FakeGateway(),
            coach,
            withdrawal.id,
            WithdrawalProcess(action="approve"),
        )

    assert exc_info.value.status_code == 403


# ---------------------------------------------------------------------------
# Payouts that are not final
# ---------------------------------------------------------------------------


def _paychangu(initialize) -> PayChanguClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/mobile-money/":
            return httpx.Response(200, json={"status": "success", "data": []})
        return initialize(request)

    return PayChanguClient(
        "sec-test-key",
        base_url="https://paychangu.test",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_accepted_pending_payout_stays_processing(db_session):
    """PayChangu accepted the payout but has not settled it: no refund."""
    coach = await _coach(db_session, balance=500.0)
    admin = await _admin(db_session)
    withdrawal = WithdrawalRequestFactory.create(coach.user_id, credits_amount=100.0)
    await seed(db_session, withdrawal)

    gateway = _paychangu(
        lambda request: httpx.Response(
            200,
            json={
                "status": "success",
                "data": {"ref_id": "pc-901", "transaction": {"status": "pending"}},
            },
        )
    )

    response = await process_withdrawal(
        db_session, gateway, admin, withdrawal.id, WithdrawalProcess(action="approve")
    )

    assert response.status == WithdrawalStatus.PROCESSING
    assert response.new_balance == 400.0

    stored = await db_session.get(WithdrawalRequest, withdrawal.id, populate_existing=True)
    assert stored.status == WithdrawalStatus.PROCESSING
    assert stored.payout_reference == "pc-901"

    assert (await _wallet(db_session, coach.user_id)).balance == 400.0
    types = [t.transaction_type for t in await _credit_transactions(db_session, coach.user_id)]
    assert types == [CreditTransactionType.WITHDRAWAL]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_payout_timeout_stays_processing(db_session):
    coach = await _coach(db_session, balance=500.0)
    admin = await _admin(db_session)
    withdrawal = WithdrawalRequestFactory.create(coach.user_id, credits_amount=100.0)
    await seed(db_session, withdrawal)

    def timeout(request):
        raise httpx.ReadTimeout("timed out", request=request)

    response = await process_withdrawal(
        db_session,
        _paychangu(timeout),
        admin,
        withdrawal.id,
        WithdrawalProcess(action="approve"),
    )

    assert response.status == WithdrawalStatus.PROCESSING
    stored = await db_session.get(WithdrawalRequest, withdrawal.id, populate_existing=True)
    assert stored.status == WithdrawalStatus.PROCESSING
    assert stored.payout_reference == f"WD-{withdrawal.id}"
    assert (await _wallet(db_session, coach.user_id)).balance == 400.0


# ---------------------------------------------------------------------------
# reconcile_processing_withdrawals
# ---------------------------------------------------------------------------


async def _in_flight(db, coach_id, *, minutes_ago=10, reference=None):
    """A withdrawal already debited and handed to PayChangu."""
    withdrawal = WithdrawalRequestFactory.create(
        coach_id,
        credits_amount=100.0,
        status=WithdrawalStatus.PROCESSING,
        processed_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
        payout_reference=reference,
    )
    await seed(db, withdrawal)
    return withdrawal


@pytest.mark.asyncio
@pytest.mark.unit
async def test_reconcile_marks_confirmed_payout_completed(db_session):
    coach = await _coach(db_session, balance=400.0)
    withdrawal = await _in_flight(db_session, coach.user_id, reference="pc-1")
    withdrawal_id = withdrawal.id
    gateway = FakeGateway(payout_statuses={"pc-1": "completed"})

    summary = await reconcile_processing_withdrawals(db_session, gateway)

    assert summary.processed == 1
    assert summary.results[0].status == "completed"
    assert gateway.status_checks == ["pc-1"]
    stored = await db_session.get(WithdrawalRequest, withdrawal_id, populate_existing=True)
    assert stored.status == WithdrawalStatus.COMPLETED
    assert (await _wallet(db_session, coach.user_id)).balance == 400.0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_reconcile_refunds_failed_payout_once(db_session):
    coach = await _coach(db_session, balance=400.0)
    withdrawal = await _in_flight(db_session, coach.user_id)
    withdrawal_id = withdrawal.id
    gateway = FakeGateway(payout_statuses={f"WD-{withdrawal_id}": "failed"})

    first = await reconcile_processing_withdrawals(db_session, gateway)
    second = await reconcile_processing_withdrawals(db_session, gateway)

    assert first.results[0].status == "failed"
    assert first.results[0].reason == "Recipient wallet closed"
    assert second.processed == 0

    stored = await db_session.get(WithdrawalRequest, withdrawal_id, populate_existing=True)
    assert stored.status == WithdrawalStatus.FAILED
    assert "Recipient wallet closed" in stored.admin_notes
    assert (await _wallet(db_session, coach.user_id)).balance == 500.0
    refunds = [
        t
        for t in await _credit_transactions(db_session, coach.user_id)
        if t.transaction_type == CreditTransactionType.WITHDRAWAL_REFUND
    ]
    assert len(refunds) == 1


@pytest.mark.asyncio
@pytest.mark.unit
@pytest.mark.parametrize(
    "gateway_status,result_status",
    [("pending", "still_processing"), ("processing", "still_processing"), ("on_hold", "unknown")],
)
async def test_reconcile_leaves_unsettled_payouts_alone(
    db_session, gateway_status, result_status
):
    coach = await _coach(db_session, balance=400.0)
    withdrawal = await _in_flight(db_session, coach.user_id, reference="pc-2")
    withdrawal_id = withdrawal.id

    summary = await reconcile_processing_withdrawals(
        db_session, FakeGateway(payout_statuses={"pc-2": gateway_status})
    )

    assert summary.results[0].status == result_status
    stored = await db_session.get(WithdrawalRequest, withdrawal_id, populate_existing=True)
    assert stored.status == WithdrawalStatus.PROCESSING
    assert (await _wallet(db_session, coach.user_id)).balance == 400.0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_reconcile_lookup_error_keeps_processing(db_session):
    coach = await _coach(db_session, balance=400.0)
    withdrawal = await _in_flight(db_session, coach.user_id, reference="pc-3")
    withdrawal_id = withdrawal.id
    gateway = FakeGateway(
        payout_statuses={"pc-3": PayChanguError("Not found", status_code=404)}
    )

    summary = await reconcile_processing_withdrawals(db_session, gateway)

    assert summary.results[0].status == "error"
    assert summary.results[0].reason == "api_error_404"
    stored = await db_session.get(WithdrawalRequest, withdrawal_id, populate_existing=True)
    assert stored.status == WithdrawalStatus.PROCESSING


@pytest.mark.asyncio
@pytest.mark.unit
async def test_reconcile_skips_recent_payouts(db_session):
    coach = await _coach(db_session, balance=400.0)
    await _in_flight(db_session, coach.user_id, minutes_ago=1)
    gateway = FakeGateway()

    summary = await reconcile_processing_withdrawals(db_session, gateway)

    assert summary.processed == 0
    assert gateway.status_checks == []


@pytest.mark.asyncio
@pytest.mark.unit
async def test_reconcile_batch_size(db_session, monkeypatch):
    monkeypatch.setattr(get_settings(), "WITHDRAWAL_RECONCILE_BATCH_SIZE", 2)
    coach = await _coach(db_session, balance=400.0)
    for _ in range(3):
        await _in_flight(db_session, coach.user_id)

    summary = await reconcile_processing_withdrawals(db_session, FakeGateway())

    assert summary.processed == 2


@pytest.mark.asyncio
@pytest.mark.unit
async def test_reconcile_worker_task_returns_json_summary(monkeypatch):
    from services.billing_service import tasks, worker
    from services.billing_service.schemas import (
        WithdrawalReconcileResponse,
        WithdrawalReconcileResult,
    )

    withdrawal_id = uuid.uuid4()

    async def fake_reconcile():
        return WithdrawalReconcileResponse(
            processed=1,
            results=[WithdrawalReconcileResult(withdrawal_id=withdrawal_id, status="completed")],
        )

    monkeypatch.setattr(tasks, "reconcile_withdrawal_payouts", fake_reconcile)

    summary = await worker.task_reconcile_withdrawal_payouts({})

    assert summary["results"][0]["withdrawal_id"] == str(withdrawal_id)
    scheduled = {job.coroutine for job in worker.WorkerSettings.cron_jobs}
    assert worker.task_reconcile_withdrawal_payouts in scheduled
