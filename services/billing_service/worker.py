"""ARQ worker for scheduled renewals and payout reconciliation."""

from arq import cron
from arq.connections import RedisSettings
from libs.common.config import get_settings
from libs.common.logging import configure_logging, get_logger

logger = get_logger(__name__)


async def startup(ctx: dict):
    configure_logging()


async def task_run_coach_subscription_renewals(ctx: dict):
    from services.billing_service.tasks import run_coach_subscription_renewals

    logger.info("Running: run_coach_subscription_renewals")
    summary = await run_coach_subscription_renewals()
    return summary.model_dump(mode="json")


async def task_reconcile_withdrawal_payouts(ctx: dict):
    from services.billing_service.tasks import reconcile_withdrawal_payouts

    logger.info("Running: reconcile_withdrawal_payouts")
    summary = await reconcile_withdrawal_payouts()
    return summary.model_dump(mode="json")


class WorkerSettings:
    redis_settings = RedisSettings.from_dsn(get_settings().REDIS_URL)
    on_startup = startup

    functions = [
        task_run_coach_subscription_renewals,
        task_reconcile_withdrawal_payouts,
    ]

    cron_jobs = [
        cron(
            task_run_coach_subscription_renewals,
            minute=get_settings().RENEWAL_CRON_MINUTES,
            run_at_startup=False,
        ),
        cron(
            task_reconcile_withdrawal_payouts,
            minute=get_settings().WITHDRAWAL_RECONCILE_CRON_MINUTES,
            run_at_startup=False,
        ),
    ]
