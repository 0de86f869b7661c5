"""ARQ worker for payment reconciliation and fulfillment retries."""

from arq import cron
from arq.connections import RedisSettings
from libs.common.config import get_settings
from libs.common.logging import configure_logging, get_logger

logger = get_logger(__name__)


async def startup(ctx: dict):
    configure_logging()


async def task_retry_fulfillment(ctx: dict):
    from services.checkout_service.tasks import retry_failed_fulfillment

    logger.info("Running: retry_failed_fulfillment")
    await retry_failed_fulfillment()


async def task_reconcile_stale_intents(ctx: dict):
    from services.checkout_service.tasks import reconcile_stale_intents

    logger.info("Running: reconcile_stale_intents")
    await reconcile_stale_intents()


class WorkerSettings:
    redis_settings = RedisSettings.from_dsn(get_settings().REDIS_URL)
    on_startup = startup

    functions = [
        task_retry_fulfillment,
        task_reconcile_stale_intents,
    ]

    cron_jobs = [
        cron(
            task_retry_fulfillment,
            minute={0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55},
            run_at_startup=True,
        ),
        cron(
            task_reconcile_stale_intents,
            minute={2, 7, 12, 17, 22, 27, 32, 37, 42, 47, 52, 57},
            run_at_startup=True,
        ),
    ]
