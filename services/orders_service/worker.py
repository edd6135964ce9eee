"""ARQ worker for courier polling and abandoned checkout cleanup."""

from arq import cron
from libs.common.arq_config import get_redis_settings
from libs.common.logging import get_logger

logger = get_logger(__name__)


async def task_poll_active_deliveries(ctx: dict):
    from services.orders_service.tasks import poll_active_deliveries

    logger.info("Running: poll_active_deliveries")
    await poll_active_deliveries()


async def task_cancel_abandoned_orders(ctx: dict):
    from services.orders_service.tasks import cancel_abandoned_orders

    logger.info("Running: cancel_abandoned_orders")
    await cancel_abandoned_orders()


class WorkerSettings:
    redis_settings = get_redis_settings()

    functions = [
        task_poll_active_deliveries,
        task_cancel_abandoned_orders,
    ]

    cron_jobs = [
        cron(
            task_poll_active_deliveries,
            minute=set(range(0, 60)),
            second={30},
            run_at_startup=True,
        ),
        cron(
            task_cancel_abandoned_orders,
            minute={7, 22, 37, 52},
        ),
    ]
