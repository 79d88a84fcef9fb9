"""Periodic payment jobs: expiry sweep and provider reconciliation."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

CATEGORY = "SCHEDULE"


async def expire_orders_job(engine) -> None:
    try:
        count = await engine.expire_orders()
    except Exception:
        logger.exception("Expire orders job failed", extra={"category": CATEGORY})
        return
    logger.info("Expire orders job finished", extra={"category": CATEGORY, "count": count})


async def sync_orders_job(engine) -> None:
    try:
        await engine.sync_pending_orders()
    except Exception:
        logger.exception("Sync orders job failed", extra={"category": CATEGORY})


def register_payment_jobs(scheduler: AsyncIOScheduler, engine, settings) -> None:
    """Register both jobs; ``replace_existing`` keeps restarts from duplicating them."""
    # Закрытие просроченных заказов
    scheduler.add_job(
        func=expire_orders_job,
        trigger=IntervalTrigger(minutes=settings.expire_interval_minutes),
        args=[engine],
        id="payment_expire_orders",
        replace_existing=True,
        max_instances=1,
        name="Закрытие просроченных заказов",
    )

    # Сверка статусов с провайдерами
    scheduler.add_job(
        func=sync_orders_job,
        trigger=IntervalTrigger(minutes=settings.sync_interval_minutes),
        args=[engine],
        id="payment_sync_orders",
        replace_existing=True,
        max_instances=1,
        name="Сверка статусов заказов",
    )
    logger.info(
        "Payment jobs registered",
        extra={
            "category": CATEGORY,
            "expire_minutes": settings.expire_interval_minutes,
            "sync_minutes": settings.sync_interval_minutes,
        },
    )


def start_scheduler(engine, settings) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler()
    register_payment_jobs(scheduler, engine, settings)
    scheduler.start()
    return scheduler
