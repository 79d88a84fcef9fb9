import logging
import sys
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace

from apscheduler.schedulers.asyncio import AsyncIOScheduler

sys.path.append(str(Path(__file__).resolve().parents[1]))

from payment_fixtures import make_settings, run
from paygate.services.payment.jobs import expire_orders_job, register_payment_jobs, sync_orders_job


def test_jobs_are_registered_with_configured_intervals(tmp_path):
    scheduler = AsyncIOScheduler()
    settings = make_settings(tmp_path, expire_interval_minutes=7, sync_interval_minutes=45)
    engine = SimpleNamespace()

    register_payment_jobs(scheduler, engine, settings)

    expire = scheduler.get_job("payment_expire_orders")
    sync = scheduler.get_job("payment_sync_orders")
    assert expire.trigger.interval == timedelta(minutes=7)
    assert sync.trigger.interval == timedelta(minutes=45)
    assert expire.args == (engine,)
    assert sync.func is sync_orders_job


def test_job_failures_are_logged_not_raised(caplog):
    async def explode():
        raise RuntimeError("database is locked")

    engine = SimpleNamespace(expire_orders=explode, sync_pending_orders=explode)

    with caplog.at_level(logging.ERROR):
        run(expire_orders_job(engine))
        run(sync_orders_job(engine))

    messages = [record.getMessage() for record in caplog.records]
    assert "Expire orders job failed" in messages
    assert "Sync orders job failed" in messages


def test_expire_job_reports_count(caplog):
    async def expire():
        return 3

    with caplog.at_level(logging.INFO):
        run(expire_orders_job(SimpleNamespace(expire_orders=expire)))

    finished = [r for r in caplog.records if r.getMessage() == "Expire orders job finished"]
    assert finished and finished[0].count == 3
