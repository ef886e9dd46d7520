# app/tasks/scheduler.py
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app.core.config import settings
from app.core.timeutil import TZ
from app.services.bootstrap_service import WalletEngine
from app.tasks.deposits import scan_deposits_job
from app.tasks.reconcile import reconcile_withdrawals_job

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler(timezone=TZ)


def start_scheduler(engine: WalletEngine):
    """
    Start the background jobs:
      - deposit scan over every assigned address
      - reconciliation of withdrawals whose broadcast outcome is unknown
    Neither job runs when real money is disabled.
    """
    if not engine.real_money:
        logger.warning("Scheduler not started: real money disabled")
        return

    scheduler.add_job(
        scan_deposits_job,
        "interval",
        seconds=settings.DEPOSIT_POLL_SECONDS,
        args=[engine],
        id="scan_deposits",
        replace_existing=True,
        coalesce=True,
        max_instances=1,        # a scan never overlaps itself
        misfire_grace_time=10,
    )

    scheduler.add_job(
        reconcile_withdrawals_job,
        "interval",
        seconds=settings.RECONCILE_POLL_SECONDS,
        args=[engine],
        id="reconcile_withdrawals",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
        misfire_grace_time=10,
    )

    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started")


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
