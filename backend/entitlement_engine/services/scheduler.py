"""
Background Job Scheduler.

WHAT: Configures and manages APScheduler for background tasks.

WHY: The reconciliation sweep must run without any user request, so that
subscriptions whose webhooks were lost still converge.

HOW: Uses APScheduler with AsyncIOScheduler for async job support and an
in-memory job store. The sweep job is idempotent, so nothing is lost when a
restart drops the schedule.

Example:
    # In main.py startup:
    from entitlement_engine.services.scheduler import start_scheduler, shutdown_scheduler

    @app.on_event("startup")
    async def startup():
        await start_scheduler()

    @app.on_event("shutdown")
    async def shutdown():
        await shutdown_scheduler()
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.triggers.interval import IntervalTrigger

from entitlement_engine.core.config import settings
from entitlement_engine.services.reconciliation_sweep import get_reconciliation_sweep


logger = logging.getLogger(__name__)


RECONCILIATION_SWEEP_JOB_ID = "reconciliation_sweep"

# Global scheduler instance
_scheduler: Optional[AsyncIOScheduler] = None


async def start_scheduler() -> None:
    """
    Start the background job scheduler.

    HOW:
    1. Creates AsyncIOScheduler with memory job store
    2. Registers the reconciliation sweep job (when enabled and Stripe
       is configured)
    3. Starts the scheduler

    Note: Call this from FastAPI startup event.
    """
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        logger.warning("Scheduler already running")
        return

    jobstores = {
        "default": MemoryJobStore()
    }

    executors = {
        "default": AsyncIOExecutor()
    }

    job_defaults = {
        "coalesce": True,  # Combine multiple missed runs into one
        "max_instances": 1,  # A sweep never overlaps the previous one
        "misfire_grace_time": 60,
    }

    _scheduler = AsyncIOScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone="UTC",
    )

    _register_reconciliation_sweep_job()

    _scheduler.start()
    logger.info(f"Scheduler started with {len(_scheduler.get_jobs())} jobs")


def _register_reconciliation_sweep_job() -> None:
    """
    Register the reconciliation sweep job.

    WHY: Without a Stripe key every provider call would fail, so the job is
    skipped rather than logging a failure per customer every interval.
    """
    if _scheduler is None:
        logger.error("Cannot register job: scheduler not initialized")
        return

    if not settings.RECONCILIATION_SWEEP_ENABLED:
        logger.info("Reconciliation sweep disabled by configuration")
        return

    if not settings.stripe_configured:
        logger.warning("Stripe is not configured; reconciliation sweep not scheduled")
        return

    interval = settings.RECONCILIATION_SWEEP_INTERVAL_SECONDS
    _scheduler.add_job(
        func=run_sweep_now,
        trigger=IntervalTrigger(seconds=interval),
        id=RECONCILIATION_SWEEP_JOB_ID,
        name="Subscription Reconciliation Sweep",
        replace_existing=True,
    )

    logger.info(f"Registered reconciliation sweep job (interval: {interval}s)")


async def shutdown_scheduler() -> None:
    """
    Shut down the background job scheduler.

    Note: Call this from FastAPI shutdown event.
    """
    global _scheduler

    if _scheduler is None:
        logger.info("Scheduler not running")
        return

    if not _scheduler.running:
        logger.info("Scheduler already stopped")
        _scheduler = None
        return

    logger.info("Shutting down scheduler...")
    _scheduler.shutdown(wait=True)
    _scheduler = None
    logger.info("Scheduler shut down successfully")


async def run_sweep_now() -> dict:
    """
    Run the reconciliation sweep immediately.

    Returns:
        Dict with the sweep report
    """
    report = await get_reconciliation_sweep().run()
    return report.to_dict()


def get_scheduler_status() -> dict:
    """
    Get scheduler status information.

    WHY: Exposed on /health so operators can see whether the sweep is
    scheduled and when it runs next.

    Returns:
        Dict with scheduler status and job details
    """
    if _scheduler is None:
        return {
            "running": False,
            "jobs": [],
            "message": "Scheduler not initialized",
        }

    jobs = []
    for job in _scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run_time": str(job.next_run_time) if job.next_run_time else None,
            "trigger": str(job.trigger),
        })

    return {
        "running": _scheduler.running,
        "jobs": jobs,
        "message": "Scheduler is running" if _scheduler.running else "Scheduler is paused",
    }
