"""APScheduler integration for FastAPI.

Manages one interval job per running agent plus the journal flush job.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

JOURNAL_FLUSH_JOB_ID = "journal_flush"


def _job_id(agent_id: int) -> str:
    return f"agent_{agent_id}"


def add_agent_job(
    run_cycle: Callable[[int], Awaitable],
    agent_id: int,
    interval_minutes: int,
    delay_seconds: float = 0,
    sched: AsyncIOScheduler | None = None,
):
    """Add or replace an agent's job; the first run fires after ``delay_seconds``."""
    sched = sched or scheduler
    job_id = _job_id(agent_id)

    if sched.get_job(job_id):
        sched.remove_job(job_id)

    sched.add_job(
        run_cycle,
        trigger=IntervalTrigger(minutes=interval_minutes),
        args=[agent_id],
        id=job_id,
        name=f"Agent {agent_id}",
        next_run_time=datetime.now(timezone.utc) + timedelta(seconds=delay_seconds),
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=60,
    )
    logger.info(f"Scheduled agent {agent_id} every {interval_minutes}m (first run in {delay_seconds:g}s)")


def remove_agent_job(agent_id: int, sched: AsyncIOScheduler | None = None) -> bool:
    sched = sched or scheduler
    job_id = _job_id(agent_id)
    if sched.get_job(job_id):
        sched.remove_job(job_id)
        logger.info(f"Removed job for agent {agent_id}")
        return True
    return False


def add_journal_flush_job(
    flush: Callable[[], Awaitable], seconds: float, sched: AsyncIOScheduler | None = None
):
    """Single drain job for coalesced journal writes."""
    sched = sched or scheduler
    sched.add_job(
        flush,
        trigger=IntervalTrigger(seconds=seconds),
        id=JOURNAL_FLUSH_JOB_ID,
        name="Journal flush",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )


def start_scheduler(sched: AsyncIOScheduler | None = None):
    sched = sched or scheduler
    if not sched.running:
        sched.start()
    logger.info(f"Scheduler started with {len(sched.get_jobs())} jobs")


def stop_scheduler(sched: AsyncIOScheduler | None = None):
    """Shut down the scheduler."""
    sched = sched or scheduler
    if sched.running:
        sched.shutdown(wait=False)
        logger.info("Scheduler stopped")


def get_scheduler_status(sched: AsyncIOScheduler | None = None) -> dict:
    """Return current scheduler state for the API."""
    sched = sched or scheduler
    jobs = sched.get_jobs()
    return {
        "running": sched.running,
        "job_count": len(jobs),
        "jobs": [
            {
                "id": j.id,
                "name": j.name,
                "next_run": str(j.next_run_time) if j.next_run_time else None,
                "trigger": str(j.trigger),
            }
            for j in jobs
        ],
    }
