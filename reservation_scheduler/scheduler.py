# reservation_scheduler/scheduler.py
"""
Background task scheduler for the reservation sweep.

Uses APScheduler to run the expiration and promotion sweep on a fixed
interval inside the API process (or standalone, see
reservation_scheduler/background_tasks/reservation_tasks.py).
"""

import logging
from typing import Callable, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from reservation_scheduler.core.config import settings

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "reservation_sweep"

# Global scheduler instance
scheduler = None


def run_reservation_sweep():
    """Job entry point: one sweep with the process-wide components."""
    from reservation_scheduler.services.factory import get_sweeper

    result = get_sweeper().run_once()
    for error in result.errors:
        logger.warning(f"Sweep error: {error}")
    return result


def _on_job_error(event):
    """Log scheduler job errors with full context."""
    job_id = event.job_id
    exc = event.exception
    tb = event.traceback
    logger.error(
        "Scheduled job FAILED: job_id=%s error=%s",
        job_id, exc,
        exc_info=(type(exc), exc, None) if exc else None,
    )
    if tb:
        logger.error("Traceback for job %s:\n%s", job_id, tb)


def _on_job_missed(event):
    """Log when a scheduled job misses its execution window."""
    logger.warning(
        "Scheduled job MISSED: job_id=%s scheduled_run_time=%s",
        event.job_id,
        event.scheduled_run_time,
    )


def init_scheduler(
    job: Optional[Callable] = None, interval_seconds: Optional[int] = None
):
    """
    Start the background scheduler with the reservation sweep.

    This is called once when the application starts up. ``job`` and
    ``interval_seconds`` default to the sweep and SWEEP_INTERVAL_SECONDS.
    """
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already initialized")
        return scheduler

    interval = interval_seconds or settings.SWEEP_INTERVAL_SECONDS

    scheduler = BackgroundScheduler(
        timezone="UTC",
        job_defaults={
            'coalesce': True,  # Combine missed executions
            'max_instances': 1,  # Only one sweep at a time per process
            'misfire_grace_time': interval,
        }
    )

    # Expire overdue holds, send expiring-soon notices, lapse unclaimed promotions
    scheduler.add_job(
        func=job or run_reservation_sweep,
        trigger=IntervalTrigger(seconds=interval),
        id=SWEEP_JOB_ID,
        name='Expire Holds and Promote Waitlist',
        replace_existing=True
    )
    logger.info(f"Scheduled job: {SWEEP_JOB_ID} (every {interval} seconds)")

    scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)
    scheduler.add_listener(_on_job_missed, EVENT_JOB_MISSED)

    scheduler.start()
    logger.info("Background scheduler started")
    return scheduler


def shutdown_scheduler():
    """
    Gracefully shutdown the scheduler.

    Waits for a running sweep to finish so no hold is left mid-transition.
    """
    global scheduler

    if scheduler is not None:
        scheduler.shutdown(wait=True)
        logger.info("Background scheduler shutdown complete")
        scheduler = None


def get_scheduler():
    """
    Get the global scheduler instance.

    Returns:
        BackgroundScheduler instance or None if not initialized
    """
    return scheduler


def get_scheduler_status():
    """
    Get the current status of all scheduled jobs.

    Returns:
        Dict with the scheduler state and each job's next run time
    """
    if scheduler is None:
        return {"status": "not_initialized", "jobs": []}

    jobs = []
    for job in scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
            "trigger": str(job.trigger)
        })

    return {
        "status": "running" if scheduler.running else "stopped",
        "jobs": jobs
    }
