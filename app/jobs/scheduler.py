"""
APScheduler Configuration

Background job scheduler for order maintenance:
- Accounting sync retry sweep (opt-in via SYNC_RETRY_ENABLED)
- Geocode cache expiry cleanup
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from app.config import settings
from app.jobs.sync_jobs import retry_pending_syncs, cleanup_geocode_cache

logger = logging.getLogger(__name__)

# Job stores
jobstores = {
    'default': MemoryJobStore()
}

# Executors
executors = {
    'default': AsyncIOExecutor(),
}

# Job defaults
job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 60,  # Allow 60 seconds grace time for misfires
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone='Asia/Kolkata'
)


async def run_sync_retry(orchestrator, queue):
    """Wrapper called by APScheduler; a failed sweep waits for the next interval."""
    try:
        await retry_pending_syncs(orchestrator, queue)
    except Exception as e:
        logger.error(f"Job 'retry_pending_syncs' failed: {e}")


def start_scheduler(orchestrator=None, sync_queue=None, geocoding_cache=None):
    """Start the background job scheduler with the jobs that have their dependencies."""
    if scheduler.running:
        return

    if settings.SYNC_RETRY_ENABLED and orchestrator is not None and sync_queue is not None:
        scheduler.add_job(
            run_sync_retry,
            'interval',
            minutes=settings.SYNC_RETRY_INTERVAL_MINUTES,
            args=[orchestrator, sync_queue],
            id='retry_pending_syncs',
            name='Retry Pending Accounting Syncs',
            replace_existing=True,
        )

    if geocoding_cache is not None:
        scheduler.add_job(
            cleanup_geocode_cache,
            'interval',
            hours=1,
            args=[geocoding_cache],
            id='cleanup_geocode_cache',
            name='Cleanup Geocode Cache',
            replace_existing=True,
        )

    scheduler.start()
    logger.info("Background job scheduler started")

    # Log all scheduled jobs
    jobs = scheduler.get_jobs()
    for job in jobs:
        logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background job scheduler stopped")


def get_job_status():
    """Get status of all scheduled jobs."""
    jobs = scheduler.get_jobs()
    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run_time': str(job.next_run_time) if job.next_run_time else None,
            'trigger': str(job.trigger),
        }
        for job in jobs
    ]
