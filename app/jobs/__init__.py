"""
Background Jobs Module

Handles scheduled tasks for:
- Accounting document sync retries
- Geocode cache cleanup
"""

from app.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler
from app.jobs.sync_jobs import retry_pending_syncs, cleanup_geocode_cache

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "retry_pending_syncs",
    "cleanup_geocode_cache",
]
