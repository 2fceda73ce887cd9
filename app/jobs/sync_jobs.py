"""
Order Sync Jobs

Background jobs that keep orders and the accounting system in step:
- Retry document syncs that failed or were lost with a restart
- Drop expired geocode cache entries
"""

import logging
from datetime import datetime, timezone

from app.services.external_sync import ExternalSyncOrchestrator, SyncQueue
from app.services.geocoding_service import GeocodingCache

logger = logging.getLogger(__name__)


async def retry_pending_syncs(orchestrator: ExternalSyncOrchestrator, queue: SyncQueue, limit: int = 100) -> dict:
    """
    Re-enqueue orders whose status implies an accounting document
    that was never created.

    Documents already stored on the order are skipped by the orchestrator,
    so enqueuing an order twice never creates duplicates.
    """
    logger.info("Starting pending sync retry sweep...")
    start_time = datetime.now(timezone.utc)

    jobs = await orchestrator.pending_jobs(limit=limit)
    for job in jobs:
        queue.enqueue(job.lead_id, job.trigger)

    duration = (datetime.now(timezone.utc) - start_time).total_seconds()
    logger.info(f"Sync retry sweep queued {len(jobs)} jobs in {duration:.2f}s")
    return {"queued": len(jobs), "duration_seconds": duration}


async def cleanup_geocode_cache(cache: GeocodingCache) -> int:
    removed = await cache.cleanup_expired()
    if removed:
        logger.info(f"Removed {removed} expired geocode cache entries")
    return removed
