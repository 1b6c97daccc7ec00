"""Periodic cleanup: free abandoned jobs and purge old history."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Dict

from marketing_gateway.models import utcnow
from marketing_gateway.settings import Settings
from marketing_gateway.storage import JobStore

logger = logging.getLogger(__name__)


def expire_stuck_jobs(store: JobStore) -> int:
    """Move processing jobs whose lease ran out (e.g. after a crash) to error."""
    count = store.expire_leases(utcnow())
    if count:
        logger.warning("Expired %d job(s) stuck in processing", count)
    return count


def purge_inactive_jobs(store: JobStore, retention_days: int) -> int:
    cutoff = utcnow() - timedelta(days=retention_days)
    count = store.purge_inactive(cutoff)
    logger.info("Cleanup completed: removed %d job(s) inactive since %s", count, cutoff.date())
    return count


def run_housekeeping(store: JobStore, settings: Settings) -> Dict[str, int]:
    return {
        "expired": expire_stuck_jobs(store),
        "purged": purge_inactive_jobs(store, settings.RETENTION_DAYS),
    }
