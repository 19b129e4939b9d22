"""Background cleanup helpers for abandoned synthesis jobs."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from .jobs import JobOrchestrator, job_age

logger = logging.getLogger(__name__)


async def cleanup_stale_jobs(
    orchestrator: JobOrchestrator,
    *,
    max_age_hours: int,
    now: datetime | None = None,
) -> int:
    """Delete jobs created more than ``max_age_hours`` ago."""

    if max_age_hours <= 0:
        return 0

    reference = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    cutoff = timedelta(hours=max_age_hours)
    removed = 0

    for job_id, meta in (await orchestrator.list_jobs()).items():
        age = job_age(meta, reference)
        if age is None or age < cutoff:
            continue
        await orchestrator.purge(job_id, int(meta.get("total_chunks", 0)))
        removed += 1

    if removed:
        logger.info("Cleaned up %d stale job(s)", removed)
    return removed


__all__ = ["cleanup_stale_jobs"]
