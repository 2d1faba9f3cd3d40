"""Recover refresh jobs left unfinished by a previous process."""

import logging

from sqlalchemy import select

from resale_tracker import metrics
from resale_tracker.db.models import JobStatus, RefreshJob
from resale_tracker.db.session import AsyncSessionLocal
from resale_tracker.utils.clock import utcnow

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Interrupted by restart"


async def recover_interrupted_jobs(session_factory=None) -> int:
    """
    Mark pending and running refresh jobs as failed.

    Job tasks live in the process that started them, so any job still open at
    startup can never finish. Pollers see a terminal state instead of a job
    stuck at its last progress count.

    Returns:
        Number of jobs marked failed
    """
    session_factory = session_factory or AsyncSessionLocal

    async with session_factory() as db:
        result = await db.execute(
            select(RefreshJob).where(
                RefreshJob.status.in_([JobStatus.PENDING.value, JobStatus.RUNNING.value])
            )
        )
        jobs = result.scalars().all()

        for job in jobs:
            logger.warning(
                f"Refresh job {job.id} for batch {job.batch_id} was {job.status} at startup "
                f"({job.processed_items}/{job.total_items} processed). Marking failed."
            )
            job.status = JobStatus.FAILED.value
            job.error_message = INTERRUPTED_MESSAGE
            job.completed_at = utcnow()
            metrics.batch_jobs_total.labels(status=JobStatus.FAILED.value).inc()

        await db.commit()

    if jobs:
        logger.info(f"Recovered {len(jobs)} interrupted refresh job(s)")
    return len(jobs)
