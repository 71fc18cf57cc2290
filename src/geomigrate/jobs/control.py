"""Out-of-band job operations used by the API layer and the CLI.

Only ``status``/``error_message``/``completed_at`` (cancel) and the
``pauseRequested``/``paused`` metadata keys are written here; everything
else on a job belongs to its worker.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel

from geomigrate.jobs.queue import WorkQueue
from geomigrate.store.models import CANCELLED_MESSAGE, Job, JobStatus, JobType, utcnow
from geomigrate.store.retry import StoreCaller

logger = logging.getLogger(__name__)


class JobControlError(Exception):
    """The requested operation does not apply to the job's current state."""


async def enqueue_job(
    db: StoreCaller,
    queue: WorkQueue,
    job_type: JobType,
    payload: BaseModel | dict[str, Any],
    project_id: str = "",
) -> Job:
    """Create a pending job record and put its message on the queue."""
    data = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else dict(payload)
    job = await db(
        db.store.create_job,
        Job(job_type=job_type, project_id=project_id, payload=data),
    )
    await queue.enqueue(job_type, data, job.id)
    logger.info("Enqueued %s job %s", job_type.value, job.id)
    return job


async def cancel_job(db: StoreCaller, queue: WorkQueue, job_id: str) -> Job:
    """Mark a pending or running job cancelled.

    A running worker notices at its next control check and stops; pages it
    already saved are kept.

    Raises:
        JobNotFoundError: If the job does not exist.
        JobControlError: If the job already finished.
    """
    job = await db(db.store.require_job, job_id)
    if job.is_terminal:
        raise JobControlError(f"Job {job_id} is already {job.status.value}")
    if job.status == JobStatus.PENDING:
        await queue.remove(job.job_type, job_id)
    job = await db(
        db.store.update_job,
        job_id,
        status=JobStatus.FAILED,
        error_message=CANCELLED_MESSAGE,
        completed_at=utcnow(),
    )
    await db(
        db.store.patch_job_metadata,
        job_id,
        {"statusMessage": CANCELLED_MESSAGE, "pauseRequested": False},
    )
    logger.info("Cancelled job %s", job_id)
    return job


async def request_pause(db: StoreCaller, job_id: str) -> Job:
    """Ask a running worker to park the job at its next control check."""
    job = await db(db.store.require_job, job_id)
    if job.status != JobStatus.RUNNING:
        raise JobControlError(
            f"Only running jobs can be paused; job {job_id} is {job.status.value}"
        )
    await db(
        db.store.patch_job_metadata,
        job_id,
        {"pauseRequested": True, "pauseRequestedAt": utcnow().isoformat()},
    )
    logger.info("Pause requested for job %s", job_id)
    return await db(db.store.require_job, job_id)


async def resume_job(db: StoreCaller, queue: WorkQueue, job_id: str) -> Job:
    """Re-enqueue a paused job with its original payload."""
    job = await db(db.store.require_job, job_id)
    if job.status != JobStatus.PENDING or not job.metadata.get("paused"):
        raise JobControlError(f"Job {job_id} is not paused")
    await db(
        db.store.patch_job_metadata,
        job_id,
        {"paused": False, "pauseRequested": False, "statusMessage": "Resuming..."},
    )
    await queue.enqueue(job.job_type, job.payload, job.id)
    logger.info("Resumed %s job %s", job.job_type.value, job_id)
    return await db(db.store.require_job, job_id)
