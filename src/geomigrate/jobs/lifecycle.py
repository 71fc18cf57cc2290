"""Job state machine and the base class every worker runner extends.

States: ``pending → running → {completed | failed}``. A cancelled job is
``failed`` with ``CANCELLED_MESSAGE``. A paused job goes back from
``running`` to ``pending`` and is re-enqueued by ``resume_job``.
``running → running`` covers at-least-once redelivery of a job whose
worker died mid-run.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from geomigrate.analysis.analyzer import AnalysisService
from geomigrate.config import GeomigrateConfig
from geomigrate.crawl.crawler import CrawlerService
from geomigrate.generation.generator import GenerationService
from geomigrate.jobs.progress import ErrorEntry, compute_progress, push_rolling
from geomigrate.jobs.queue import QueueMessage, WorkQueue
from geomigrate.matching.matcher import MatchingService
from geomigrate.store.models import Job, JobStatus, JobType, utcnow
from geomigrate.store.retry import StoreCaller

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PENDING}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class InvalidTransitionError(Exception):
    """A status change the job state machine does not allow."""


def check_transition(current: JobStatus, target: JobStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(f"Cannot move job from {current} to {target}")


class Control(Enum):
    """Outcome of the cooperative check made between work items."""

    CONTINUE = "continue"
    CANCELLED = "cancelled"
    PAUSE = "pause"


@dataclass
class WorkerContext:
    """Everything a runner needs, built once per worker process."""

    config: GeomigrateConfig
    db: StoreCaller
    queue: WorkQueue
    crawler_factory: Callable[[], CrawlerService]
    analyzer: AnalysisService
    matcher: MatchingService
    generator: GenerationService
    closers: list[Callable[[], Any]] = field(default_factory=list)


class JobRunner(ABC):
    """Runs one queue message for one job type.

    Subclasses implement :meth:`execute`. ``run`` takes care of the
    surrounding state transitions: any exception escaping ``execute``
    marks the job failed and is re-raised to the consumer.
    """

    job_type: ClassVar[JobType]

    def __init__(self, ctx: WorkerContext) -> None:
        self.ctx = ctx
        self.db = ctx.db
        self.store = ctx.db.store
        self._errors: list[dict[str, Any]] = []
        self._error_window = ctx.config.crawl.error_window

    async def run(self, message: QueueMessage) -> None:
        job = await self.db(self.store.require_job, message.job_id)
        if job.is_terminal:
            logger.info(
                "Skipping %s job %s: already %s", job.job_type, job.id, job.status.value
            )
            return
        if job.status == JobStatus.RUNNING:
            logger.warning("Job %s redelivered while running; restarting it", job.id)

        job = await self.mark_running(job)
        # Runners are reused across messages; the error log is per job.
        self._errors = []
        logger.info("Started %s job %s", self.job_type.value, job.id)
        try:
            await self.execute(job)
        except Exception as exc:
            await self.mark_failed(job.id, str(exc) or exc.__class__.__name__)
            raise

    @abstractmethod
    async def execute(self, job: Job) -> None: ...

    # ── Transitions ──────────────────────────────────────────────

    async def _transition(self, job_id: str, target: JobStatus, **fields: Any) -> Job | None:
        """Apply a status change; returns None if the job was cancelled meanwhile."""
        current = await self.db(self.store.require_job, job_id)
        if current.is_cancelled:
            logger.info("Job %s was cancelled; leaving status untouched", job_id)
            return None
        check_transition(current.status, target)
        return await self.db(self.store.update_job, job_id, status=target, **fields)

    async def mark_running(self, job: Job) -> Job:
        fields: dict[str, Any] = {"error_message": None}
        if job.started_at is None:
            fields["started_at"] = utcnow()
        updated = await self._transition(job.id, JobStatus.RUNNING, **fields)
        return updated or job

    async def mark_completed(
        self, job_id: str, processed: int, total: int, status_message: str
    ) -> None:
        await self._transition(
            job_id,
            JobStatus.COMPLETED,
            progress=100,
            processed_items=processed,
            total_items=max(total, processed),
            completed_at=utcnow(),
        )
        await self.db(self.store.patch_job_metadata, job_id, {"statusMessage": status_message})
        logger.info("Completed %s job %s (%d item(s))", self.job_type.value, job_id, processed)

    async def mark_failed(self, job_id: str, message: str) -> None:
        logger.error("%s job %s failed: %s", self.job_type.value, job_id, message)
        updated = await self._transition(
            job_id, JobStatus.FAILED, error_message=message, completed_at=utcnow()
        )
        if updated is not None:
            await self.db(
                self.store.patch_job_metadata, job_id, {"statusMessage": f"Failed: {message}"}
            )

    async def pause(self, job_id: str, extra: dict[str, Any] | None = None) -> None:
        """Park the job as pending so ``resume_job`` can re-enqueue it."""
        if await self._transition(job_id, JobStatus.PENDING) is None:
            return
        patch = {
            "paused": True,
            "pauseRequested": False,
            "pausedAt": utcnow().isoformat(),
            "statusMessage": "Paused",
            **(extra or {}),
        }
        await self.db(self.store.patch_job_metadata, job_id, patch)
        logger.info("Paused %s job %s", self.job_type.value, job_id)

    # ── Cooperative control / progress ───────────────────────────

    async def check_control(self, job_id: str) -> Control:
        """Re-read the job record between items for cancel or pause requests."""
        job = await self.db(self.store.require_job, job_id)
        if job.is_cancelled:
            logger.info("Job %s cancelled by user; stopping", job_id)
            return Control.CANCELLED
        if job.pause_requested:
            return Control.PAUSE
        return Control.CONTINUE

    async def report(
        self,
        job_id: str,
        processed: int,
        total: int | None,
        metadata: dict[str, Any] | None = None,
        *,
        cap: int = 100,
    ) -> None:
        fields: dict[str, Any] = {
            "processed_items": processed,
            "progress": compute_progress(processed, total, cap=cap),
        }
        await self.db(self.store.update_job, job_id, **fields)
        if metadata:
            await self.db(self.store.patch_job_metadata, job_id, metadata)

    def record_error(self, url: str, error: str) -> list[dict[str, Any]]:
        """Add to the rolling error log; returns the window to persist."""
        entry = ErrorEntry(url=url, error=error).to_metadata()
        return push_rolling(self._errors, entry, self._error_window)
