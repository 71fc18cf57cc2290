"""Tests for job control operations, the state machine and the worker pool."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from geomigrate.jobs.control import (
    JobControlError,
    cancel_job,
    enqueue_job,
    request_pause,
    resume_job,
)
from geomigrate.jobs.lifecycle import (
    ALLOWED_TRANSITIONS,
    Control,
    InvalidTransitionError,
    JobRunner,
    check_transition,
)
from geomigrate.jobs.payloads import AnalyzeJobPayload
from geomigrate.jobs.queue import MemoryQueue, QueueMessage
from geomigrate.jobs.runner import RUNNERS, Consumer, WorkerPool
from geomigrate.store.models import CANCELLED_MESSAGE, Job, JobStatus, JobType


class _RecordingRunner(JobRunner):
    job_type = JobType.ANALYZE

    def __init__(self, ctx, error: Exception | None = None) -> None:
        super().__init__(ctx)
        self.error = error
        self.executed: list[str] = []

    async def execute(self, job: Job) -> None:
        self.executed.append(job.id)
        if self.error is not None:
            raise self.error
        await self.mark_completed(job.id, 1, 1, "Done")


def _enqueue(ctx, job_type: JobType = JobType.ANALYZE) -> Job:
    payload = AnalyzeJobPayload(project_id="proj")
    return asyncio.run(enqueue_job(ctx.db, ctx.queue, job_type, payload, "proj"))


class TestTransitions:
    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (JobStatus.PENDING, JobStatus.RUNNING),
            (JobStatus.PENDING, JobStatus.FAILED),
            (JobStatus.RUNNING, JobStatus.COMPLETED),
            (JobStatus.RUNNING, JobStatus.FAILED),
            (JobStatus.RUNNING, JobStatus.PENDING),
            (JobStatus.RUNNING, JobStatus.RUNNING),
        ],
    )
    def test_allowed(self, current: JobStatus, target: JobStatus) -> None:
        check_transition(current, target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (JobStatus.COMPLETED, JobStatus.RUNNING),
            (JobStatus.FAILED, JobStatus.COMPLETED),
            (JobStatus.PENDING, JobStatus.COMPLETED),
        ],
    )
    def test_rejected(self, current: JobStatus, target: JobStatus) -> None:
        with pytest.raises(InvalidTransitionError):
            check_transition(current, target)

    def test_terminal_states_have_no_exits(self) -> None:
        assert not ALLOWED_TRANSITIONS[JobStatus.COMPLETED]
        assert not ALLOWED_TRANSITIONS[JobStatus.FAILED]


class TestJobRunner:
    def _message(self, job: Job) -> QueueMessage:
        return QueueMessage(job_id=job.id, job_type=job.job_type, payload=job.payload)

    def test_run_marks_running_then_completed(self, make_context, store) -> None:
        ctx, _ = make_context()
        job = _enqueue(ctx)
        runner = _RecordingRunner(ctx)

        asyncio.run(runner.run(self._message(job)))

        stored = store.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.started_at is not None
        assert stored.completed_at is not None
        assert stored.metadata["statusMessage"] == "Done"

    def test_run_failure_marks_failed_and_reraises(self, make_context, store) -> None:
        ctx, _ = make_context()
        job = _enqueue(ctx)
        runner = _RecordingRunner(ctx, error=RuntimeError("boom"))

        with pytest.raises(RuntimeError, match="boom"):
            asyncio.run(runner.run(self._message(job)))

        stored = store.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error_message == "boom"
        assert stored.completed_at is not None

    def test_redelivered_completed_job_is_skipped(self, make_context, store) -> None:
        ctx, _ = make_context()
        job = _enqueue(ctx)
        store.update_job(job.id, status=JobStatus.COMPLETED)
        runner = _RecordingRunner(ctx)

        asyncio.run(runner.run(self._message(job)))

        assert runner.executed == []

    def test_redelivered_running_job_restarts(self, make_context, store) -> None:
        ctx, _ = make_context()
        job = _enqueue(ctx)
        store.update_job(job.id, status=JobStatus.RUNNING)
        runner = _RecordingRunner(ctx)

        asyncio.run(runner.run(self._message(job)))

        assert runner.executed == [job.id]
        assert store.get_job(job.id).status == JobStatus.COMPLETED

    def test_failure_after_cancel_keeps_cancelled_message(self, make_context, store) -> None:
        ctx, _ = make_context()
        job = _enqueue(ctx)
        runner = _RecordingRunner(ctx)

        async def _go() -> None:
            await runner.mark_running(store.get_job(job.id))
            store.update_job(job.id, status=JobStatus.FAILED, error_message=CANCELLED_MESSAGE)
            await runner.mark_failed(job.id, "late error")

        asyncio.run(_go())
        assert store.get_job(job.id).error_message == CANCELLED_MESSAGE

    def test_check_control(self, make_context, store) -> None:
        ctx, _ = make_context()
        job = _enqueue(ctx)
        runner = _RecordingRunner(ctx)

        assert asyncio.run(runner.check_control(job.id)) is Control.CONTINUE
        store.patch_job_metadata(job.id, {"pauseRequested": True})
        assert asyncio.run(runner.check_control(job.id)) is Control.PAUSE
        store.update_job(job.id, status=JobStatus.FAILED, error_message=CANCELLED_MESSAGE)
        assert asyncio.run(runner.check_control(job.id)) is Control.CANCELLED

    def test_report_caps_progress(self, make_context, store) -> None:
        ctx, _ = make_context()
        job = _enqueue(ctx)
        runner = _RecordingRunner(ctx)

        asyncio.run(runner.report(job.id, 150, 100, {"statusMessage": "x"}, cap=99))

        stored = store.get_job(job.id)
        assert stored.progress == 99
        assert stored.processed_items == 150
        assert stored.metadata["statusMessage"] == "x"


class TestControlOperations:
    def test_enqueue_creates_pending_job_and_message(self, make_context, store, queue) -> None:
        ctx, _ = make_context()
        job = _enqueue(ctx)

        stored = store.get_job(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.payload == {"project_id": "proj", "page_ids": None}
        counts = asyncio.run(queue.counts(JobType.ANALYZE))
        assert counts.waiting == 1

    def test_cancel_pending_removes_message(self, make_context, store, queue) -> None:
        ctx, _ = make_context()
        job = _enqueue(ctx)

        cancelled = asyncio.run(cancel_job(ctx.db, queue, job.id))

        assert cancelled.is_cancelled
        assert cancelled.completed_at is not None
        assert asyncio.run(queue.counts(JobType.ANALYZE)).waiting == 0

    def test_cancel_finished_job_rejected(self, make_context, store, queue) -> None:
        ctx, _ = make_context()
        job = _enqueue(ctx)
        store.update_job(job.id, status=JobStatus.COMPLETED)

        with pytest.raises(JobControlError):
            asyncio.run(cancel_job(ctx.db, queue, job.id))

    def test_pause_requires_running(self, make_context) -> None:
        ctx, _ = make_context()
        job = _enqueue(ctx)

        with pytest.raises(JobControlError):
            asyncio.run(request_pause(ctx.db, job.id))

    def test_pause_sets_flag(self, make_context, store) -> None:
        ctx, _ = make_context()
        job = _enqueue(ctx)
        store.update_job(job.id, status=JobStatus.RUNNING)

        updated = asyncio.run(request_pause(ctx.db, job.id))

        assert updated.pause_requested
        assert "pauseRequestedAt" in updated.metadata

    def test_resume_requires_paused(self, make_context, queue) -> None:
        ctx, _ = make_context()
        job = _enqueue(ctx)

        with pytest.raises(JobControlError):
            asyncio.run(resume_job(ctx.db, queue, job.id))

    def test_resume_reenqueues_original_payload(self, make_context, store, queue) -> None:
        ctx, _ = make_context()
        job = _enqueue(ctx)

        async def _go():
            message = await queue.dequeue(JobType.ANALYZE, timeout=0)
            await queue.ack(message)
            store.patch_job_metadata(job.id, {"paused": True})
            await resume_job(ctx.db, queue, job.id)
            return await queue.dequeue(JobType.ANALYZE, timeout=0)

        message = asyncio.run(_go())
        assert message is not None
        assert message.payload == job.payload
        assert store.get_job(job.id).metadata["paused"] is False


class TestWorkerPool:
    def test_runners_cover_every_job_type(self) -> None:
        assert set(RUNNERS) == set(JobType)

    def test_consumer_acks_completed_message(self, make_context, store, queue) -> None:
        ctx, _ = make_context()
        job = _enqueue(ctx)
        consumer = Consumer(ctx, JobType.ANALYZE, asyncio.Event())

        handled = asyncio.run(consumer.run_once(timeout=0))

        assert handled
        assert store.get_job(job.id).status == JobStatus.COMPLETED
        assert asyncio.run(queue.counts(JobType.ANALYZE)).completed == 1

    def test_consumer_fails_message_on_error(self, make_context, store, queue) -> None:
        ctx, _ = make_context()
        job = _enqueue(ctx, JobType.MATCH)
        store.update_job(job.id, payload={"pillar_id": "missing"})
        consumer = Consumer(ctx, JobType.MATCH, asyncio.Event())

        asyncio.run(consumer.run_once(timeout=0))

        assert store.get_job(job.id).status == JobStatus.FAILED
        assert asyncio.run(queue.counts(JobType.MATCH)).failed == 1

    def test_long_job_keeps_its_claim(self, make_context, store) -> None:
        ctx, _ = make_context()
        ctx.queue = MemoryQueue(visibility_timeout=0.05, poll_interval=0.001)
        job = _enqueue(ctx)
        consumer = Consumer(ctx, JobType.ANALYZE, asyncio.Event())
        reclaimed: list[QueueMessage | None] = []

        async def slow_execute(running: Job) -> None:
            await asyncio.sleep(0.3)
            reclaimed.append(await ctx.queue.dequeue(JobType.ANALYZE, timeout=0))
            await consumer.runner.mark_completed(running.id, 1, 1, "Done")

        consumer.runner.execute = slow_execute

        assert asyncio.run(consumer.run_once(timeout=0))
        assert reclaimed == [None]
        assert store.get_job(job.id).status == JobStatus.COMPLETED
        assert asyncio.run(ctx.queue.counts(JobType.ANALYZE)).completed == 1

    def test_consumer_idle_returns_false(self, make_context) -> None:
        ctx, _ = make_context()
        consumer = Consumer(ctx, JobType.CRAWL, asyncio.Event())
        assert asyncio.run(consumer.run_once(timeout=0)) is False

    def test_pool_stops_and_closes_resources(self, make_context, embedder) -> None:
        ctx, _ = make_context()
        ctx.queue.connect = AsyncMock()
        ctx.queue.close = AsyncMock()
        ctx.closers.append(embedder.aclose)
        pool = WorkerPool(ctx)

        async def _go() -> None:
            task = asyncio.create_task(pool.run())
            await asyncio.sleep(0.01)
            pool.request_stop()
            await asyncio.wait_for(task, timeout=5)

        asyncio.run(_go())

        ctx.queue.connect.assert_awaited_once()
        ctx.queue.close.assert_awaited_once()
        assert embedder.closed
