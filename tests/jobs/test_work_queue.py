"""Tests for the in-memory and SQL work queues."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from geomigrate.jobs.queue import (
    ACTIVE,
    WAITING,
    MemoryQueue,
    QueueConnectionError,
    QueueMessage,
    SqlWorkQueue,
)
from geomigrate.store.models import JobType


class TestMemoryQueue:
    def test_enqueue_is_idempotent_while_waiting(self) -> None:
        q = MemoryQueue()

        async def _go():
            first = await q.enqueue(JobType.CRAWL, {"a": 1}, "job-1")
            second = await q.enqueue(JobType.CRAWL, {"a": 2}, "job-1")
            return first, second, await q.counts(JobType.CRAWL)

        first, second, counts = asyncio.run(_go())
        assert first is True
        assert second is False
        assert counts.waiting == 1

    def test_fifo_per_job_type(self) -> None:
        q = MemoryQueue()

        async def _go():
            await q.enqueue(JobType.CRAWL, {}, "c1")
            await q.enqueue(JobType.ANALYZE, {}, "a1")
            await q.enqueue(JobType.CRAWL, {}, "c2")
            return [
                (await q.dequeue(JobType.CRAWL, timeout=0)).job_id,
                (await q.dequeue(JobType.CRAWL, timeout=0)).job_id,
                await q.dequeue(JobType.CRAWL, timeout=0),
            ]

        assert asyncio.run(_go()) == ["c1", "c2", None]

    def test_unacked_message_redelivered_after_visibility_timeout(self) -> None:
        q = MemoryQueue(visibility_timeout=0)

        async def _go():
            await q.enqueue(JobType.CRAWL, {}, "job-1")
            first = await q.dequeue(JobType.CRAWL, timeout=0)
            second = await q.dequeue(JobType.CRAWL, timeout=0)
            return first, second

        first, second = asyncio.run(_go())
        assert first.attempts == 1
        assert second is not None
        assert second.attempts == 2

    def test_extend_restarts_visibility_timeout(self) -> None:
        q = MemoryQueue(visibility_timeout=0.05)

        async def _go():
            await q.enqueue(JobType.CRAWL, {}, "job-1")
            message = await q.dequeue(JobType.CRAWL, timeout=0)
            for _ in range(5):
                await asyncio.sleep(0.02)
                await q.extend(message)
            return await q.dequeue(JobType.CRAWL, timeout=0)

        assert asyncio.run(_go()) is None

    def test_ack_then_reenqueue_rearms(self) -> None:
        q = MemoryQueue()

        async def _go():
            await q.enqueue(JobType.MATCH, {}, "job-1")
            message = await q.dequeue(JobType.MATCH, timeout=0)
            await q.ack(message)
            rearmed = await q.enqueue(JobType.MATCH, {"again": True}, "job-1")
            return rearmed, await q.dequeue(JobType.MATCH, timeout=0)

        rearmed, message = asyncio.run(_go())
        assert rearmed is True
        assert message.payload == {"again": True}

    def test_remove_only_waiting(self) -> None:
        q = MemoryQueue()

        async def _go():
            await q.enqueue(JobType.CRAWL, {}, "w")
            await q.enqueue(JobType.CRAWL, {}, "a")
            removed_waiting = await q.remove(JobType.CRAWL, "w")
            active = await q.dequeue(JobType.CRAWL, timeout=0)
            removed_active = await q.remove(JobType.CRAWL, active.job_id)
            return removed_waiting, removed_active

        assert asyncio.run(_go()) == (True, False)

    def test_fail_counts(self) -> None:
        q = MemoryQueue()

        async def _go():
            await q.enqueue(JobType.GENERATE, {}, "job-1")
            message = await q.dequeue(JobType.GENERATE, timeout=0)
            await q.fail(message, "boom")
            return await q.counts(JobType.GENERATE)

        counts = asyncio.run(_go())
        assert counts.failed == 1
        assert counts.waiting == 0


def _setup_begin(queue: SqlWorkQueue) -> MagicMock:
    conn = MagicMock()
    queue._engine.begin.return_value.__enter__ = MagicMock(return_value=conn)
    queue._engine.begin.return_value.__exit__ = MagicMock(return_value=False)
    return conn


class TestSqlWorkQueue:
    def test_requires_url(self) -> None:
        with pytest.raises(QueueConnectionError):
            SqlWorkQueue("")

    def test_use_before_connect_raises(self) -> None:
        q = SqlWorkQueue("postgresql://localhost/db")
        with pytest.raises(QueueConnectionError, match="not connected"):
            asyncio.run(q.enqueue(JobType.CRAWL, {}, "job-1"))

    def test_enqueue_returns_false_on_conflict(self) -> None:
        q = SqlWorkQueue("postgresql://localhost/db")
        q._engine = MagicMock()
        conn = _setup_begin(q)
        conn.execute.return_value.fetchone.return_value = None

        assert asyncio.run(q.enqueue(JobType.CRAWL, {}, "job-1")) is False

    def test_claim_marks_active(self) -> None:
        q = SqlWorkQueue("postgresql://localhost/db")
        q._engine = MagicMock()
        conn = _setup_begin(q)
        row = MagicMock(job_id="job-1", job_type="crawl", payload={"x": 1}, attempts=0)
        conn.execute.return_value.fetchone.return_value = row

        message = asyncio.run(q.dequeue(JobType.CRAWL, timeout=0))

        assert message.job_id == "job-1"
        assert message.job_type == JobType.CRAWL
        assert message.attempts == 1
        assert conn.execute.call_count == 2

    def test_extend_touches_only_active_claim(self) -> None:
        q = SqlWorkQueue("postgresql://localhost/db")
        q._engine = MagicMock()
        conn = _setup_begin(q)

        asyncio.run(q.extend(QueueMessage(job_id="job-1", job_type=JobType.CRAWL)))

        compiled = conn.execute.call_args[0][0].compile()
        assert "claimed_at" in str(compiled)
        assert compiled.params["job_id_1"] == "job-1"
        assert compiled.params["state_1"] == ACTIVE

    def test_counts_groups_by_state(self) -> None:
        q = SqlWorkQueue("postgresql://localhost/db")
        q._engine = MagicMock()
        conn = MagicMock()
        q._engine.connect.return_value.__enter__ = MagicMock(return_value=conn)
        q._engine.connect.return_value.__exit__ = MagicMock(return_value=False)
        conn.execute.return_value.fetchall.return_value = [(WAITING, 3), (ACTIVE, 1)]

        counts = asyncio.run(q.counts(JobType.CRAWL))

        assert counts.waiting == 3
        assert counts.active == 1
        assert counts.failed == 0
