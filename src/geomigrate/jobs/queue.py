"""Durable work queues, one logical queue per job type.

Delivery is at-least-once: a message claimed by a consumer that never acks
it becomes deliverable again after the visibility timeout. Enqueueing is
idempotent on the job id.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from datetime import timedelta
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    create_engine,
    delete,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import JSONB, insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from geomigrate.store.models import JobType, utcnow

logger = logging.getLogger(__name__)

WAITING = "waiting"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"


class QueueConnectionError(Exception):
    """The queue backend is unreachable or not configured."""


class QueueMessage(BaseModel):
    job_id: str
    job_type: JobType
    payload: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0


class QueueCounts(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0


class WorkQueue(ABC):
    """Async interface shared by the SQL and in-memory queues."""

    visibility_timeout: float

    async def connect(self) -> None:  # noqa: B027
        """Open connections; called once at worker startup."""

    async def close(self) -> None:  # noqa: B027
        """Release connections."""

    @abstractmethod
    async def enqueue(self, job_type: JobType, payload: dict[str, Any], job_id: str) -> bool:
        """Queue a job. Returns False when ``job_id`` is already waiting or active."""

    @abstractmethod
    async def dequeue(self, job_type: JobType, timeout: float = 1.0) -> QueueMessage | None:
        """Claim the oldest deliverable message, waiting up to ``timeout`` seconds."""

    @abstractmethod
    async def extend(self, message: QueueMessage) -> None:
        """Restart the visibility timeout of a message this consumer still holds."""

    @property
    def heartbeat_interval(self) -> float:
        return self.visibility_timeout / 3

    @abstractmethod
    async def ack(self, message: QueueMessage) -> None: ...

    @abstractmethod
    async def fail(self, message: QueueMessage, error: str) -> None: ...

    @abstractmethod
    async def remove(self, job_type: JobType, job_id: str) -> bool:
        """Drop a still-waiting message. Returns True if one was removed."""

    @abstractmethod
    async def counts(self, job_type: JobType) -> QueueCounts: ...


class _Entry:
    __slots__ = ("message", "state", "claimed_at", "error")

    def __init__(self, message: QueueMessage) -> None:
        self.message = message
        self.state = WAITING
        self.claimed_at: float | None = None
        self.error: str | None = None


class MemoryQueue(WorkQueue):
    """Single-process queue for tests and local runs."""

    def __init__(self, *, visibility_timeout: float = 600.0, poll_interval: float = 0.05) -> None:
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval
        self._entries: dict[str, _Entry] = {}
        self._order: dict[JobType, deque[str]] = {jt: deque() for jt in JobType}

    async def enqueue(self, job_type: JobType, payload: dict[str, Any], job_id: str) -> bool:
        entry = self._entries.get(job_id)
        if entry is not None and entry.state in (WAITING, ACTIVE):
            return False
        self._entries[job_id] = _Entry(
            QueueMessage(job_id=job_id, job_type=job_type, payload=dict(payload))
        )
        self._order[job_type].append(job_id)
        return True

    def _claim(self, job_type: JobType) -> QueueMessage | None:
        now = asyncio.get_running_loop().time()
        for job_id in list(self._order[job_type]):
            entry = self._entries.get(job_id)
            if entry is None or entry.state in (COMPLETED, FAILED):
                self._order[job_type].remove(job_id)
                continue
            expired = (
                entry.state == ACTIVE
                and entry.claimed_at is not None
                and now - entry.claimed_at >= self.visibility_timeout
            )
            if entry.state == WAITING or expired:
                entry.state = ACTIVE
                entry.claimed_at = now
                entry.message = entry.message.model_copy(
                    update={"attempts": entry.message.attempts + 1}
                )
                return entry.message.model_copy(deep=True)
        return None

    async def dequeue(self, job_type: JobType, timeout: float = 1.0) -> QueueMessage | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            message = self._claim(job_type)
            if message is not None or loop.time() >= deadline:
                return message
            await asyncio.sleep(self.poll_interval)

    async def extend(self, message: QueueMessage) -> None:
        entry = self._entries.get(message.job_id)
        if entry is not None and entry.state == ACTIVE:
            entry.claimed_at = asyncio.get_running_loop().time()

    async def ack(self, message: QueueMessage) -> None:
        entry = self._entries.get(message.job_id)
        if entry is not None:
            entry.state = COMPLETED

    async def fail(self, message: QueueMessage, error: str) -> None:
        entry = self._entries.get(message.job_id)
        if entry is not None:
            entry.state = FAILED
            entry.error = error

    async def remove(self, job_type: JobType, job_id: str) -> bool:
        entry = self._entries.get(job_id)
        if entry is None or entry.state != WAITING:
            return False
        del self._entries[job_id]
        return True

    async def counts(self, job_type: JobType) -> QueueCounts:
        tally = QueueCounts()
        for entry in self._entries.values():
            if entry.message.job_type == job_type:
                setattr(tally, entry.state, getattr(tally, entry.state) + 1)
        return tally


def build_queue_table(metadata: MetaData) -> Table:
    return Table(
        "queue_messages",
        metadata,
        Column("job_id", String, primary_key=True),
        Column("job_type", String, nullable=False, index=True),
        Column("payload", JSONB, nullable=False, default=dict),
        Column("state", String, nullable=False, index=True),
        Column("attempts", Integer, nullable=False, default=0),
        Column("last_error", Text),
        Column("enqueued_at", DateTime(timezone=True), nullable=False),
        Column("claimed_at", DateTime(timezone=True)),
        Column("finished_at", DateTime(timezone=True)),
    )


class SqlWorkQueue(WorkQueue):
    """Postgres-backed queue using ``FOR UPDATE SKIP LOCKED`` claims.

    Blocking SQLAlchemy calls run in worker threads. ``connect`` must be
    called before use.
    """

    def __init__(
        self,
        url: str,
        *,
        poll_interval: float = 1.0,
        visibility_timeout: float = 600.0,
    ) -> None:
        if not url:
            raise QueueConnectionError("Queue URL is not configured")
        self._url = url
        self.poll_interval = poll_interval
        self.visibility_timeout = visibility_timeout
        self._engine: Engine | None = None
        self._metadata = MetaData()
        self._table = build_queue_table(self._metadata)

    # ── Connection ───────────────────────────────────────────────

    def _connect_sync(self) -> Engine:
        engine = create_engine(self._url, pool_pre_ping=True)
        self._metadata.create_all(engine)
        return engine

    async def connect(self) -> None:
        if self._engine is not None:
            return
        try:
            self._engine = await asyncio.to_thread(self._connect_sync)
        except OperationalError as exc:
            raise QueueConnectionError(f"Cannot connect to queue: {exc}") from exc
        logger.info("Connected to work queue")

    async def close(self) -> None:
        engine, self._engine = self._engine, None
        if engine is not None:
            await asyncio.to_thread(engine.dispose)

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise QueueConnectionError("Queue is not connected; call connect() first")
        return self._engine

    # ── Operations ───────────────────────────────────────────────

    def _enqueue_sync(self, job_type: JobType, payload: dict[str, Any], job_id: str) -> bool:
        t = self._table
        stmt = insert(t).values(
            job_id=job_id,
            job_type=str(job_type),
            payload=payload,
            state=WAITING,
            attempts=0,
            enqueued_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[t.c.job_id],
            set_={
                "payload": stmt.excluded.payload,
                "state": WAITING,
                "last_error": None,
                "enqueued_at": stmt.excluded.enqueued_at,
                "claimed_at": None,
                "finished_at": None,
            },
            where=t.c.state.in_([COMPLETED, FAILED]),
        ).returning(t.c.job_id)
        with self.engine.begin() as conn:
            return conn.execute(stmt).fetchone() is not None

    async def enqueue(self, job_type: JobType, payload: dict[str, Any], job_id: str) -> bool:
        return await asyncio.to_thread(self._enqueue_sync, job_type, payload, job_id)

    def _claim_sync(self, job_type: JobType) -> QueueMessage | None:
        t = self._table
        now = utcnow()
        expired_before = now - timedelta(seconds=self.visibility_timeout)
        candidate = (
            select(t)
            .where(
                t.c.job_type == str(job_type),
                or_(
                    t.c.state == WAITING,
                    and_(t.c.state == ACTIVE, t.c.claimed_at < expired_before),
                ),
            )
            .order_by(t.c.enqueued_at)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        with self.engine.begin() as conn:
            row = conn.execute(candidate).fetchone()
            if row is None:
                return None
            conn.execute(
                update(t)
                .where(t.c.job_id == row.job_id)
                .values(state=ACTIVE, claimed_at=now, attempts=t.c.attempts + 1)
            )
        return QueueMessage(
            job_id=row.job_id,
            job_type=JobType(row.job_type),
            payload=dict(row.payload or {}),
            attempts=row.attempts + 1,
        )

    async def dequeue(self, job_type: JobType, timeout: float = 1.0) -> QueueMessage | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            message = await asyncio.to_thread(self._claim_sync, job_type)
            if message is not None or loop.time() >= deadline:
                return message
            await asyncio.sleep(min(self.poll_interval, max(deadline - loop.time(), 0)))

    def _finish_sync(self, job_id: str, state: str, error: str | None) -> None:
        t = self._table
        with self.engine.begin() as conn:
            conn.execute(
                update(t)
                .where(t.c.job_id == job_id)
                .values(state=state, last_error=error, finished_at=utcnow())
            )

    def _extend_sync(self, job_id: str) -> None:
        t = self._table
        with self.engine.begin() as conn:
            conn.execute(
                update(t)
                .where(t.c.job_id == job_id, t.c.state == ACTIVE)
                .values(claimed_at=utcnow())
            )

    async def extend(self, message: QueueMessage) -> None:
        await asyncio.to_thread(self._extend_sync, message.job_id)

    async def ack(self, message: QueueMessage) -> None:
        await asyncio.to_thread(self._finish_sync, message.job_id, COMPLETED, None)

    async def fail(self, message: QueueMessage, error: str) -> None:
        await asyncio.to_thread(self._finish_sync, message.job_id, FAILED, error[:2000])

    def _remove_sync(self, job_type: JobType, job_id: str) -> bool:
        t = self._table
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(t).where(
                    t.c.job_id == job_id, t.c.job_type == str(job_type), t.c.state == WAITING
                )
            )
        return result.rowcount > 0

    async def remove(self, job_type: JobType, job_id: str) -> bool:
        return await asyncio.to_thread(self._remove_sync, job_type, job_id)

    def _counts_sync(self, job_type: JobType) -> QueueCounts:
        t = self._table
        stmt = (
            select(t.c.state, func.count())
            .where(t.c.job_type == str(job_type))
            .group_by(t.c.state)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        known = QueueCounts.model_fields
        return QueueCounts(**{state: count for state, count in rows if state in known})

    async def counts(self, job_type: JobType) -> QueueCounts:
        return await asyncio.to_thread(self._counts_sync, job_type)
