"""Worker process: one consumer per job type over a shared context."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import signal

from geomigrate.analysis.analyzer import AnalysisService
from geomigrate.config import GeomigrateConfig
from geomigrate.crawl.crawler import CrawlerService
from geomigrate.generation.generator import GenerationService
from geomigrate.jobs.crawl_worker import CrawlRunner
from geomigrate.jobs.lifecycle import JobRunner, WorkerContext
from geomigrate.jobs.queue import QueueMessage, SqlWorkQueue
from geomigrate.jobs.workers import AnalyzeRunner, GenerateRunner, MatchRunner
from geomigrate.matching.matcher import MatchingService
from geomigrate.shared.embeddings import get_embedding_client
from geomigrate.store.models import JobType
from geomigrate.store.retry import StoreCaller

logger = logging.getLogger(__name__)

RUNNERS: dict[JobType, type[JobRunner]] = {
    JobType.CRAWL: CrawlRunner,
    JobType.ANALYZE: AnalyzeRunner,
    JobType.MATCH: MatchRunner,
    JobType.GENERATE: GenerateRunner,
}

# Pause after an unexpected queue error before polling again.
ERROR_BACKOFF_SECONDS = 5.0


def build_context(config: GeomigrateConfig) -> WorkerContext:
    """Construct the store, queue, embedding client and services from config.

    Raises:
        QueueConnectionError: If no queue URL is configured.
        EmbeddingError: If no embedding provider key is configured.
    """
    from geomigrate.store.pgvector import PgvectorStore

    queue = SqlWorkQueue(
        config.queue_url,
        poll_interval=config.queue.poll_interval_seconds,
        visibility_timeout=config.queue.visibility_timeout_seconds,
    )
    store = PgvectorStore(config.database.url, embedding_dim=config.database.embedding_dim)
    db = StoreCaller(
        store,
        max_attempts=config.database.retry_attempts,
        delay=config.database.retry_delay_seconds,
    )
    embedder = get_embedding_client(config.embedding)
    return WorkerContext(
        config=config,
        db=db,
        queue=queue,
        crawler_factory=lambda: CrawlerService(config.browser),
        analyzer=AnalysisService(
            embedder, model=config.llm.analysis_model, timeout=config.llm.timeout
        ),
        matcher=MatchingService(db, embedder),
        generator=GenerationService(db, model=config.llm.model, timeout=config.llm.timeout),
        closers=[embedder.aclose],
    )


class Consumer:
    """Pulls one job type's messages and runs them one at a time."""

    def __init__(self, ctx: WorkerContext, job_type: JobType, stop: asyncio.Event) -> None:
        self.ctx = ctx
        self.job_type = job_type
        self.stop = stop
        self.runner = RUNNERS[job_type](ctx)

    async def run_once(self, timeout: float = 1.0) -> bool:
        """Process at most one message. Returns True if one was handled."""
        message = await self.ctx.queue.dequeue(self.job_type, timeout=timeout)
        if message is None:
            return False
        heartbeat = asyncio.create_task(self._heartbeat(message))
        try:
            await self.runner.run(message)
        except Exception as exc:
            logger.exception("%s job %s failed", self.job_type.value, message.job_id)
            await self.ctx.queue.fail(message, str(exc) or exc.__class__.__name__)
        else:
            await self.ctx.queue.ack(message)
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
        return True

    async def _heartbeat(self, message: QueueMessage) -> None:
        """Keep the claim on ``message`` alive while its job runs."""
        interval = self.ctx.queue.heartbeat_interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self.ctx.queue.extend(message)
            except Exception:
                logger.warning(
                    "Could not extend claim on %s job %s",
                    self.job_type.value,
                    message.job_id,
                    exc_info=True,
                )

    async def run(self) -> None:
        logger.info("Consumer for %s jobs started", self.job_type.value)
        while not self.stop.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Queue error in %s consumer", self.job_type.value)
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self.stop.wait(), timeout=ERROR_BACKOFF_SECONDS)
        logger.info("Consumer for %s jobs stopped", self.job_type.value)


class WorkerPool:
    """Runs a consumer for every job type until SIGINT/SIGTERM."""

    def __init__(self, ctx: WorkerContext, job_types: list[JobType] | None = None) -> None:
        self.ctx = ctx
        self.job_types = job_types or list(JobType)
        self.stop = asyncio.Event()

    def request_stop(self) -> None:
        if not self.stop.is_set():
            logger.info("Shutdown requested; finishing current jobs")
            self.stop.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, self.request_stop)

    async def run(self) -> None:
        await self.ctx.queue.connect()
        self._install_signal_handlers()
        consumers = [Consumer(self.ctx, jt, self.stop) for jt in self.job_types]
        try:
            await asyncio.gather(*(c.run() for c in consumers))
        finally:
            await self.ctx.queue.close()
            for closer in self.ctx.closers:
                result = closer()
                if inspect.isawaitable(result):
                    await result
            logger.info("Worker pool stopped")
