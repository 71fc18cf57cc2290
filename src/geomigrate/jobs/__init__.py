"""Background jobs: queue, state machine, workers and control operations."""

from geomigrate.jobs.control import (
    JobControlError,
    cancel_job,
    enqueue_job,
    request_pause,
    resume_job,
)
from geomigrate.jobs.lifecycle import (
    Control,
    InvalidTransitionError,
    JobRunner,
    WorkerContext,
    check_transition,
)
from geomigrate.jobs.progress import CrawlProgress, ItemProgress, parse_progress
from geomigrate.jobs.queue import MemoryQueue, QueueConnectionError, SqlWorkQueue, WorkQueue

__all__ = [
    "Control",
    "CrawlProgress",
    "InvalidTransitionError",
    "ItemProgress",
    "JobControlError",
    "JobRunner",
    "MemoryQueue",
    "QueueConnectionError",
    "SqlWorkQueue",
    "WorkQueue",
    "WorkerContext",
    "cancel_job",
    "check_transition",
    "enqueue_job",
    "parse_progress",
    "request_pause",
    "resume_job",
]
