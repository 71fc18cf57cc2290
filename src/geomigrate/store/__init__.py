"""Storage domain: entity models, store interface and implementations."""

from geomigrate.store.base import (
    JobNotFoundError,
    MigrationStore,
    NotFoundError,
    PageNotFoundError,
    PillarNotFoundError,
    StoreError,
)
from geomigrate.store.memory import MemoryStore
from geomigrate.store.models import (
    CANCELLED_MESSAGE,
    Draft,
    DraftVersion,
    Job,
    JobStatus,
    JobType,
    Match,
    Page,
    PageLink,
    PageStatus,
    Pillar,
)

__all__ = [
    "CANCELLED_MESSAGE",
    "Draft",
    "DraftVersion",
    "Job",
    "JobNotFoundError",
    "JobStatus",
    "JobType",
    "Match",
    "MemoryStore",
    "MigrationStore",
    "NotFoundError",
    "Page",
    "PageLink",
    "PageNotFoundError",
    "PageStatus",
    "Pillar",
    "PillarNotFoundError",
    "StoreError",
]
