"""Bounded retry for store calls made from async workers."""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from sqlalchemy.exc import DBAPIError, DisconnectionError, OperationalError

from geomigrate.store.base import MigrationStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CONNECTION_MARKERS = ("closed", "connection", "timeout", "timed out", "econnreset")


def is_connection_error(exc: BaseException) -> bool:
    """True for failures worth retrying: lost/refused connections and timeouts.

    Logical errors (constraint violations, not-found, validation) are not.
    """
    if isinstance(exc, DisconnectionError):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    if isinstance(exc, (OperationalError, ConnectionError, TimeoutError)):
        return True
    message = str(exc).lower()
    return isinstance(exc, DBAPIError) and any(m in message for m in _CONNECTION_MARKERS)


async def with_retry(
    operation: Callable[[], T],
    *,
    store: MigrationStore | None = None,
    max_attempts: int = 3,
    delay: float = 1.0,
) -> T:
    """Run a blocking store call in a worker thread, retrying connection errors.

    Backoff doubles after each failed attempt. Between attempts the store
    is asked to reconnect. Any other exception propagates immediately.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return await asyncio.to_thread(operation)
        except Exception as exc:
            if not is_connection_error(exc) or attempt == max_attempts:
                raise
            logger.warning(
                "Database connection error (attempt %d/%d): %s", attempt, max_attempts, exc
            )
            await asyncio.sleep(delay * 2 ** (attempt - 1))
            if store is not None:
                try:
                    await asyncio.to_thread(store.reconnect)
                except Exception:
                    logger.exception("Failed to reconnect to the database")
    raise AssertionError("unreachable")


class StoreCaller:
    """Binds a store to retry settings: ``await db(store.get_job, job_id)``."""

    def __init__(self, store: MigrationStore, *, max_attempts: int = 3, delay: float = 1.0) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.delay = delay

    async def __call__(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await with_retry(
            functools.partial(fn, *args, **kwargs),
            store=self.store,
            max_attempts=self.max_attempts,
            delay=self.delay,
        )
