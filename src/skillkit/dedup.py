from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UpdateDedupCoordinator(Generic[T]):
    """
    Single-flight lane: while a computation is running, later callers await the same result.

    The computation runs as its own task and every caller, the first included, awaits it
    through `asyncio.shield`, so cancelling one caller never cancels the others. The
    in-flight marker is cleared when the task finishes, whether it returned or raised, so the
    next call starts a fresh computation.
    """

    def __init__(self) -> None:
        self._in_progress = False
        self._pending: asyncio.Future[T] | None = None

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def reset(self) -> None:
        self._in_progress = False
        self._pending = None

    def _clear(self, task: asyncio.Future[T]) -> None:
        if self._pending is task:
            self._in_progress = False
            self._pending = None
        # Mark a failure as retrieved even when every caller has gone away.
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Update check failed: %s", task.exception())

    async def run(self, compute: Callable[[], Awaitable[T]]) -> T:
        task = self._pending
        if self._in_progress and task is not None:
            logger.debug("Joining in-flight update check")
        else:
            task = asyncio.ensure_future(compute())
            self._in_progress = True
            self._pending = task
            task.add_done_callback(self._clear)
        # A cancelled caller only stops waiting; the shared computation keeps running.
        return await asyncio.shield(task)


class GenerationCounter:
    """Monotonic tokens; a result computed under an older token is stale and must be dropped."""

    def __init__(self) -> None:
        self._current = 0

    @property
    def current(self) -> int:
        return self._current

    def next(self) -> int:
        self._current += 1
        return self._current

    def is_current(self, token: int) -> bool:
        return token == self._current
