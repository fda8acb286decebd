"""FIFO admission control for job pipelines."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from scribe.data_models import Job, TranscriptResult

logger = logging.getLogger(__name__)

JobRunner = Callable[[Job], Awaitable[TranscriptResult]]


@dataclass
class QueueItem:
    job: Job
    future: asyncio.Future[TranscriptResult]


class ConcurrencyGovernor:
    """Runs at most ``max_concurrent`` jobs at once; the rest wait in order.

    Create one per process and hand it to every submitter. A failing job
    rejects only its own ``submit`` call.
    """

    def __init__(self, runner: JobRunner, max_concurrent: int = 100) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._runner = runner
        self._max_concurrent = max_concurrent
        self._backlog: deque[QueueItem] = deque()
        self._active = 0
        self._tasks: set[asyncio.Task[TranscriptResult]] = set()

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def pending_count(self) -> int:
        return len(self._backlog)

    async def submit(self, job: Job) -> TranscriptResult:
        future: asyncio.Future[TranscriptResult] = asyncio.get_running_loop().create_future()
        item = QueueItem(job, future)
        self._backlog.append(item)
        logger.info(
            "Job %s queued (%d active, %d pending)",
            job.id, self._active, len(self._backlog),
        )
        self._admit_next()
        try:
            return await future
        except asyncio.CancelledError:
            if any(queued is item for queued in self._backlog):
                self._backlog = deque(q for q in self._backlog if q is not item)
                logger.info("Job %s withdrawn before admission", job.id)
            raise

    def _admit_next(self) -> None:
        while self._active < self._max_concurrent and self._backlog:
            item = self._backlog.popleft()
            if item.future.done():
                continue
            self._active += 1
            logger.info("Job %s admitted (%d/%d active)", item.job.id, self._active, self._max_concurrent)
            task = asyncio.create_task(self._runner(item.job))
            self._tasks.add(task)
            task.add_done_callback(lambda t, item=item: self._on_done(t, item))

    def _on_done(self, task: asyncio.Task[TranscriptResult], item: QueueItem) -> None:
        self._tasks.discard(task)
        self._active -= 1
        if task.cancelled():
            if not item.future.done():
                item.future.cancel()
        else:
            exc = task.exception()
            if item.future.done():
                pass
            elif exc is not None:
                item.future.set_exception(exc)
            else:
                item.future.set_result(task.result())
        self._admit_next()
