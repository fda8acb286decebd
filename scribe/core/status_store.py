"""Job status store interface and an in-process implementation."""

from __future__ import annotations

import asyncio
import copy
from abc import ABC, abstractmethod

from scribe.data_models import Job


class StatusStore(ABC):
    @abstractmethod
    async def get_job(self, job_id: str) -> Job | None:
        """Return a snapshot of the job, or None if unknown."""

    @abstractmethod
    async def save_job(self, job: Job) -> None:
        """Persist the job's current state (last writer wins)."""

    @abstractmethod
    async def delete_job(self, job_id: str) -> None:
        """Forget the job. Unknown ids are ignored."""


class InMemoryStatusStore(StatusStore):
    """Keeps deep copies so callers never share mutable state with the store."""

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._lock = asyncio.Lock()

    async def get_job(self, job_id: str) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job is not None else None

    async def save_job(self, job: Job) -> None:
        async with self._lock:
            job.touch()
            self._jobs[job.id] = copy.deepcopy(job)

    async def delete_job(self, job_id: str) -> None:
        async with self._lock:
            self._jobs.pop(job_id, None)

    def __len__(self) -> int:
        return len(self._jobs)
