"""Per-job temporary folders and retention cleanup."""

from __future__ import annotations

import asyncio
import logging
import shutil
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from scribe.core.status_store import StatusStore
    from scribe.data_models import Job

logger = logging.getLogger(__name__)


def job_folder(root: Path, job_id: str) -> Path:
    return root / job_id


@asynccontextmanager
async def job_workspace(root: Path, job_id: str) -> AsyncIterator[Path]:
    """Create ``<root>/<job_id>`` and remove it on every exit path."""
    folder = job_folder(root, job_id)
    await asyncio.to_thread(folder.mkdir, parents=True, exist_ok=True)
    logger.info("Created job folder: %s", folder)
    try:
        yield folder
    finally:
        await remove_tree(folder)


async def remove_tree(folder: Path) -> None:
    """Recursively delete ``folder``. Never raises."""
    try:
        await asyncio.to_thread(shutil.rmtree, folder)
        logger.info("Removed job folder: %s", folder)
    except FileNotFoundError:
        pass
    except OSError:
        logger.warning("Failed to remove job folder: %s", folder, exc_info=True)


async def remove_file(path: Path) -> bool:
    """Delete one file best-effort; returns True if something was removed."""
    try:
        await asyncio.to_thread(path.unlink)
        return True
    except FileNotFoundError:
        return False
    except OSError:
        logger.warning("Failed to remove temp file: %s", path, exc_info=True)
        return False


async def purge_job(job: Job, store: StatusStore) -> None:
    """Delete the original upload and forget the job's metadata."""
    if await remove_file(job.source_path):
        logger.info("Job %s: removed original upload %s", job.id, job.source_path)
    await store.delete_job(job.id)
    logger.info("Job %s: purged", job.id)
