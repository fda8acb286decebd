"""Byte-range chunking of working media files."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from pathlib import Path

from scribe.core.retry import RetryPolicy, SleepFn, retry_async
from scribe.core.workspace import remove_file
from scribe.data_models import Chunk
from scribe.exceptions import ChunkingError

logger = logging.getLogger(__name__)

_MB = 1024 * 1024
_COPY_BUFFER = 1024 * 1024


@dataclass(frozen=True)
class ChunkingPolicy:
    chunk_size: int = 5 * _MB
    large_file_chunk_size: int = 3 * _MB
    very_large_file_chunk_size: int = 2 * _MB
    large_file_threshold: int = 200 * _MB
    very_large_file_threshold: int = 500 * _MB
    write_retry: RetryPolicy = RetryPolicy(max_attempts=3, delay=1.0, backoff=2.0)

    def chunk_size_for(self, file_size: int) -> int:
        """Larger sources get smaller chunks to stay within request limits."""
        if file_size > self.very_large_file_threshold:
            return self.very_large_file_chunk_size
        if file_size > self.large_file_threshold:
            return self.large_file_chunk_size
        return self.chunk_size


def _copy_range(source: Path, dest: Path, start: int, end: int) -> None:
    remaining = end - start + 1
    with open(source, "rb") as src, open(dest, "wb") as dst:
        src.seek(start)
        while remaining > 0:
            data = src.read(min(_COPY_BUFFER, remaining))
            if not data:
                raise ChunkingError(
                    f"Unexpected end of file reading {source.name} at byte {end - remaining + 1}"
                )
            dst.write(data)
            remaining -= len(data)


async def create_chunks(
    media_path: Path,
    dest_dir: Path,
    policy: ChunkingPolicy | None = None,
    *,
    sleep: SleepFn = asyncio.sleep,
) -> list[Chunk]:
    """Split ``media_path`` into sequential byte ranges written under ``dest_dir``.

    Chunks are written one after another so no two writers touch the same
    file; the returned list is ordered by index and covers every byte once.
    """
    policy = policy or ChunkingPolicy()
    try:
        file_size = (await asyncio.to_thread(media_path.stat)).st_size
    except OSError as e:
        raise ChunkingError(f"Cannot read {media_path}: {e}") from e

    chunk_size = policy.chunk_size_for(file_size)
    count = math.ceil(file_size / chunk_size)
    logger.info(
        "Creating %d chunks of approximately %.1fMB from %s (%.1fMB)",
        count, chunk_size / _MB, media_path.name, file_size / _MB,
    )

    chunks: list[Chunk] = []
    for i in range(count):
        start = i * chunk_size
        end = min((i + 1) * chunk_size - 1, file_size - 1)
        chunk_path = dest_dir / f"chunk{i + 1:04d}{media_path.suffix}"

        async def _write(dest: Path = chunk_path, lo: int = start, hi: int = end) -> None:
            await asyncio.to_thread(_copy_range, media_path, dest, lo, hi)

        try:
            await retry_async(
                _write,
                policy.write_retry,
                retry_on=OSError,
                sleep=sleep,
                description=f"Writing chunk {i + 1}/{count}",
            )
        except OSError as e:
            raise ChunkingError(f"Failed to write chunk {i + 1}/{count}: {e}") from e

        chunks.append(Chunk(index=i, start=start, end=end, path=chunk_path))

        if count > 10 and (i + 1) % 5 == 0:
            logger.info(
                "Created %d/%d chunks (%d%% complete)",
                i + 1, count, round((i + 1) / count * 100),
            )

    return chunks


async def delete_chunk(chunk: Chunk) -> None:
    if await remove_file(chunk.path):
        logger.debug("Deleted chunk %d: %s", chunk.index + 1, chunk.path.name)
