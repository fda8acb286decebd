"""Per-job pipeline: convert, chunk, transcribe, reassemble, attribute speakers."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from scribe.config import ScribeConfig
from scribe.core.backends import ChunkBackend, build_backend
from scribe.core.chunker import create_chunks, delete_chunk
from scribe.core.converter import FfmpegConverter
from scribe.core.heuristic_diarizer import assign_speakers
from scribe.core.queue import ConcurrencyGovernor
from scribe.core.reassembler import error_fragment, merge_fragments
from scribe.core.status_store import StatusStore
from scribe.core.workspace import job_folder, job_workspace, purge_job, remove_tree
from scribe.data_models import (
    Chunk,
    DiarizationBackend,
    Job,
    JobStatus,
    MediaKind,
    TranscriptFragment,
    TranscriptResult,
    new_job,
    validate_media_file,
)
from scribe.exceptions import (
    BackendUnavailableError,
    ChunkTranscriptionError,
    JobFailedError,
    MediaValidationError,
    ScribeError,
)

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Cancelled by user"

BackendFactory = Callable[[ScribeConfig, DiarizationBackend, FfmpegConverter], ChunkBackend]


@dataclass
class _Progress:
    stage: str = "starting"
    chunk_index: int | None = None

    def describe(self) -> str:
        if self.chunk_index is None:
            return self.stage
        return f"{self.stage} (chunk {self.chunk_index + 1})"


class JobOrchestrator:
    """Drives one job from ``pending`` to ``completed`` or ``error``.

    Every status transition is written to the store. Failures at any stage
    end the job in ``error`` with a readable message and are re-raised as
    ``JobFailedError``; the job's temp folder is removed on every path.
    """

    def __init__(
        self,
        config: ScribeConfig,
        store: StatusStore,
        converter: FfmpegConverter | None = None,
        backend_factory: BackendFactory | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._converter = converter or FfmpegConverter(timeout=config.ffmpeg_timeout)
        self._backend_factory = backend_factory or build_backend
        self._temp_root = Path(config.temp_dir)

    async def run(self, job: Job) -> TranscriptResult:
        start_time = time.monotonic()
        progress = _Progress()
        backend: ChunkBackend | None = None

        job.status = JobStatus.PROCESSING
        job.progress_message = "Processing"
        await self._store.save_job(job)
        logger.info("Job %s: processing %s", job.id, job.source_path.name)

        try:
            progress.stage = "validation"
            await self._route(job)

            async with job_workspace(self._temp_root, job.id) as folder:
                # 1. Extract the audio track from video sources
                source = job.source_path
                if job.media_kind == MediaKind.VIDEO:
                    progress.stage = "audio extraction"
                    source = await self._converter.extract_audio(source, folder)

                # 2. Normalize to the working codec
                progress.stage = "normalization"
                working = await self._converter.normalize_audio(source, folder)

                # 3. Split into byte-range chunks
                progress.stage = "chunking"
                chunks = await create_chunks(working, folder, self._config.chunking_policy())

                # 4. Transcribe every chunk, keeping results index-aligned
                progress.stage = "transcription"
                backend = self._backend_factory(
                    self._config, job.diarization_backend, self._converter
                )
                await self._save_progress(
                    job, f"Preparing to transcribe {len(chunks)} chunks..."
                )
                fragments = await self._transcribe_all(job, backend, chunks, progress)
                progress.chunk_index = None

                # 5. Reassemble onto one timeline
                progress.stage = "reassembly"
                result = merge_fragments(fragments)

                # 6. Attribute speakers when the backend gave none
                if job.speaker_identification and not result.has_speakers and result.text:
                    progress.stage = "speaker assignment"
                    logger.info("Job %s: no speaker metadata, applying heuristic diarization", job.id)
                    result = assign_speakers(result.text)

            job.status = JobStatus.COMPLETED
            job.result_text = result.text
            job.result_segments = result.segments
            job.progress_message = None
            job.completed_at = datetime.now(UTC)
            await self._store.save_job(job)

            logger.info(
                "Job %s: completed in %.1fs (%d characters, %d segments)",
                job.id, time.monotonic() - start_time,
                len(result.text), len(result.segments or []),
            )
            return result
        except Exception as exc:
            message = str(exc) if isinstance(exc, ScribeError) else (
                f"Unexpected error during {progress.stage}"
            )
            logger.error(
                "Job %s: failed during %s: %s",
                job.id, progress.describe(), exc, exc_info=True,
            )
            job.status = JobStatus.ERROR
            job.error_message = message
            job.progress_message = None
            await self._store.save_job(job)
            raise JobFailedError(job.id, message) from exc
        finally:
            if backend is not None:
                await backend.aclose()

    async def _route(self, job: Job) -> None:
        """Send very large sources to the streaming backend when it is configured."""
        try:
            size = (await asyncio.to_thread(job.source_path.stat)).st_size
        except OSError as e:
            raise MediaValidationError(f"Cannot read source file {job.source_path.name}") from e

        threshold = self._config.very_large_file_threshold_mb * 1024 * 1024
        if (
            size > threshold
            and job.diarization_backend != DiarizationBackend.EXTERNAL
            and self._config.has_streaming_credentials
        ):
            logger.info(
                "Job %s: %.0fMB source exceeds %.0fMB, using streaming diarization",
                job.id, size / 1024 / 1024, self._config.very_large_file_threshold_mb,
            )
            job.diarization_backend = DiarizationBackend.EXTERNAL

        if job.diarization_backend == DiarizationBackend.EXTERNAL:
            job.speaker_identification = True

    async def _transcribe_all(
        self,
        job: Job,
        backend: ChunkBackend,
        chunks: list[Chunk],
        progress: _Progress,
    ) -> list[TranscriptFragment]:
        streaming = job.diarization_backend == DiarizationBackend.EXTERNAL
        if streaming or len(chunks) <= self._config.batch_threshold:
            fragments = []
            for chunk in chunks:
                progress.chunk_index = chunk.index
                fragments.append(await self._transcribe_chunk(job, backend, chunk, len(chunks)))
            return fragments

        size = self._config.batch_size
        batches = [chunks[i:i + size] for i in range(0, len(chunks), size)]
        logger.info("Job %s: processing %d chunks in %d batches", job.id, len(chunks), len(batches))

        fragments = []
        for n, batch in enumerate(batches, start=1):
            progress.chunk_index = batch[0].index
            percent = round((n - 1) / len(batches) * 100)
            await self._save_progress(
                job, f"Transcribing batch {n}/{len(batches)} ({percent}% complete)"
            )
            results = await asyncio.gather(
                *(self._transcribe_chunk(job, backend, c, len(chunks)) for c in batch)
            )
            fragments.extend(results)
        return fragments

    async def _transcribe_chunk(
        self, job: Job, backend: ChunkBackend, chunk: Chunk, total: int
    ) -> TranscriptFragment:
        try:
            result = await backend.transcribe_chunk(
                chunk, detailed=job.speaker_identification
            )
        except BackendUnavailableError:
            raise
        except ChunkTranscriptionError as e:
            logger.error("Job %s: chunk %d/%d failed: %s", job.id, chunk.index + 1, total, e)
            return error_fragment(chunk.index)
        except Exception as e:
            logger.error(
                "Job %s: chunk %d/%d failed during transcription: %s",
                job.id, chunk.index + 1, total, e, exc_info=True,
            )
            return error_fragment(chunk.index)
        finally:
            await delete_chunk(chunk)

        logger.info("Job %s: transcribed chunk %d/%d", job.id, chunk.index + 1, total)
        return TranscriptFragment(
            chunk_index=chunk.index, text=result.text, segments=result.segments
        )

    async def _save_progress(self, job: Job, message: str) -> None:
        job.progress_message = message
        await self._store.save_job(job)

    async def cancel(self, job_id: str) -> bool:
        """Mark a job as failed for observers. Work already running is not stopped."""
        job = await self._store.get_job(job_id)
        if job is None or job.status.is_terminal:
            return False
        job.status = JobStatus.ERROR
        job.error_message = CANCELLED_MESSAGE
        job.progress_message = None
        await self._store.save_job(job)
        logger.info("Job %s: cancelled by user", job_id)
        return True

    async def purge(self, job_id: str) -> bool:
        """Delete everything the job left behind, including the original upload."""
        job = await self._store.get_job(job_id)
        if job is None:
            return False
        await remove_tree(job_folder(self._temp_root, job_id))
        await purge_job(job, self._store)
        return True


async def create_job(
    store: StatusStore,
    source_path: Path,
    *,
    speaker_identification: bool = False,
    diarization_backend: DiarizationBackend = DiarizationBackend.HEURISTIC,
    mime_type: str | None = None,
) -> Job:
    validate_media_file(source_path)
    job = new_job(
        source_path,
        speaker_identification=speaker_identification,
        diarization_backend=diarization_backend,
        mime_type=mime_type,
    )
    await store.save_job(job)
    logger.info("Job %s: created for %s (%s)", job.id, source_path.name, job.media_kind.value)
    return job


async def submit_job(
    governor: ConcurrencyGovernor,
    store: StatusStore,
    source_path: Path,
    *,
    speaker_identification: bool = False,
    diarization_backend: DiarizationBackend = DiarizationBackend.HEURISTIC,
    mime_type: str | None = None,
) -> TranscriptResult:
    """Create a job for ``source_path``, queue it and wait for its transcript."""
    job = await create_job(
        store,
        source_path,
        speaker_identification=speaker_identification,
        diarization_backend=diarization_backend,
        mime_type=mime_type,
    )
    return await governor.submit(job)
