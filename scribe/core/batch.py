"""Batch processing for media files."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from scribe.core.orchestrator import JobOrchestrator, submit_job
from scribe.core.queue import ConcurrencyGovernor
from scribe.core.status_store import StatusStore
from scribe.data_models import SUPPORTED_EXTENSIONS, DiarizationBackend, TranscriptResult
from scribe.exit_codes import ExitCode

logger = logging.getLogger(__name__)


def discover_media_files(
    input_dir: Path,
    recursive: bool = False,
    pattern: str = "*",
) -> list[Path]:
    """Discover supported audio and video files in a directory."""
    if not input_dir.exists():
        raise FileNotFoundError(f"Directory not found: {input_dir}")

    if recursive:
        candidates = list(input_dir.rglob(pattern))
    else:
        candidates = list(input_dir.glob(pattern))

    return sorted(
        f
        for f in candidates
        if f.is_file() and f.suffix.lower() in SUPPORTED_EXTENSIONS
    )


def write_transcript(result: TranscriptResult, source: Path, output_dir: Path) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    out_path = output_dir / f"{source.stem}.json"
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump(result.to_dict(), f, indent=2, ensure_ascii=False)
    return out_path


@dataclass
class BatchResult:
    total: int
    succeeded: int
    failed: int
    errors: list[tuple[Path, str]] = field(default_factory=list)

    @property
    def exit_code(self) -> ExitCode:
        if self.failed == 0:
            return ExitCode.SUCCESS
        if self.succeeded > 0:
            return ExitCode.PARTIAL_SUCCESS
        return ExitCode.ERROR_GENERAL


class BatchRunner:
    """Submits every file through one governor and writes ``<stem>.json`` results."""

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        store: StatusStore,
        max_concurrent: int = 100,
        *,
        speaker_identification: bool = False,
        diarization_backend: DiarizationBackend = DiarizationBackend.HEURISTIC,
        skip_existing: bool = False,
    ) -> None:
        self._orchestrator = orchestrator
        self._store = store
        self._max_concurrent = max_concurrent
        self._speaker_identification = speaker_identification
        self._diarization_backend = diarization_backend
        self._skip_existing = skip_existing

    async def run(
        self,
        files: list[Path],
        output_dir: Path,
        input_base: Path | None = None,
    ) -> BatchResult:
        governor = ConcurrencyGovernor(self._orchestrator.run, self._max_concurrent)

        async def _process(media_file: Path) -> str | None:
            # Mirror the input tree under output_dir
            file_output_dir = output_dir
            if input_base is not None:
                try:
                    file_output_dir = output_dir / media_file.parent.relative_to(input_base)
                except ValueError:
                    pass

            if self._skip_existing and (file_output_dir / f"{media_file.stem}.json").exists():
                logger.info("Skipping %s: output already exists", media_file)
                return None

            try:
                result = await submit_job(
                    governor,
                    self._store,
                    media_file,
                    speaker_identification=self._speaker_identification,
                    diarization_backend=self._diarization_backend,
                )
                await asyncio.to_thread(write_transcript, result, media_file, file_output_dir)
            except Exception as e:
                logger.error("Failed %s: %s", media_file, e, exc_info=True)
                return str(e)
            return None

        outcomes = await asyncio.gather(*(_process(f) for f in files))

        errors = [(f, err) for f, err in zip(files, outcomes) if err is not None]
        return BatchResult(
            total=len(files),
            succeeded=len(files) - len(errors),
            failed=len(errors),
            errors=errors,
        )
