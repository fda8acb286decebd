"""Transcribe command for the scribe CLI."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Annotated

import typer

from scribe.config import ScribeConfig, load_config, resolve_config
from scribe.core.batch import write_transcript
from scribe.core.orchestrator import JobOrchestrator, submit_job
from scribe.core.queue import ConcurrencyGovernor
from scribe.core.status_store import InMemoryStatusStore
from scribe.data_models import DiarizationBackend, TranscriptResult, validate_media_file
from scribe.exceptions import (
    BackendError,
    ConversionError,
    JobFailedError,
    MediaValidationError,
)
from scribe.exit_codes import ExitCode

ENGINES = ("http", "local")


def exit_code_for(error: JobFailedError) -> ExitCode:
    cause = error.__cause__
    if isinstance(cause, MediaValidationError):
        return ExitCode.ERROR_FILE
    if isinstance(cause, ConversionError):
        return ExitCode.ERROR_CONVERSION
    if isinstance(cause, BackendError):
        return ExitCode.ERROR_BACKEND
    return ExitCode.ERROR_GENERAL


async def _run_job(
    config: ScribeConfig,
    media_file: Path,
    speakers: bool,
    diarization: DiarizationBackend,
) -> TranscriptResult:
    store = InMemoryStatusStore()
    orchestrator = JobOrchestrator(config, store)
    governor = ConcurrencyGovernor(orchestrator.run, config.max_concurrent_jobs)
    return await submit_job(
        governor,
        store,
        media_file,
        speaker_identification=speakers,
        diarization_backend=diarization,
    )


def transcribe_cmd(
    media_file: Annotated[
        Path, typer.Argument(help="Path to the audio or video file."),
    ],
    speakers: Annotated[
        bool,
        typer.Option(
            "--speakers", "-s",
            help="Attribute the transcript to speakers.",
        ),
    ] = False,
    diarization: Annotated[
        DiarizationBackend,
        typer.Option(
            "--diarization", "-d",
            help="Speaker attribution strategy.",
        ),
    ] = DiarizationBackend.HEURISTIC,
    engine: Annotated[
        str | None,
        typer.Option("--engine", "-e", help="Generic backend: http or local."),
    ] = None,
    language: Annotated[
        str | None,
        typer.Option("--language", "-l", help="Audio language."),
    ] = None,
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write <name>.json into this directory."),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Print the result as JSON."),
    ] = False,
    temp_dir: Annotated[
        str | None,
        typer.Option("--temp-dir", help="Directory for per-job temp files."),
    ] = None,
) -> None:
    """Transcribe a single audio or video file."""
    try:
        validate_media_file(media_file)
    except MediaValidationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=ExitCode.ERROR_FILE) from None

    if engine is not None and engine not in ENGINES:
        typer.echo(
            f"Error: unknown engine '{engine}'. Choose from: {', '.join(ENGINES)}.",
            err=True,
        )
        raise typer.Exit(code=ExitCode.ERROR_ARGS)

    config = resolve_config(
        load_config(),
        engine=engine,
        language=language,
        output_dir=str(output) if output is not None else None,
        temp_dir=temp_dir,
    )

    try:
        result = asyncio.run(_run_job(config, media_file, speakers, diarization))
    except JobFailedError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=exit_code_for(e)) from None

    if output is not None:
        out_path = write_transcript(result, media_file, output)
        typer.echo(f"Saved {out_path}", err=True)
    elif json_output:
        typer.echo(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    else:
        typer.echo(result.text)
