"""Batch processing command for the scribe CLI."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer

from scribe.cli.transcribe import ENGINES
from scribe.config import load_config, resolve_config
from scribe.core.batch import BatchRunner, discover_media_files
from scribe.core.orchestrator import JobOrchestrator
from scribe.core.status_store import InMemoryStatusStore
from scribe.data_models import DiarizationBackend
from scribe.exit_codes import ExitCode


def batch_cmd(
    input_dir: Annotated[
        Path,
        typer.Argument(help="Directory with media files."),
    ],
    speakers: Annotated[
        bool,
        typer.Option(
            "--speakers", "-s",
            help="Attribute transcripts to speakers.",
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
        typer.Option("--output", "-o", help="Output directory."),
    ] = None,
    max_concurrent: Annotated[
        int | None,
        typer.Option(
            "--max-concurrent",
            help="Maximum number of jobs processed at once.",
        ),
    ] = None,
    recursive: Annotated[
        bool,
        typer.Option(
            "--recursive", "-r",
            help="Process subdirectories.",
        ),
    ] = False,
    pattern: Annotated[
        str,
        typer.Option(
            "--pattern", help="Glob pattern for media files.",
        ),
    ] = "*",
    skip_existing: Annotated[
        bool,
        typer.Option(
            "--skip-existing",
            help="Skip already processed files.",
        ),
    ] = False,
) -> None:
    """Batch process media files in a directory."""
    if not input_dir.exists():
        typer.echo(
            f"Error: Directory not found: {input_dir}", err=True,
        )
        raise typer.Exit(code=ExitCode.ERROR_FILE)

    if engine is not None and engine not in ENGINES:
        typer.echo(
            f"Error: unknown engine '{engine}'. Choose from: {', '.join(ENGINES)}.",
            err=True,
        )
        raise typer.Exit(code=ExitCode.ERROR_ARGS)

    files = discover_media_files(
        input_dir, recursive=recursive, pattern=pattern,
    )

    if not files:
        typer.echo("No media files found.", err=True)
        raise typer.Exit(code=0)

    config = resolve_config(
        load_config(),
        engine=engine,
        language=language,
        output_dir=str(output) if output is not None else None,
        max_concurrent_jobs=max_concurrent,
    )

    store = InMemoryStatusStore()
    runner = BatchRunner(
        JobOrchestrator(config, store),
        store,
        config.max_concurrent_jobs,
        speaker_identification=speakers,
        diarization_backend=diarization,
        skip_existing=skip_existing,
    )
    result = asyncio.run(
        runner.run(
            files,
            Path(config.output_dir),
            input_base=input_dir if recursive else None,
        )
    )

    typer.echo(
        f"Processed {result.succeeded}/{result.total} files.",
        err=True,
    )
    if result.errors:
        for path, err in result.errors:
            typer.echo(f"  Failed: {path} - {err}", err=True)

    raise typer.Exit(code=result.exit_code)
