"""Main CLI application."""

from __future__ import annotations

import logging

import typer

from scribe import __version__
from scribe.cli.batch import batch_cmd
from scribe.cli.transcribe import transcribe_cmd

app = typer.Typer(
    name="scribe",
    help="Chunked media transcription with speaker attribution.",
    no_args_is_help=True,
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"scribe {__version__}")
        raise typer.Exit()


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )
    if not verbose:
        logging.getLogger("httpx").setLevel(logging.WARNING)


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging.",
    ),
) -> None:
    """Chunked media transcription with speaker attribution."""
    configure_logging(verbose)


app.command("transcribe")(transcribe_cmd)
app.command("batch")(batch_cmd)
