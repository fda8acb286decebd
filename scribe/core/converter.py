"""Audio extraction and normalization via ffmpeg."""

from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path

from scribe.core.workspace import remove_file
from scribe.exceptions import ConversionError

logger = logging.getLogger(__name__)

_STREAMING_FILTERS = (
    "highpass=f=50,lowpass=f=15000,volume=2.5,"
    "dynaudnorm=f=150:g=20:p=0.75:m=20,aresample=44100"
)
_STDERR_TAIL = 2000


class FfmpegConverter:
    def __init__(self, ffmpeg_binary: str = "ffmpeg", timeout: float = 300.0) -> None:
        self._binary = ffmpeg_binary
        self._timeout = timeout

    async def extract_audio(self, source: Path, dest_dir: Path) -> Path:
        """Drop the video stream and decode audio to WAV 16kHz mono."""
        output = dest_dir / f"{uuid.uuid4().hex}-extracted.wav"
        await self._run(
            source,
            output,
            ["-vn", "-acodec", "pcm_s16le", "-ar", "16000", "-ac", "1"],
        )
        return output

    async def normalize_audio(self, source: Path, dest_dir: Path) -> Path:
        """Re-encode to low-bitrate MP3, the working codec that gets chunked."""
        output = dest_dir / f"{uuid.uuid4().hex}.mp3"
        await self._run(
            source,
            output,
            [
                "-vn",
                "-acodec", "libmp3lame",
                "-ar", "16000",
                "-ac", "1",
                "-b:a", "32k",
            ],
        )
        return output

    async def convert_for_streaming(self, source: Path, dest_dir: Path) -> Path:
        """Produce filtered 44.1kHz stereo PCM for the streaming recognizer."""
        output = dest_dir / f"{uuid.uuid4().hex}-stream.wav"
        await self._run(
            source,
            output,
            [
                "-acodec", "pcm_s16le",
                "-ar", "44100",
                "-ac", "2",
                "-f", "wav",
                "-af", _STREAMING_FILTERS,
            ],
        )
        return output

    async def _run(self, source: Path, output: Path, args: list[str]) -> None:
        cmd = [self._binary, "-i", str(source), *args, "-y", str(output)]
        logger.debug("Running ffmpeg: %s", " ".join(cmd))

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise ConversionError(
                "ffmpeg not found. Install ffmpeg to process media files."
            ) from None

        try:
            _, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            await remove_file(output)
            raise ConversionError(
                f"ffmpeg timed out after {self._timeout:.0f}s while converting {source.name}"
            ) from None

        stderr_text = stderr.decode("utf-8", errors="replace") if stderr else ""
        if stderr_text:
            logger.debug("ffmpeg stderr for %s:\n%s", source.name, stderr_text)

        if process.returncode != 0:
            await remove_file(output)
            tail = stderr_text[-_STDERR_TAIL:].strip()
            logger.error(
                "ffmpeg exited with code %s for %s: %s",
                process.returncode, source.name, tail,
            )
            raise ConversionError(
                f"ffmpeg failed to convert {source.name} (exit code {process.returncode})"
            )

        if not output.exists() or output.stat().st_size == 0:
            await remove_file(output)
            raise ConversionError(f"ffmpeg produced no output for {source.name}")

        logger.info("Converted %s -> %s", source.name, output.name)
