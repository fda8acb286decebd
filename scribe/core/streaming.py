"""Speaker-attributed transcription over a real-time recognition session.

One session is opened per chunk. Events are collected until the service
reports the session stopped, until no event has arrived for the stall
timeout, or until a time limit derived from the audio size runs out.
Whatever was recognized by then is the chunk's result.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from scribe.core.backends import ChunkBackend
from scribe.core.heuristic_diarizer import assign_speakers, format_speaker_text
from scribe.core.retry import SleepFn, retry_async
from scribe.core.workspace import remove_file
from scribe.data_models import Chunk, Segment, Speaker, TranscriptResult
from scribe.exceptions import (
    BackendUnavailableError,
    ChunkTranscriptionError,
    ConversionError,
    StreamingSessionError,
)

if TYPE_CHECKING:
    from scribe.config import ScribeConfig
    from scribe.core.converter import FfmpegConverter

logger = logging.getLogger(__name__)

TRANSCRIBED = "transcribed"
CANCELED = "canceled"
STOPPED = "stopped"

TICKS_PER_SECOND = 10_000_000
# 16-bit stereo PCM at 44.1kHz
STREAM_BYTES_PER_SECOND = 176_000


@dataclass(frozen=True)
class RecognitionEvent:
    kind: str
    speaker_id: str = ""
    text: str = ""
    offset: float = 0.0
    duration: float = 0.0
    detail: str = ""


class RecognitionSession(ABC):
    @abstractmethod
    async def start(self) -> None:
        """Open the session and begin recognizing."""

    @abstractmethod
    async def next_event(self) -> RecognitionEvent:
        """Wait for the next event from the service."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop recognizing. Safe to call on a session that never started."""


SessionFactory = Callable[[Path], RecognitionSession]


def session_time_limit(
    audio_bytes: int,
    min_seconds: float = 60.0,
    max_seconds: float = 1800.0,
) -> float:
    """Estimated audio length with 50% headroom plus 30s, clamped."""
    estimate = audio_bytes / STREAM_BYTES_PER_SECOND * 1.5 + 30
    return min(max(estimate, min_seconds), max_seconds)


def speech_locale(language: str) -> str:
    if "-" in language:
        return language
    return f"{language}-{language.upper()}" if language != "en" else "en-US"


class AzureConversationSession(RecognitionSession):
    """Adapter over the Azure Speech ``ConversationTranscriber``.

    SDK callbacks fire on SDK threads; they are handed to the event loop
    through ``call_soon_threadsafe`` and consumed via an ``asyncio.Queue``.
    """

    def __init__(
        self,
        audio_path: Path,
        *,
        key: str,
        region: str,
        language: str = "en",
        max_speakers: int = 10,
    ) -> None:
        self._audio_path = audio_path
        self._key = key
        self._region = region
        self._language = language
        self._max_speakers = max_speakers
        self._queue: asyncio.Queue[RecognitionEvent] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._transcriber: Any = None

    def _post(self, event: RecognitionEvent) -> None:
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    def _on_transcribed(self, evt: Any) -> None:
        result = evt.result
        text = (result.text or "").strip()
        if not text:
            return
        self._post(
            RecognitionEvent(
                kind=TRANSCRIBED,
                speaker_id=result.speaker_id or "unknown",
                text=text,
                offset=result.offset / TICKS_PER_SECOND,
                duration=result.duration / TICKS_PER_SECOND,
            )
        )

    def _on_canceled(self, evt: Any) -> None:
        details = getattr(evt, "cancellation_details", None)
        detail = getattr(details, "error_details", "") or str(getattr(details, "reason", ""))
        self._post(RecognitionEvent(kind=CANCELED, detail=detail))

    def _on_stopped(self, evt: Any) -> None:
        self._post(RecognitionEvent(kind=STOPPED))

    async def start(self) -> None:
        try:
            import azure.cognitiveservices.speech as speechsdk
        except ImportError as e:
            raise BackendUnavailableError(
                "azure-cognitiveservices-speech is not installed "
                "(pip install 'scribe-pipeline[azure]')"
            ) from e

        self._loop = asyncio.get_running_loop()
        try:
            speech_config = speechsdk.SpeechConfig(
                subscription=self._key, region=self._region
            )
            speech_config.speech_recognition_language = speech_locale(self._language)
            speech_config.set_property_by_name("DiarizationEnabled", "true")
            speech_config.set_property_by_name(
                "TranscriptionService.EnableSpeakerDiarization", "true"
            )
            speech_config.set_property_by_name(
                "TranscriptionService.MaxSpeakerCount", str(self._max_speakers)
            )
            speech_config.set_property_by_name(
                "SpeechServiceResponse_PostProcessingOption", "TrueText"
            )
            audio_config = speechsdk.audio.AudioConfig(filename=str(self._audio_path))
            transcriber = speechsdk.transcription.ConversationTranscriber(
                speech_config=speech_config, audio_config=audio_config
            )
        except (RuntimeError, ValueError) as e:
            raise BackendUnavailableError(f"Cannot open speech session: {e}") from e

        transcriber.transcribed.connect(self._on_transcribed)
        transcriber.canceled.connect(self._on_canceled)
        transcriber.session_stopped.connect(self._on_stopped)
        self._transcriber = transcriber

        try:
            await asyncio.to_thread(lambda: transcriber.start_transcribing_async().get())
        except RuntimeError as e:
            raise BackendUnavailableError(f"Cannot start speech session: {e}") from e
        logger.info("Speech session started for %s", self._audio_path.name)

    async def next_event(self) -> RecognitionEvent:
        return await self._queue.get()

    async def stop(self) -> None:
        transcriber, self._transcriber = self._transcriber, None
        if transcriber is None:
            return
        try:
            await asyncio.to_thread(lambda: transcriber.stop_transcribing_async().get())
        except RuntimeError:
            logger.warning("Failed to stop speech session cleanly", exc_info=True)


async def collect_session(
    session: RecognitionSession,
    *,
    stall_timeout: float,
    time_limit: float,
) -> TranscriptResult:
    """Run ``session`` to completion and build a speaker-attributed result.

    Raw speaker ids are renumbered 1, 2, ... in order of first appearance.
    Cancellation, a stall or the time limit end the session early; partial
    results are kept. A session that yields nothing raises
    ``StreamingSessionError``.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + time_limit
    speaker_numbers: dict[str, str] = {}
    segments: list[Segment] = []

    try:
        await session.start()
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.info("Session time limit of %.0fs reached", time_limit)
                break
            wait = min(stall_timeout, remaining)
            try:
                event = await asyncio.wait_for(session.next_event(), timeout=wait)
            except asyncio.TimeoutError:
                if wait >= stall_timeout:
                    logger.warning(
                        "No recognition events for %.0fs, completing with %d segments",
                        stall_timeout, len(segments),
                    )
                else:
                    logger.info("Session time limit of %.0fs reached", time_limit)
                break

            if event.kind == STOPPED:
                break
            if event.kind == CANCELED:
                logger.warning(
                    "Recognition session canceled after %d segments: %s",
                    len(segments), event.detail,
                )
                break
            if event.kind == TRANSCRIBED and event.text.strip():
                number = speaker_numbers.setdefault(
                    event.speaker_id or "unknown", str(len(speaker_numbers) + 1)
                )
                segments.append(
                    Segment(
                        id=f"segment-{len(segments)}",
                        start=event.offset,
                        end=event.offset + event.duration,
                        text=event.text.strip(),
                        speaker=Speaker.numbered(number),
                    )
                )
    finally:
        await session.stop()

    if not segments:
        raise StreamingSessionError("Recognition session ended without any speech")

    segments.sort(key=lambda s: s.start)
    logger.info(
        "Session produced %d segments from %d speakers",
        len(segments), len(speaker_numbers),
    )
    return TranscriptResult(text=format_speaker_text(segments), segments=segments)


class StreamingDiarizationBackend(ChunkBackend):
    """Diarizing backend; falls back to ``fallback`` plus heuristic speakers."""

    name = "streaming"

    def __init__(
        self,
        config: ScribeConfig,
        converter: FfmpegConverter,
        *,
        fallback: ChunkBackend | None = None,
        session_factory: SessionFactory | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._config = config
        self._converter = converter
        self._fallback = fallback
        self._session_factory = session_factory or self._azure_session
        self._sleep = sleep

    def _azure_session(self, audio_path: Path) -> RecognitionSession:
        config = self._config
        if not config.has_streaming_credentials:
            raise BackendUnavailableError("AZURE_SPEECH_KEY and AZURE_SPEECH_REGION must be set")
        return AzureConversationSession(
            audio_path,
            key=config.azure_speech_key or "",
            region=config.azure_speech_region or "",
            language=config.language,
            max_speakers=config.max_speakers,
        )

    async def _stream(self, chunk: Chunk) -> TranscriptResult:
        wav = await self._converter.convert_for_streaming(chunk.path, chunk.path.parent)
        try:
            size = (await asyncio.to_thread(wav.stat)).st_size
            limit = session_time_limit(
                size, self._config.min_session_seconds, self._config.max_session_seconds
            )
            logger.info(
                "Streaming chunk %d (%d bytes), session limit %.0fs",
                chunk.index + 1, size, limit,
            )

            async def _session() -> TranscriptResult:
                return await collect_session(
                    self._session_factory(wav),
                    stall_timeout=self._config.stall_timeout,
                    time_limit=limit,
                )

            return await retry_async(
                _session,
                self._config.chunk_retry_policy(),
                retry_on=StreamingSessionError,
                sleep=self._sleep,
                description=f"Streaming session for chunk {chunk.index + 1}",
            )
        finally:
            await remove_file(wav)

    async def transcribe_chunk(
        self, chunk: Chunk, *, detailed: bool = True
    ) -> TranscriptResult:
        try:
            return await self._stream(chunk)
        except (StreamingSessionError, BackendUnavailableError, ConversionError) as e:
            if self._fallback is None or not self._config.streaming_fallback:
                if isinstance(e, StreamingSessionError):
                    raise ChunkTranscriptionError(chunk.index, str(e)) from e
                raise
            logger.warning(
                "Streaming diarization failed for chunk %d (%s), "
                "falling back to %s backend with heuristic speakers",
                chunk.index + 1, e, self._fallback.name,
            )

        plain = await self._fallback.transcribe_chunk(chunk, detailed=False)
        return assign_speakers(plain.text)

    async def aclose(self) -> None:
        if self._fallback is not None:
            await self._fallback.aclose()
