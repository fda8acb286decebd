"""In-process transcription with faster-whisper."""

from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

from faster_whisper import WhisperModel

from scribe.core.backends import ChunkBackend
from scribe.data_models import Chunk, Segment, TranscriptResult
from scribe.exceptions import BackendUnavailableError, ChunkTranscriptionError

if TYPE_CHECKING:
    from scribe.config import ScribeConfig

logger = logging.getLogger(__name__)


class LocalWhisperBackend(ChunkBackend):
    """Generic backend that runs Whisper locally instead of over HTTP.

    The model is loaded on first use and shared by every chunk; inference
    runs in a worker thread so the event loop keeps serving other jobs.
    """

    name = "local"

    def __init__(self, config: ScribeConfig) -> None:
        self._config = config
        self._model: WhisperModel | None = None
        self._load_lock = threading.Lock()

    def _load_model(self) -> WhisperModel:
        with self._load_lock:
            if self._model is None:
                logger.info(
                    "Loading Whisper model %s on %s (%s)",
                    self._config.local_model, self._config.device, self._config.compute_type,
                )
                try:
                    self._model = WhisperModel(
                        self._config.local_model,
                        device=self._config.device,
                        compute_type=self._config.compute_type,
                    )
                except Exception as e:
                    raise BackendUnavailableError(f"Failed to load model: {e}") from e
            return self._model

    def _transcribe(self, path: Path) -> list[Any]:
        model = self._load_model()
        segments_iter, _info = model.transcribe(
            str(path),
            language=self._config.language,
            vad_filter=True,
            vad_parameters={"min_silence_duration_ms": 500},
        )
        return list(segments_iter)

    async def transcribe_chunk(
        self, chunk: Chunk, *, detailed: bool = False
    ) -> TranscriptResult:
        try:
            raw_segments = await asyncio.to_thread(self._transcribe, chunk.path)
        except BackendUnavailableError:
            raise
        except (RuntimeError, ValueError, OSError) as e:
            raise ChunkTranscriptionError(chunk.index, str(e)) from e

        text = " ".join(seg.text.strip() for seg in raw_segments).strip()
        if not detailed:
            return TranscriptResult(text=text)

        segments = [
            Segment(
                id=f"segment-{n}",
                start=float(seg.start),
                end=float(seg.end),
                text=seg.text.strip(),
            )
            for n, seg in enumerate(raw_segments)
        ]
        return TranscriptResult(text=text, segments=segments or None)

    async def aclose(self) -> None:
        self._model = None
