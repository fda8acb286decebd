"""Chunk transcription backends and response normalization."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import httpx

from scribe.core.retry import SleepFn, retry_async
from scribe.data_models import Chunk, DiarizationBackend, Segment, Speaker, TranscriptResult
from scribe.exceptions import (
    BackendError,
    BackendUnavailableError,
    ChunkTranscriptionError,
    RateLimitError,
)

if TYPE_CHECKING:
    from scribe.config import ScribeConfig
    from scribe.core.converter import FfmpegConverter

logger = logging.getLogger(__name__)

DEFAULT_AZURE_OPENAI_API_VERSION = "2024-06-01"


class ChunkBackend(ABC):
    name: str = "backend"

    @abstractmethod
    async def transcribe_chunk(
        self, chunk: Chunk, *, detailed: bool = False
    ) -> TranscriptResult:
        """Transcribe one chunk; ``detailed`` asks for segment timestamps."""

    async def aclose(self) -> None:
        return None


def _parse_speaker(raw: Any) -> Speaker | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, dict):
        speaker_id = str(raw.get("id", ""))
        return Speaker(id=speaker_id, label=str(raw.get("label") or f"Speaker {speaker_id}"))
    return Speaker.numbered(str(raw))


def normalize_response(payload: Any) -> TranscriptResult:
    """Turn a raw backend payload into a ``TranscriptResult``.

    Accepts a plain string, ``{"text"}`` or ``{"text", "segments"}``.
    Segment times are coerced to float seconds.
    """
    if isinstance(payload, str):
        return TranscriptResult(text=payload)

    if not isinstance(payload, dict) or "text" not in payload:
        raise BackendError(f"Unexpected response payload: {type(payload).__name__}")

    text = str(payload["text"] or "")
    raw_segments = payload.get("segments")
    if not raw_segments:
        return TranscriptResult(text=text)

    segments: list[Segment] = []
    try:
        for n, raw in enumerate(raw_segments):
            segments.append(
                Segment(
                    id=str(raw.get("id", f"segment-{n}")),
                    start=float(raw["start"]),
                    end=float(raw["end"]),
                    text=str(raw.get("text", "")).strip(),
                    speaker=_parse_speaker(raw.get("speaker")),
                )
            )
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise BackendError(f"Malformed segment in response: {e}") from e

    return TranscriptResult(text=text, segments=segments)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return response.text[:200] or response.reason_phrase


class HttpTranscriptionBackend(ChunkBackend):
    """OpenAI-compatible ``/audio/transcriptions`` client.

    Two retry layers: the inner one re-sends the request on HTTP 429 only,
    the outer one repeats the whole call on any backend or transport
    failure except missing configuration.
    """

    name = "http"

    def __init__(
        self,
        config: ScribeConfig,
        *,
        client: httpx.AsyncClient | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.request_timeout)
        self._sleep = sleep
        self._api_policy = config.api_retry_policy()
        self._chunk_policy = config.chunk_retry_policy()

    @property
    def endpoint(self) -> str:
        config = self._config
        if config.use_azure_openai:
            if not (config.azure_openai_endpoint and config.azure_openai_deployment):
                raise BackendUnavailableError(
                    "Azure OpenAI endpoint and deployment name must be configured"
                )
            version = config.azure_openai_api_version or DEFAULT_AZURE_OPENAI_API_VERSION
            return (
                f"{config.azure_openai_endpoint.rstrip('/')}/openai/deployments/"
                f"{config.azure_openai_deployment}/audio/transcriptions"
                f"?api-version={version}"
            )
        return f"{config.api_base_url.rstrip('/')}/audio/transcriptions"

    def _headers(self) -> dict[str, str]:
        config = self._config
        if config.use_azure_openai:
            if not config.azure_openai_api_key:
                raise BackendUnavailableError("AZURE_OPENAI_API_KEY is not set")
            return {"api-key": config.azure_openai_api_key}
        if not config.openai_api_key:
            raise BackendUnavailableError("OPENAI_API_KEY is not set")
        return {"Authorization": f"Bearer {config.openai_api_key}"}

    def _form_fields(self, detailed: bool) -> dict[str, str]:
        fields = {
            "model": self._config.api_model,
            "language": self._config.language,
            "response_format": "verbose_json" if detailed else "json",
        }
        if detailed:
            fields["timestamp_granularities[]"] = "segment"
        return fields

    async def _post(self, chunk: Chunk, detailed: bool) -> TranscriptResult:
        url = self.endpoint
        headers = self._headers()
        content = await asyncio.to_thread(chunk.path.read_bytes)
        mime_type = mimetypes.guess_type(chunk.path.name)[0] or "application/octet-stream"

        response = await self._client.post(
            url,
            headers=headers,
            data=self._form_fields(detailed),
            files={"file": (chunk.path.name, content, mime_type)},
        )

        if response.status_code == 429:
            raise RateLimitError(
                f"Rate limited: {_error_detail(response)}", status_code=429
            )
        if response.status_code in (401, 403):
            raise BackendUnavailableError(
                f"Authentication failed (HTTP {response.status_code}): "
                f"{_error_detail(response)}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise BackendError(
                f"HTTP {response.status_code}: {_error_detail(response)}",
                status_code=response.status_code,
            )

        try:
            payload: Any = response.json()
        except ValueError:
            payload = response.text
        return normalize_response(payload)

    async def transcribe_chunk(
        self, chunk: Chunk, *, detailed: bool = False
    ) -> TranscriptResult:
        label = f"chunk {chunk.index + 1}"

        async def _attempt() -> TranscriptResult:
            return await retry_async(
                lambda: self._post(chunk, detailed),
                self._api_policy,
                retry_on=RateLimitError,
                sleep=self._sleep,
                description=f"Request for {label}",
            )

        try:
            result = await retry_async(
                _attempt,
                self._chunk_policy,
                retry_on=(BackendError, httpx.TransportError),
                give_up_on=(BackendUnavailableError,),
                sleep=self._sleep,
                description=f"Transcription of {label}",
            )
        except BackendUnavailableError:
            raise
        except (BackendError, httpx.TransportError) as e:
            raise ChunkTranscriptionError(chunk.index, str(e)) from e

        logger.debug("Transcribed %s: %d characters", label, len(result.text))
        return result

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_generic_backend(config: ScribeConfig) -> ChunkBackend:
    if config.engine == "local":
        from scribe.core.local_backend import LocalWhisperBackend

        return LocalWhisperBackend(config)
    if config.engine == "http":
        return HttpTranscriptionBackend(config)
    raise ValueError(f"Unknown engine '{config.engine}'. Expected 'http' or 'local'")


def build_backend(
    config: ScribeConfig,
    diarization_backend: DiarizationBackend,
    converter: FfmpegConverter,
) -> ChunkBackend:
    """Pick the backend for one job."""
    if diarization_backend == DiarizationBackend.EXTERNAL:
        from scribe.core.streaming import StreamingDiarizationBackend

        return StreamingDiarizationBackend(
            config, converter, fallback=build_generic_backend(config)
        )
    return build_generic_backend(config)
