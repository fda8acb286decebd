"""Custom exceptions for the transcription pipeline."""


class ScribeError(Exception):
    """Base class for pipeline errors."""


class MediaValidationError(ScribeError):
    """Raised when a source media file is missing, empty or unsupported."""


class ConversionError(ScribeError):
    """Raised when ffmpeg fails to extract or convert audio."""


class ChunkingError(ScribeError):
    """Raised when a media file cannot be split into chunks."""


class BackendError(ScribeError):
    """Raised when a transcription backend returns an unusable response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(BackendError):
    """Raised when the backend answers with HTTP 429."""


class BackendUnavailableError(BackendError):
    """Raised when a backend is not configured or cannot be reached at all."""


class ChunkTranscriptionError(ScribeError):
    """Raised when one chunk could not be transcribed after all retries."""

    def __init__(self, chunk_index: int, message: str) -> None:
        super().__init__(f"Failed to transcribe chunk {chunk_index + 1}: {message}")
        self.chunk_index = chunk_index


class StreamingSessionError(ScribeError):
    """Raised when a streaming session ends without producing any result."""


class JobFailedError(ScribeError):
    """Raised to job submitters when a job ends in the error state."""

    def __init__(self, job_id: str, message: str) -> None:
        super().__init__(message)
        self.job_id = job_id
