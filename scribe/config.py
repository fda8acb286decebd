"""Configuration loading and management."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from dotenv import load_dotenv

if TYPE_CHECKING:
    from scribe.core.chunker import ChunkingPolicy
    from scribe.core.retry import RetryPolicy

load_dotenv()

_MB = 1024 * 1024


@dataclass
class ScribeConfig:
    temp_dir: str = "storage/tmp"
    output_dir: str = "."
    language: str = "en"

    # queue
    max_concurrent_jobs: int = 100

    # chunking
    chunk_size_mb: float = 5
    large_file_chunk_mb: float = 3
    very_large_file_chunk_mb: float = 2
    large_file_threshold_mb: float = 200
    very_large_file_threshold_mb: float = 500
    batch_threshold: int = 20
    batch_size: int = 10

    # generic backend
    engine: str = "http"
    api_base_url: str = "https://api.openai.com/v1"
    api_model: str = "whisper-1"
    openai_api_key: str | None = None
    use_azure_openai: bool = False
    azure_openai_endpoint: str | None = None
    azure_openai_api_key: str | None = None
    azure_openai_api_version: str | None = None
    azure_openai_deployment: str | None = None
    request_timeout: float = 120.0
    chunk_max_retries: int = 3
    chunk_retry_delay: float = 2.0
    api_max_retries: int = 3
    api_retry_delay: float = 1.0

    # streaming diarization backend
    azure_speech_key: str | None = None
    azure_speech_region: str | None = None
    max_speakers: int = 10
    stall_timeout: float = 30.0
    min_session_seconds: float = 60.0
    max_session_seconds: float = 1800.0
    streaming_fallback: bool = True

    # local engine
    local_model: str = "large-v3"
    device: str = "cpu"
    compute_type: str = "int8"

    ffmpeg_timeout: float = 300.0

    def with_overrides(self, **kwargs: Any) -> ScribeConfig:
        return replace(self, **kwargs)

    @property
    def has_streaming_credentials(self) -> bool:
        return bool(self.azure_speech_key and self.azure_speech_region)

    def chunking_policy(self) -> ChunkingPolicy:
        from scribe.core.chunker import ChunkingPolicy

        return ChunkingPolicy(
            chunk_size=int(self.chunk_size_mb * _MB),
            large_file_chunk_size=int(self.large_file_chunk_mb * _MB),
            very_large_file_chunk_size=int(self.very_large_file_chunk_mb * _MB),
            large_file_threshold=int(self.large_file_threshold_mb * _MB),
            very_large_file_threshold=int(self.very_large_file_threshold_mb * _MB),
        )

    def chunk_retry_policy(self) -> RetryPolicy:
        from scribe.core.retry import RetryPolicy

        return RetryPolicy(
            max_attempts=self.chunk_max_retries + 1,
            delay=self.chunk_retry_delay,
            backoff=2.0,
        )

    def api_retry_policy(self) -> RetryPolicy:
        from scribe.core.retry import RetryPolicy

        return RetryPolicy(
            max_attempts=self.api_max_retries + 1,
            delay=self.api_retry_delay,
            backoff=2.0,
        )


_ENV_OVERRIDES: dict[str, str] = {
    "SCRIBE_TEMP_DIR": "temp_dir",
    "OPENAI_API_KEY": "openai_api_key",
    "AZURE_OPENAI_ENDPOINT": "azure_openai_endpoint",
    "AZURE_OPENAI_API_KEY": "azure_openai_api_key",
    "AZURE_OPENAI_API_VERSION": "azure_openai_api_version",
    "AZURE_OPENAI_DEPLOYMENT_NAME": "azure_openai_deployment",
    "AZURE_SPEECH_KEY": "azure_speech_key",
    "AZURE_SPEECH_REGION": "azure_speech_region",
}

_YAML_SECTIONS: dict[str, tuple[str, ...]] = {
    "queue": ("max_concurrent_jobs",),
    "chunking": (
        "chunk_size_mb",
        "large_file_chunk_mb",
        "very_large_file_chunk_mb",
        "large_file_threshold_mb",
        "very_large_file_threshold_mb",
        "batch_threshold",
        "batch_size",
    ),
    "backend": (
        "engine",
        "api_base_url",
        "api_model",
        "use_azure_openai",
        "azure_openai_endpoint",
        "azure_openai_api_version",
        "azure_openai_deployment",
        "request_timeout",
        "chunk_max_retries",
        "chunk_retry_delay",
        "api_max_retries",
        "api_retry_delay",
    ),
    "streaming": (
        "azure_speech_region",
        "max_speakers",
        "stall_timeout",
        "min_session_seconds",
        "max_session_seconds",
        "streaming_fallback",
    ),
    "local": ("local_model", "device", "compute_type"),
}


def _apply_env_overrides(config: ScribeConfig) -> ScribeConfig:
    overrides: dict[str, Any] = {}
    for env_name, field_name in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            overrides[field_name] = value
    use_azure_openai = os.environ.get("USE_AZURE_OPENAI")
    if use_azure_openai:
        overrides["use_azure_openai"] = use_azure_openai.lower() == "true"
    if overrides:
        return replace(config, **overrides)
    return config


def load_config(path: Path | None = None) -> ScribeConfig:
    if path is None:
        env_path = os.environ.get("SCRIBE_CONFIG")
        if env_path:
            path = Path(env_path)

    if path is None:
        cwd_config = Path("config.yaml")
        if cwd_config.exists():
            path = cwd_config

    if path is None or not path.exists():
        return _apply_env_overrides(ScribeConfig())

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    kwargs: dict[str, Any] = {}
    for key in ("temp_dir", "output_dir", "language", "ffmpeg_timeout"):
        if key in data:
            kwargs[key] = data[key]

    for section, keys in _YAML_SECTIONS.items():
        values = data.get(section)
        if not isinstance(values, dict):
            continue
        for key in keys:
            if key in values:
                kwargs[key] = values[key]

    return _apply_env_overrides(ScribeConfig(**kwargs))


def resolve_config(
    config: ScribeConfig,
    *,
    engine: str | None = None,
    language: str | None = None,
    output_dir: str | None = None,
    temp_dir: str | None = None,
    max_concurrent_jobs: int | None = None,
    local_model: str | None = None,
    device: str | None = None,
) -> ScribeConfig:
    """Resolve config priority: CLI args > env > YAML > defaults."""
    overrides: dict[str, Any] = {}
    if engine is not None:
        overrides["engine"] = engine
    if language is not None:
        overrides["language"] = language
    if output_dir is not None:
        overrides["output_dir"] = output_dir
    if temp_dir is not None:
        overrides["temp_dir"] = temp_dir
    if max_concurrent_jobs is not None:
        overrides["max_concurrent_jobs"] = max_concurrent_jobs
    if local_model is not None:
        overrides["local_model"] = local_model
    if device is not None:
        overrides["device"] = device
    if overrides:
        return replace(config, **overrides)
    return config
