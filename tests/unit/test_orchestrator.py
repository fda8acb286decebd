"""Tests for the job orchestrator pipeline."""

from __future__ import annotations

import asyncio
from pathlib import Path

import httpx
import pytest

from scribe.config import ScribeConfig
from scribe.core.backends import ChunkBackend
from scribe.core.converter import FfmpegConverter
from scribe.core.orchestrator import CANCELLED_MESSAGE, JobOrchestrator, create_job, submit_job
from scribe.core.queue import ConcurrencyGovernor
from scribe.core.status_store import InMemoryStatusStore
from scribe.data_models import (
    Chunk,
    DiarizationBackend,
    Job,
    JobStatus,
    Segment,
    Speaker,
    TranscriptResult,
    new_job,
)
from scribe.exceptions import (
    BackendUnavailableError,
    ChunkTranscriptionError,
    ConversionError,
    JobFailedError,
    MediaValidationError,
)

_MB = 1024 * 1024


class FakeConverter(FfmpegConverter):
    """Writes a working file of ``working_size`` bytes instead of running ffmpeg."""

    def __init__(
        self, working_size: int, fail: bool = False, error: Exception | None = None,
    ) -> None:
        super().__init__()
        self.working_size = working_size
        self.fail = fail
        self.error = error
        self.calls: list[str] = []

    async def extract_audio(self, source: Path, dest_dir: Path) -> Path:
        self.calls.append("extract")
        out = dest_dir / "extracted.wav"
        out.write_bytes(b"\x00" * 16)
        return out

    async def normalize_audio(self, source: Path, dest_dir: Path) -> Path:
        self.calls.append("normalize")
        if self.error is not None:
            raise self.error
        if self.fail:
            raise ConversionError(f"ffmpeg failed to convert {source.name} (exit code 1)")
        out = dest_dir / "working.mp3"
        with open(out, "wb") as f:
            f.truncate(self.working_size)
        return out


class ScriptedBackend(ChunkBackend):
    name = "scripted"

    def __init__(
        self,
        texts: dict[int, str] | None = None,
        failing: tuple[int, ...] = (),
        errors: dict[int, Exception] | None = None,
        error: Exception | None = None,
        segments: bool = False,
        shuffle: bool = False,
    ) -> None:
        self.texts = texts or {}
        self.failing = failing
        self.errors = errors or {}
        self.error = error
        self.segments = segments
        self.shuffle = shuffle
        self.seen: list[tuple[int, bool, bool]] = []
        self.closed = False

    async def transcribe_chunk(self, chunk: Chunk, *, detailed: bool = False) -> TranscriptResult:
        self.seen.append((chunk.index, detailed, chunk.path.exists()))
        if self.shuffle:
            await asyncio.sleep(0.001 * (10 - chunk.index % 10))
        if self.error is not None:
            raise self.error
        if chunk.index in self.errors:
            raise self.errors[chunk.index]
        if chunk.index in self.failing:
            raise ChunkTranscriptionError(chunk.index, "backend down")
        text = self.texts.get(chunk.index, f"c{chunk.index}")
        if not self.segments:
            return TranscriptResult(text=text)
        return TranscriptResult(
            text=text,
            segments=[
                Segment("0", 0.0, 2.0, text, Speaker.numbered(chunk.index % 2 + 1)),
            ],
        )

    async def aclose(self) -> None:
        self.closed = True


class RecordingStore(InMemoryStatusStore):
    def __init__(self) -> None:
        super().__init__()
        self.history: list[tuple[JobStatus, str | None]] = []

    async def save_job(self, job: Job) -> None:
        self.history.append((job.status, job.progress_message))
        await super().save_job(job)


@pytest.fixture()
def source(tmp_path: Path) -> Path:
    path = tmp_path / "talk.mp3"
    path.write_bytes(b"\x00" * 100)
    return path


def _config(tmp_path: Path, **kwargs: object) -> ScribeConfig:
    return ScribeConfig(temp_dir=str(tmp_path / "tmp"), **kwargs)  # type: ignore[arg-type]


def _orchestrator(
    config: ScribeConfig,
    store: InMemoryStatusStore,
    converter: FakeConverter,
    backend: ScriptedBackend,
    routed: list[DiarizationBackend] | None = None,
) -> JobOrchestrator:
    def factory(
        cfg: ScribeConfig, diarization: DiarizationBackend, conv: FfmpegConverter
    ) -> ChunkBackend:
        if routed is not None:
            routed.append(diarization)
        return backend

    return JobOrchestrator(config, store, converter=converter, backend_factory=factory)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestJobOrchestratorRun:
    def test_twelve_mb_end_to_end(self, tmp_path: Path, source: Path) -> None:
        store = RecordingStore()
        backend = ScriptedBackend({0: "Hello ", 1: "world ", 2: "test."})
        orchestrator = _orchestrator(_config(tmp_path), store, FakeConverter(12 * _MB), backend)
        job = new_job(source)

        result = asyncio.run(orchestrator.run(job))

        assert result.text == "Hello  world  test."
        assert result.segments is None
        assert [s[0] for s in backend.seen] == [0, 1, 2]
        assert all(detailed is False for _, detailed, _ in backend.seen)

        stored = asyncio.run(store.get_job(job.id))
        assert stored is not None
        assert stored.status == JobStatus.COMPLETED
        assert stored.result_text == "Hello  world  test."
        assert stored.completed_at is not None
        assert not (tmp_path / "tmp" / job.id).exists()
        assert backend.closed

    def test_status_transitions(self, tmp_path: Path, source: Path) -> None:
        store = RecordingStore()
        orchestrator = _orchestrator(
            _config(tmp_path, chunk_size_mb=32 / _MB), store, FakeConverter(64), ScriptedBackend()
        )
        asyncio.run(orchestrator.run(new_job(source)))

        statuses = [status for status, _ in store.history]
        assert statuses[0] == JobStatus.PROCESSING
        assert statuses[-1] == JobStatus.COMPLETED
        assert (JobStatus.PROCESSING, "Preparing to transcribe 2 chunks...") in store.history

    def test_chunks_exist_while_transcribing(self, tmp_path: Path, source: Path) -> None:
        backend = ScriptedBackend()
        orchestrator = _orchestrator(
            _config(tmp_path, chunk_size_mb=32 / _MB), InMemoryStatusStore(), FakeConverter(64), backend
        )
        asyncio.run(orchestrator.run(new_job(source)))
        assert all(exists for _, _, exists in backend.seen)

    def test_audio_skips_extraction(self, tmp_path: Path, source: Path) -> None:
        converter = FakeConverter(64)
        orchestrator = _orchestrator(_config(tmp_path), InMemoryStatusStore(), converter, ScriptedBackend())
        asyncio.run(orchestrator.run(new_job(source)))
        assert converter.calls == ["normalize"]

    def test_video_extracts_audio_first(self, tmp_path: Path) -> None:
        video = tmp_path / "meeting.mp4"
        video.write_bytes(b"\x00" * 100)
        converter = FakeConverter(64)
        orchestrator = _orchestrator(_config(tmp_path), InMemoryStatusStore(), converter, ScriptedBackend())
        asyncio.run(orchestrator.run(new_job(video)))
        assert converter.calls == ["extract", "normalize"]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestJobOrchestratorFailures:
    def test_failed_chunk_becomes_marker(self, tmp_path: Path, source: Path) -> None:
        store = InMemoryStatusStore()
        backend = ScriptedBackend({0: "one", 1: "two", 2: "three"}, failing=(1,))
        orchestrator = _orchestrator(
            _config(tmp_path, chunk_size_mb=32 / _MB), store, FakeConverter(96), backend
        )
        job = new_job(source)

        result = asyncio.run(orchestrator.run(job))

        assert result.text == "one [Error transcribing part 2] three"
        stored = asyncio.run(store.get_job(job.id))
        assert stored is not None
        assert stored.status == JobStatus.COMPLETED

    def test_conversion_failure_ends_in_error(self, tmp_path: Path, source: Path) -> None:
        store = InMemoryStatusStore()
        backend = ScriptedBackend()
        orchestrator = _orchestrator(
            _config(tmp_path), store, FakeConverter(64, fail=True), backend
        )
        job = new_job(source)

        with pytest.raises(JobFailedError) as exc_info:
            asyncio.run(orchestrator.run(job))

        assert exc_info.value.job_id == job.id
        assert isinstance(exc_info.value.__cause__, ConversionError)
        stored = asyncio.run(store.get_job(job.id))
        assert stored is not None
        assert stored.status == JobStatus.ERROR
        assert "ffmpeg failed" in (stored.error_message or "")
        assert backend.seen == []
        assert not (tmp_path / "tmp" / job.id).exists()

    def test_missing_source(self, tmp_path: Path, source: Path) -> None:
        job = new_job(source)
        source.unlink()
        orchestrator = _orchestrator(_config(tmp_path), InMemoryStatusStore(), FakeConverter(64), ScriptedBackend())
        with pytest.raises(JobFailedError) as exc_info:
            asyncio.run(orchestrator.run(job))
        assert isinstance(exc_info.value.__cause__, MediaValidationError)

    def test_backend_unavailable_is_fatal(self, tmp_path: Path, source: Path) -> None:
        store = InMemoryStatusStore()
        backend = ScriptedBackend(error=BackendUnavailableError("OPENAI_API_KEY is not set"))
        orchestrator = _orchestrator(_config(tmp_path), store, FakeConverter(64), backend)
        job = new_job(source)

        with pytest.raises(JobFailedError, match="OPENAI_API_KEY"):
            asyncio.run(orchestrator.run(job))
        assert backend.closed

    @pytest.mark.parametrize(
        "error",
        [
            OSError("chunk 2 always throws"),
            RuntimeError("recognizer crashed"),
            httpx.DecodingError("bad gzip stream"),
        ],
    )
    def test_any_chunk_error_becomes_marker(
        self, tmp_path: Path, source: Path, error: Exception,
    ) -> None:
        store = InMemoryStatusStore()
        backend = ScriptedBackend({0: "one", 1: "two", 2: "three"}, errors={1: error})
        orchestrator = _orchestrator(
            _config(tmp_path, chunk_size_mb=32 / _MB), store, FakeConverter(96), backend
        )
        job = new_job(source)

        result = asyncio.run(orchestrator.run(job))

        assert result.text == "one [Error transcribing part 2] three"
        assert [index for index, _, _ in backend.seen] == [0, 1, 2]
        stored = asyncio.run(store.get_job(job.id))
        assert stored is not None
        assert stored.status == JobStatus.COMPLETED

    def test_unexpected_error_message_hides_internals(self, tmp_path: Path, source: Path) -> None:
        store = InMemoryStatusStore()
        converter = FakeConverter(64, error=RuntimeError("segfault at 0xdeadbeef"))
        orchestrator = _orchestrator(_config(tmp_path), store, converter, ScriptedBackend())
        job = new_job(source)

        with pytest.raises(JobFailedError):
            asyncio.run(orchestrator.run(job))
        stored = asyncio.run(store.get_job(job.id))
        assert stored is not None
        assert stored.status == JobStatus.ERROR
        assert stored.error_message == "Unexpected error during normalization"


# ---------------------------------------------------------------------------
# Batching and speaker attribution
# ---------------------------------------------------------------------------

class TestBatching:
    def test_batches_keep_index_order(self, tmp_path: Path, source: Path) -> None:
        store = RecordingStore()
        backend = ScriptedBackend(shuffle=True)
        config = _config(tmp_path, chunk_size_mb=4 / _MB, batch_threshold=20, batch_size=10)
        orchestrator = _orchestrator(config, store, FakeConverter(100), backend)

        result = asyncio.run(orchestrator.run(new_job(source)))

        assert result.text == " ".join(f"c{i}" for i in range(25))
        progress = [msg for _, msg in store.history if msg and msg.startswith("Transcribing batch")]
        assert progress == [
            "Transcribing batch 1/3 (0% complete)",
            "Transcribing batch 2/3 (33% complete)",
            "Transcribing batch 3/3 (67% complete)",
        ]

    def test_small_jobs_are_sequential(self, tmp_path: Path, source: Path) -> None:
        store = RecordingStore()
        config = _config(tmp_path, chunk_size_mb=32 / _MB)
        orchestrator = _orchestrator(config, store, FakeConverter(96), ScriptedBackend())
        asyncio.run(orchestrator.run(new_job(source)))
        assert not any(msg and msg.startswith("Transcribing batch") for _, msg in store.history)


class TestSpeakerAttribution:
    def test_heuristic_applied_to_plain_text(self, tmp_path: Path, source: Path) -> None:
        backend = ScriptedBackend({0: "Are you there? Yes, I am here."})
        orchestrator = _orchestrator(_config(tmp_path), InMemoryStatusStore(), FakeConverter(64), backend)
        job = new_job(source, speaker_identification=True)

        result = asyncio.run(orchestrator.run(job))

        assert backend.seen[0][1] is True
        assert result.speaker_ids == {"1", "2"}
        assert result.text.startswith("Speaker 1:")

    def test_backend_speakers_kept(self, tmp_path: Path, source: Path) -> None:
        backend = ScriptedBackend(segments=True)
        orchestrator = _orchestrator(
            _config(tmp_path, chunk_size_mb=32 / _MB), InMemoryStatusStore(), FakeConverter(64), backend
        )
        result = asyncio.run(orchestrator.run(new_job(source, speaker_identification=True)))

        assert result.segments is not None
        assert [(s.start, s.end) for s in result.segments] == [(0.0, 2.0), (2.0, 4.0)]
        assert [s.id for s in result.segments] == ["segment-0", "segment-1"]
        assert result.text == "c0 c1"

    def test_no_heuristic_without_speaker_request(self, tmp_path: Path, source: Path) -> None:
        backend = ScriptedBackend({0: "Are you there? Yes."})
        orchestrator = _orchestrator(_config(tmp_path), InMemoryStatusStore(), FakeConverter(64), backend)
        result = asyncio.run(orchestrator.run(new_job(source)))
        assert result.segments is None

    def test_very_large_source_routed_to_streaming(self, tmp_path: Path, source: Path) -> None:
        routed: list[DiarizationBackend] = []
        config = _config(
            tmp_path,
            very_large_file_threshold_mb=16 / _MB,
            azure_speech_key="key",
            azure_speech_region="westeurope",
        )
        orchestrator = _orchestrator(config, InMemoryStatusStore(), FakeConverter(64), ScriptedBackend(), routed)
        job = new_job(source)

        asyncio.run(orchestrator.run(job))

        assert routed == [DiarizationBackend.EXTERNAL]
        assert job.speaker_identification is True

    def test_very_large_source_without_credentials(self, tmp_path: Path, source: Path) -> None:
        routed: list[DiarizationBackend] = []
        config = _config(tmp_path, very_large_file_threshold_mb=16 / _MB)
        orchestrator = _orchestrator(config, InMemoryStatusStore(), FakeConverter(64), ScriptedBackend(), routed)
        asyncio.run(orchestrator.run(new_job(source)))
        assert routed == [DiarizationBackend.HEURISTIC]

    def test_streaming_never_batches(self, tmp_path: Path, source: Path) -> None:
        store = RecordingStore()
        config = _config(tmp_path, chunk_size_mb=4 / _MB, batch_threshold=2, batch_size=2)
        orchestrator = _orchestrator(config, store, FakeConverter(40), ScriptedBackend(segments=True))
        job = new_job(source, diarization_backend=DiarizationBackend.EXTERNAL)

        asyncio.run(orchestrator.run(job))

        assert job.speaker_identification is True
        assert not any(msg and msg.startswith("Transcribing batch") for _, msg in store.history)


# ---------------------------------------------------------------------------
# Cancel, purge, submit
# ---------------------------------------------------------------------------

class TestCancelAndPurge:
    def test_cancel_flips_status(self, tmp_path: Path, source: Path) -> None:
        store = InMemoryStatusStore()
        orchestrator = _orchestrator(_config(tmp_path), store, FakeConverter(64), ScriptedBackend())
        job = new_job(source)

        async def scenario() -> Job | None:
            await store.save_job(job)
            assert await orchestrator.cancel(job.id) is True
            return await store.get_job(job.id)

        stored = asyncio.run(scenario())
        assert stored is not None
        assert stored.status == JobStatus.ERROR
        assert stored.error_message == CANCELLED_MESSAGE

    def test_cancel_unknown_or_finished(self, tmp_path: Path, source: Path) -> None:
        store = InMemoryStatusStore()
        orchestrator = _orchestrator(_config(tmp_path), store, FakeConverter(64), ScriptedBackend())
        job = new_job(source)
        job.status = JobStatus.COMPLETED

        async def scenario() -> tuple[bool, bool]:
            await store.save_job(job)
            return await orchestrator.cancel("missing"), await orchestrator.cancel(job.id)

        assert asyncio.run(scenario()) == (False, False)

    def test_purge_removes_everything(self, tmp_path: Path, source: Path) -> None:
        store = InMemoryStatusStore()
        config = _config(tmp_path)
        orchestrator = _orchestrator(config, store, FakeConverter(64), ScriptedBackend())
        job = new_job(source)
        leftover = Path(config.temp_dir) / job.id
        leftover.mkdir(parents=True)
        (leftover / "chunk0001.mp3").write_bytes(b"x")

        async def scenario() -> Job | None:
            await store.save_job(job)
            assert await orchestrator.purge(job.id) is True
            return await store.get_job(job.id)

        assert asyncio.run(scenario()) is None
        assert not source.exists()
        assert not leftover.exists()

    def test_purge_unknown(self, tmp_path: Path) -> None:
        orchestrator = _orchestrator(_config(tmp_path), InMemoryStatusStore(), FakeConverter(64), ScriptedBackend())
        assert asyncio.run(orchestrator.purge("missing")) is False


class TestSubmitJob:
    def test_submit_through_governor(self, tmp_path: Path, source: Path) -> None:
        store = InMemoryStatusStore()
        orchestrator = _orchestrator(
            _config(tmp_path), store, FakeConverter(64), ScriptedBackend({0: "done"})
        )

        async def scenario() -> TranscriptResult:
            governor = ConcurrencyGovernor(orchestrator.run, max_concurrent=2)
            return await submit_job(governor, store, source)

        assert asyncio.run(scenario()).text == "done"
        assert len(store) == 1

    def test_failed_job_rejects_submitter(self, tmp_path: Path, source: Path) -> None:
        store = InMemoryStatusStore()
        orchestrator = _orchestrator(
            _config(tmp_path), store, FakeConverter(64, fail=True), ScriptedBackend()
        )

        async def scenario() -> TranscriptResult:
            governor = ConcurrencyGovernor(orchestrator.run)
            return await submit_job(governor, store, source)

        with pytest.raises(JobFailedError):
            asyncio.run(scenario())

    def test_create_job_validates_file(self, tmp_path: Path) -> None:
        with pytest.raises(MediaValidationError):
            asyncio.run(create_job(InMemoryStatusStore(), tmp_path / "missing.mp3"))
