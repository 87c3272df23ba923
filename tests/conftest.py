"""Shared fixtures: an isolated mongomock store, a tmp workspace and stage doubles."""

import asyncio
import time
from pathlib import Path

import mongomock
import pytest

from video_recorder.errors import ExtractionError, TranscriptionServiceError
from video_recorder.pipeline import IngestPipeline
from video_recorder.repository import RecordingRepository
from video_recorder.workspace import Workspace


class FakeExtractor:
    """Writes placeholder artifacts; can be told to fail or hang at a stage."""

    def __init__(self, fail_at: str | None = None, hang_at: str | None = None):
        self.fail_at = fail_at
        self.hang_at = hang_at
        self.calls: list[tuple[str, Path, Path]] = []

    async def _step(self, name: str, source: Path, out: Path, payload: bytes) -> None:
        self.calls.append((name, source, out))
        assert source.is_file(), "source must be written before extraction"
        if self.hang_at == name:
            await asyncio.sleep(3600)
        if self.fail_at == name:
            # leave a partial artifact behind, like a crashed engine would
            out.write_bytes(b"partial")
            raise ExtractionError(f"{name}: ffmpeg exited with code 1: moov atom not found")
        out.write_bytes(payload)

    async def snapshot(self, source_path: Path, out_path: Path) -> None:
        await self._step("snapshot", source_path, out_path, b"\xff\xd8jpeg-bytes")

    async def extract_audio(self, source_path: Path, out_path: Path) -> None:
        await self._step("audio", source_path, out_path, b"fLaC-audio")


class FakeTranscriber:
    def __init__(self, text: str | None = "hello world", error: Exception | None = None):
        self.text = text
        self.error = error
        self.calls: list[Path] = []

    async def transcribe(self, audio_path: Path) -> str | None:
        self.calls.append(audio_path)
        assert Path(audio_path).is_file()
        if self.error is not None:
            raise self.error
        return self.text


class SlowCollection:
    """Wraps a collection so inserts take a while and can end in a driver error."""

    def __init__(self, inner, delay: float, error: Exception | None = None):
        self.inner = inner
        self.delay = delay
        self.error = error

    def insert_one(self, document):
        time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.inner.insert_one(document)

    def __getattr__(self, name):
        return getattr(self.inner, name)


@pytest.fixture
def collection():
    return mongomock.MongoClient().db.recordings


@pytest.fixture
def repository(collection):
    return RecordingRepository(collection)


@pytest.fixture
def uploads_dir(tmp_path):
    return tmp_path / "uploads"


@pytest.fixture
def workspace(uploads_dir):
    return Workspace(uploads_dir)


@pytest.fixture
def make_pipeline(workspace, repository):
    def _make(extractor=None, transcriber=None, **kwargs) -> IngestPipeline:
        return IngestPipeline(
            workspace,
            extractor or FakeExtractor(),
            transcriber or FakeTranscriber(),
            repository,
            **kwargs,
        )

    return _make


@pytest.fixture
def video_bytes():
    return b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 1024


@pytest.fixture
def transcription_failure():
    return TranscriptionServiceError("google speech recognition request failed: 503")
