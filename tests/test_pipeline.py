"""Tests for IngestPipeline: sequencing, validation, failure cleanup and concurrency."""

import asyncio
import base64
import os
from pathlib import Path

import pytest
from pymongo.errors import NetworkTimeout

from video_recorder.errors import (
    CleanupWarning,
    ExtractionError,
    PersistenceError,
    TranscriptionServiceError,
    ValidationError,
    WorkspaceError,
)
from video_recorder.models import Stage
from video_recorder.pipeline import IngestPipeline
from video_recorder.repository import RecordingRepository

from tests.conftest import FakeExtractor, FakeTranscriber, SlowCollection


def _leftovers(uploads_dir):
    return sorted(os.listdir(uploads_dir)) if uploads_dir.exists() else []


@pytest.fixture
def snapshot_unlink_fails(monkeypatch):
    """Makes deleting any snapshot file fail; returns the paths that were refused."""
    refused = []
    original_unlink = Path.unlink

    def unlink(self, *args, **kwargs):
        if self.name.endswith("-snapshot.jpg"):
            refused.append(self)
            raise PermissionError("permission denied")
        return original_unlink(self, *args, **kwargs)

    monkeypatch.setattr(Path, "unlink", unlink)
    return refused


class TestSuccessfulRun:
    @pytest.mark.asyncio
    async def test_stores_one_complete_record(self, make_pipeline, repository, video_bytes, uploads_dir):
        pipeline = make_pipeline()

        result = await pipeline.ingest(video_bytes, "video/mp4", len(video_bytes), "meeting.mp4")

        assert result.id
        assert result.transcription == "hello world"
        records = await repository.list_all()
        assert len(records) == 1
        stored = records[0]
        assert stored.id == result.id
        assert stored.original_name == "meeting.mp4"
        assert stored.filename == "meeting.mp4"
        assert stored.mime_type == "video/mp4"
        assert stored.size == len(video_bytes)
        assert stored.transcription == "hello world"
        assert base64.b64decode(stored.snapshot) == b"\xff\xd8jpeg-bytes"
        assert stored.created_at is not None
        assert _leftovers(uploads_dir) == []

    @pytest.mark.asyncio
    async def test_get_by_id_returns_transcription(self, make_pipeline, repository, video_bytes):
        pipeline = make_pipeline()
        result = await pipeline.ingest(video_bytes, "video/webm", len(video_bytes), "clip.webm")

        stored = await repository.get_by_id(result.id)
        assert stored is not None
        assert stored.transcription == result.transcription

    @pytest.mark.asyncio
    async def test_stages_run_in_order_on_the_run_files(self, make_pipeline, video_bytes):
        extractor = FakeExtractor()
        transcriber = FakeTranscriber()
        pipeline = make_pipeline(extractor=extractor, transcriber=transcriber)

        await pipeline.ingest(video_bytes, "video/x-matroska", len(video_bytes), "a.mkv")

        assert [c[0] for c in extractor.calls] == ["snapshot", "audio"]
        source = extractor.calls[0][1]
        assert source.suffix == ".mkv"
        assert extractor.calls[1][1] == source
        assert transcriber.calls == [extractor.calls[1][2]]

    @pytest.mark.asyncio
    async def test_no_speech_stores_record_without_transcription(self, make_pipeline, repository, video_bytes):
        pipeline = make_pipeline(transcriber=FakeTranscriber(text=None))

        result = await pipeline.ingest(video_bytes, "video/mp4", len(video_bytes), "quiet.mp4")

        assert result.transcription is None
        stored = await repository.get_by_id(result.id)
        assert stored.transcription is None
        assert "transcription" not in repository.collection.find_one({})

    @pytest.mark.asyncio
    async def test_workspace_released_exactly_once(self, make_pipeline, workspace, video_bytes, monkeypatch):
        released = []
        original = workspace.release

        def spy(run):
            released.append(run.run_id)
            return original(run)

        monkeypatch.setattr(workspace, "release", spy)
        pipeline = make_pipeline()

        await pipeline.ingest(video_bytes, "video/mp4", len(video_bytes), "a.mp4")

        assert len(released) == 1

    @pytest.mark.asyncio
    async def test_undeletable_file_does_not_change_result(
        self, make_pipeline, repository, uploads_dir, video_bytes, snapshot_unlink_fails, caplog
    ):
        pipeline = make_pipeline()

        result = await pipeline.ingest(video_bytes, "video/mp4", len(video_bytes), "a.mp4")

        assert result.transcription == "hello world"
        assert [r.id for r in await repository.list_all()] == [result.id]
        assert "permission denied" in caplog.text
        # only the file that could not be removed is left behind
        assert _leftovers(uploads_dir) == [p.name for p in snapshot_unlink_fails]


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "mime_type,size_delta",
        [
            ("application/pdf", 0),
            ("video/quicktime", 0),
            ("", 0),
            ("video/mp4", 1),
        ],
    )
    async def test_rejected_before_any_io(self, make_pipeline, repository, uploads_dir, video_bytes, mime_type, size_delta):
        extractor = FakeExtractor()
        pipeline = make_pipeline(extractor=extractor)

        with pytest.raises(ValidationError):
            await pipeline.ingest(video_bytes, mime_type, len(video_bytes) + size_delta, "doc.pdf")

        assert not uploads_dir.exists()
        assert extractor.calls == []
        assert await repository.list_all() == []

    @pytest.mark.asyncio
    async def test_empty_upload_rejected(self, make_pipeline):
        pipeline = make_pipeline()
        with pytest.raises(ValidationError, match="empty"):
            await pipeline.ingest(b"", "video/mp4", 0, "empty.mp4")

    @pytest.mark.asyncio
    async def test_size_ceiling(self, make_pipeline, uploads_dir):
        pipeline = make_pipeline(max_file_size=10)
        data = b"x" * 11

        with pytest.raises(ValidationError, match="too large") as exc_info:
            await pipeline.ingest(data, "video/mp4", len(data), "big.mp4")

        assert exc_info.value.status_code == 400
        assert not uploads_dir.exists()

    @pytest.mark.asyncio
    async def test_size_at_ceiling_accepted(self, make_pipeline):
        pipeline = make_pipeline(max_file_size=10)
        data = b"x" * 10
        result = await pipeline.ingest(data, "video/mp4", len(data), "ok.mp4")
        assert result.id

    @pytest.mark.parametrize(
        "mime_type",
        ["video/mp4", "video/webm", "video/x-m4v", "video/x-msvideo", "video/x-flv", "video/x-matroska"],
    )
    def test_allow_list(self, make_pipeline, mime_type):
        make_pipeline().validate(b"abc", mime_type, 3)


class TestFailedRuns:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("stage", ["snapshot", "audio"])
    async def test_extraction_failure(self, make_pipeline, repository, uploads_dir, video_bytes, stage):
        transcriber = FakeTranscriber()
        pipeline = make_pipeline(extractor=FakeExtractor(fail_at=stage), transcriber=transcriber)

        with pytest.raises(ExtractionError) as exc_info:
            await pipeline.ingest(video_bytes, "video/mp4", len(video_bytes), "a.mp4")

        assert exc_info.value.stage == stage
        assert "moov atom" not in exc_info.value.public_message
        assert transcriber.calls == []
        assert await repository.list_all() == []
        assert _leftovers(uploads_dir) == []

    @pytest.mark.asyncio
    async def test_transcription_failure(self, make_pipeline, repository, uploads_dir, video_bytes, transcription_failure):
        pipeline = make_pipeline(transcriber=FakeTranscriber(error=transcription_failure))

        with pytest.raises(TranscriptionServiceError) as exc_info:
            await pipeline.ingest(video_bytes, "video/mp4", len(video_bytes), "a.mp4")

        assert exc_info.value.stage == "transcription"
        assert await repository.list_all() == []
        assert _leftovers(uploads_dir) == []

    @pytest.mark.asyncio
    async def test_unexpected_transcriber_error_is_wrapped(self, make_pipeline, uploads_dir, video_bytes):
        pipeline = make_pipeline(transcriber=FakeTranscriber(error=RuntimeError("boom")))

        with pytest.raises(TranscriptionServiceError) as exc_info:
            await pipeline.ingest(video_bytes, "video/mp4", len(video_bytes), "a.mp4")

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert _leftovers(uploads_dir) == []

    @pytest.mark.asyncio
    async def test_persistence_failure(self, make_pipeline, repository, uploads_dir, video_bytes, monkeypatch):
        async def failing_insert(record, timeout=None):
            raise PersistenceError("could not store recording: connection refused")

        monkeypatch.setattr(repository, "insert", failing_insert)
        pipeline = make_pipeline()

        with pytest.raises(PersistenceError) as exc_info:
            await pipeline.ingest(video_bytes, "video/mp4", len(video_bytes), "a.mp4")

        assert exc_info.value.stage == "persist"
        assert repository.collection.count_documents({}) == 0
        assert _leftovers(uploads_dir) == []

    @pytest.mark.asyncio
    async def test_source_write_failure(self, make_pipeline, workspace, video_bytes, monkeypatch):
        original_allocate = workspace.allocate

        def allocate_into_missing_dir(run):
            paths = original_allocate(run)
            object.__setattr__(paths, "source", paths.source.parent / "missing" / paths.source.name)
            return paths

        monkeypatch.setattr(workspace, "allocate", allocate_into_missing_dir)
        extractor = FakeExtractor()
        pipeline = make_pipeline(extractor=extractor)

        with pytest.raises(WorkspaceError) as exc_info:
            await pipeline.ingest(video_bytes, "video/mp4", len(video_bytes), "a.mp4")

        assert exc_info.value.stage == "source"
        assert extractor.calls == []

    @pytest.mark.asyncio
    async def test_undeletable_file_keeps_original_error(
        self, make_pipeline, workspace, repository, uploads_dir, video_bytes, snapshot_unlink_fails, monkeypatch
    ):
        returned = []
        original = workspace.release

        def spy(run):
            warnings = original(run)
            returned.append(warnings)
            return warnings

        monkeypatch.setattr(workspace, "release", spy)
        pipeline = make_pipeline(extractor=FakeExtractor(fail_at="audio"))

        with pytest.raises(ExtractionError) as exc_info:
            await pipeline.ingest(video_bytes, "video/mp4", len(video_bytes), "a.mp4")

        assert exc_info.value.stage == "audio"
        assert len(returned) == 1
        assert [type(w) for w in returned[0]] == [CleanupWarning]
        assert returned[0][0].reason == "permission denied"
        assert await repository.list_all() == []
        assert _leftovers(uploads_dir) == [p.name for p in snapshot_unlink_fails]

    @pytest.mark.asyncio
    async def test_failed_run_releases_once(self, make_pipeline, workspace, video_bytes, monkeypatch):
        runs = []
        original = workspace.release

        def spy(run):
            runs.append(run)
            return original(run)

        monkeypatch.setattr(workspace, "release", spy)
        pipeline = make_pipeline(extractor=FakeExtractor(fail_at="audio"))

        with pytest.raises(ExtractionError):
            await pipeline.ingest(video_bytes, "video/mp4", len(video_bytes), "a.mp4")

        assert len(runs) == 1
        assert runs[0].stage == Stage.FAILED
        assert runs[0].failed_stage == "audio"


class TestDeadlines:
    @pytest.mark.asyncio
    async def test_hung_extraction_times_out(self, make_pipeline, repository, uploads_dir, video_bytes):
        pipeline = make_pipeline(extractor=FakeExtractor(hang_at="snapshot"), extraction_timeout=0.05)

        with pytest.raises(ExtractionError, match="timed out") as exc_info:
            await pipeline.ingest(video_bytes, "video/mp4", len(video_bytes), "a.mp4")

        assert exc_info.value.stage == "snapshot"
        assert await repository.list_all() == []
        assert _leftovers(uploads_dir) == []

    @pytest.mark.asyncio
    async def test_hung_transcription_times_out(self, make_pipeline, uploads_dir, video_bytes):
        class HangingTranscriber(FakeTranscriber):
            async def transcribe(self, audio_path):
                await asyncio.sleep(3600)

        pipeline = make_pipeline(transcriber=HangingTranscriber(), transcription_timeout=0.05)

        with pytest.raises(TranscriptionServiceError, match="timed out"):
            await pipeline.ingest(video_bytes, "video/mp4", len(video_bytes), "a.mp4")

        assert _leftovers(uploads_dir) == []

    @pytest.mark.asyncio
    async def test_slow_insert_is_not_abandoned(self, workspace, collection, uploads_dir, video_bytes):
        # the persist deadline belongs to the driver; an insert that is still
        # running must either finish and be reported, or not happen at all
        slow = SlowCollection(collection, delay=0.3)
        pipeline = IngestPipeline(
            workspace, FakeExtractor(), FakeTranscriber(), RecordingRepository(slow),
            persist_timeout=0.05,
        )

        outcome = None
        try:
            outcome = await pipeline.ingest(video_bytes, "video/mp4", len(video_bytes), "a.mp4")
        except PersistenceError:
            pass
        await asyncio.sleep(0.6)

        stored = [str(doc["_id"]) for doc in collection.find()]
        if outcome is None:
            assert stored == []
        else:
            assert stored == [outcome.id]
        assert _leftovers(uploads_dir) == []

    @pytest.mark.asyncio
    async def test_driver_timeout_fails_run_without_record(self, workspace, collection, uploads_dir, video_bytes):
        slow = SlowCollection(collection, delay=0.05, error=NetworkTimeout("timed out"))
        pipeline = IngestPipeline(
            workspace, FakeExtractor(), FakeTranscriber(), RecordingRepository(slow),
            persist_timeout=0.01,
        )

        with pytest.raises(PersistenceError, match="timed out") as exc_info:
            await pipeline.ingest(video_bytes, "video/mp4", len(video_bytes), "a.mp4")

        assert exc_info.value.stage == "persist"
        assert collection.count_documents({}) == 0
        assert _leftovers(uploads_dir) == []


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_runs_are_isolated(self, make_pipeline, repository, uploads_dir):
        extractor = FakeExtractor()
        pipeline = make_pipeline(extractor=extractor)
        first = b"first-video" * 10
        second = b"second-video" * 10

        results = await asyncio.gather(
            pipeline.ingest(first, "video/mp4", len(first), "one.mp4"),
            pipeline.ingest(second, "video/webm", len(second), "two.webm"),
        )

        assert results[0].id != results[1].id
        listed = {r.id: r for r in await repository.list_all()}
        assert set(listed) == {results[0].id, results[1].id}
        assert listed[results[0].id].original_name == "one.mp4"
        assert listed[results[1].id].original_name == "two.webm"
        sources = {c[1] for c in extractor.calls}
        assert len(sources) == 2
        assert _leftovers(uploads_dir) == []
