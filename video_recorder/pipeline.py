"""Main pipeline: uploaded video → snapshot + audio → transcript → stored Recording."""

import asyncio
import base64
import logging
from collections.abc import Awaitable
from pathlib import Path
from typing import Any, TypeVar

from video_recorder.config import ALLOWED_MIME_TYPES, DEFAULT_MAX_FILE_SIZE, Settings, get_settings
from video_recorder.database import get_recordings_collection
from video_recorder.errors import (
    ExtractionError,
    IngestError,
    PersistenceError,
    TranscriptionServiceError,
    ValidationError,
    WorkspaceError,
)
from video_recorder.media_utils import FfmpegMediaExtractor, MediaExtractor
from video_recorder.models import IngestResult, PipelineRun, Recording, Stage
from video_recorder.repository import RecordingRepository
from video_recorder.transcription import TranscriptionClient
from video_recorder.workspace import Workspace, suffix_for_mime_type


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _read_base64(path: Path) -> str | None:
    if not path.is_file():
        return None
    data = path.read_bytes()
    return base64.b64encode(data).decode("ascii") if data else None


class IngestPipeline:
    """
    Runs one uploaded video through extraction, transcription and storage.

    Every run gets its own workspace, released exactly once whether the run
    succeeds or fails at any stage. Each stage runs under its own deadline
    (None disables it); an expired deadline fails the run with that stage's
    error type. Extraction and transcription are cancelled on expiry; the
    persist deadline is handed to the database driver, so no write is left
    running after the run has failed.
    """

    def __init__(
        self,
        workspace: Workspace,
        extractor: MediaExtractor,
        transcriber: TranscriptionClient,
        repository: RecordingRepository,
        *,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        allowed_mime_types: tuple[str, ...] = ALLOWED_MIME_TYPES,
        extraction_timeout: float | None = None,
        transcription_timeout: float | None = None,
        persist_timeout: float | None = None,
    ):
        self.workspace = workspace
        self.extractor = extractor
        self.transcriber = transcriber
        self.repository = repository
        self.max_file_size = max_file_size
        self.allowed_mime_types = allowed_mime_types
        self.extraction_timeout = extraction_timeout
        self.transcription_timeout = transcription_timeout
        self.persist_timeout = persist_timeout

    def check_upload(self, mime_type: str, size: int) -> None:
        """
        Reject an upload by its declared type and size, before its content is read.

        Raises:
            ValidationError: The upload cannot be processed.
        """
        if mime_type not in self.allowed_mime_types:
            raise ValidationError(
                "Invalid file type. Only video files are allowed.", mime_type=mime_type
            )
        if size <= 0:
            raise ValidationError("Uploaded file is empty.", size=size)
        if size > self.max_file_size:
            raise ValidationError(
                f"File too large (limit is {self.max_file_size} bytes).", size=size
            )

    def validate(self, data: bytes, mime_type: str, size: int) -> None:
        """
        Reject uploads with a disallowed type, a bad size, or content that does
        not match the declared size.

        Raises:
            ValidationError: The upload cannot be processed.
        """
        self.check_upload(mime_type, size)
        if len(data) != size:
            raise ValidationError(
                "Uploaded file size does not match its content.", size=size, received=len(data)
            )

    async def _stage(
        self,
        run: PipelineRun,
        stage: str,
        error_cls: type[IngestError],
        work: Awaitable[T],
        timeout: float | None,
    ) -> T:
        """Await one stage, turning any failure into a single typed error tagged with the stage."""
        try:
            if timeout is None:
                return await work
            return await asyncio.wait_for(work, timeout)
        except asyncio.TimeoutError:
            run.fail(stage)
            logger.error("run %s: %s timed out after %ss", run.run_id, stage, timeout)
            raise error_cls(f"{stage} timed out after {timeout}s", stage=stage) from None
        except IngestError as e:
            run.fail(stage)
            if e.stage is None:
                e.stage = stage
            logger.error("run %s: %s failed: %s", run.run_id, stage, e)
            raise
        except Exception as e:
            run.fail(stage)
            logger.exception("run %s: %s failed unexpectedly", run.run_id, stage)
            raise error_cls(f"{stage} failed: {e}", stage=stage) from e

    async def _persist(self, run: PipelineRun, recording: Recording) -> str:
        recording.snapshot = await asyncio.to_thread(_read_base64, run.paths.snapshot)
        return await self.repository.insert(recording, timeout=self.persist_timeout)

    async def ingest(
        self,
        data: bytes,
        mime_type: str,
        size: int,
        original_name: str,
    ) -> IngestResult:
        """
        Process an uploaded video end to end.

        Args:
            data: The uploaded file content.
            mime_type: Declared content type of the upload.
            size: Declared byte length of the upload.
            original_name: File name supplied by the client.

        Returns:
            The stored recording id and its transcription.

        Raises:
            ValidationError: Bad type or size; nothing was written anywhere.
            WorkspaceError, ExtractionError, TranscriptionServiceError, PersistenceError:
                The run failed at that stage; nothing was stored and all
                temporary files were removed.
        """
        self.validate(data, mime_type, size)

        run = PipelineRun(source_suffix=suffix_for_mime_type(mime_type))
        logger.info("run %s: received %r (%s, %d bytes)", run.run_id, original_name, mime_type, size)

        with self.workspace.scoped(run) as paths:
            # 1. Write the upload to disk
            await self._stage(
                run, "source", WorkspaceError,
                asyncio.to_thread(paths.source.write_bytes, data), None,
            )
            run.advance(Stage.SOURCE_WRITTEN)

            # 2. Snapshot at the midpoint
            await self._stage(
                run, "snapshot", ExtractionError,
                self.extractor.snapshot(paths.source, paths.snapshot), self.extraction_timeout,
            )
            run.advance(Stage.SNAPSHOT_EXTRACTED)

            # 3. Audio track
            await self._stage(
                run, "audio", ExtractionError,
                self.extractor.extract_audio(paths.source, paths.audio), self.extraction_timeout,
            )
            run.advance(Stage.AUDIO_EXTRACTED)

            # 4. Transcribe
            transcription = await self._stage(
                run, "transcription", TranscriptionServiceError,
                self.transcriber.transcribe(paths.audio), self.transcription_timeout,
            )
            run.advance(Stage.TRANSCRIBED)

            # 5. Store the record
            recording = Recording(
                original_name=original_name,
                mime_type=mime_type,
                size=size,
                transcription=transcription,
            )
            # the write deadline is enforced by the driver; cancelling the
            # awaiting task would not stop an insert already in flight
            recording_id = await self._stage(
                run, "persist", PersistenceError,
                self._persist(run, recording), None,
            )
            run.advance(Stage.PERSISTED)

        logger.info("run %s: stored as %s", run.run_id, recording_id)
        return IngestResult(id=recording_id, transcription=transcription)


def build_pipeline(settings: Settings | None = None, **overrides: Any) -> IngestPipeline:
    """
    Wire a pipeline from settings: ffmpeg extractor, SpeechRecognition
    client and the shared MongoDB collection.

    Keyword overrides replace individual collaborators (e.g. ``repository``).
    """
    settings = settings or get_settings()

    parts: dict[str, Any] = {}
    parts["workspace"] = overrides.pop("workspace", None) or Workspace(settings.uploads_dir)
    parts["extractor"] = overrides.pop("extractor", None) or FfmpegMediaExtractor(
        settings.ffmpeg_binary, settings.ffprobe_binary
    )
    parts["transcriber"] = overrides.pop("transcriber", None) or TranscriptionClient(
        backend=settings.transcription_backend,
        language=settings.transcription_language,
        chunk_seconds=settings.transcription_chunk_seconds,
        openai_model=settings.openai_model,
        timeout=settings.transcription_timeout,
    )
    parts["repository"] = overrides.pop("repository", None) or RecordingRepository(
        get_recordings_collection(
            settings.mongodb_uri, settings.mongodb_database, settings.mongodb_collection
        )
    )
    if overrides:
        raise TypeError(f"Unknown pipeline overrides: {sorted(overrides)}")

    return IngestPipeline(
        **parts,
        max_file_size=settings.max_file_size,
        allowed_mime_types=settings.allowed_mime_types,
        extraction_timeout=settings.extraction_timeout,
        transcription_timeout=settings.transcription_timeout,
        persist_timeout=settings.persist_timeout,
    )
