"""Error taxonomy for the ingestion pipeline.

Every failure surfaced by ``IngestPipeline.ingest`` is exactly one of these
types. ``public_message`` is what callers outside the service may see; the
exception text itself can carry engine diagnostics and is only logged.
"""

from typing import Any


class IngestError(Exception):
    """Base error for the video ingestion pipeline.

    Attributes:
        status_code: HTTP status to answer with when this error reaches the API.
        error_code: Machine-readable identifier for clients.
        stage: Pipeline stage that failed (None when raised outside a run).
        context: Extra key-value details for logs.
    """

    status_code: int = 500
    error_code: str = "INGEST_ERROR"

    def __init__(self, message: str, stage: str | None = None, **context: Any) -> None:
        super().__init__(message)
        self.stage = stage
        self.context = context

    @property
    def public_message(self) -> str:
        if self.stage:
            return f"Video processing failed during {self.stage}."
        return "Video processing failed."


class ValidationError(IngestError):
    """The upload was rejected before any work was done (bad type or size)."""

    status_code = 400
    error_code = "VALIDATION_ERROR"

    @property
    def public_message(self) -> str:
        return str(self)


class WorkspaceError(IngestError):
    """The uploaded bytes could not be written to the scratch directory."""

    error_code = "WORKSPACE_ERROR"


class ExtractionError(IngestError):
    """The transcoding engine could not produce a snapshot or audio track."""

    error_code = "EXTRACTION_ERROR"


class TranscriptionServiceError(IngestError):
    """The speech-recognition backend was unreachable or rejected the audio."""

    status_code = 502
    error_code = "TRANSCRIPTION_ERROR"


class PersistenceError(IngestError):
    """The document store rejected or failed a read or write."""

    error_code = "PERSISTENCE_ERROR"


class RateLimitError(IngestError):
    """The client sent too many API requests within the rate-limit window."""

    status_code = 429
    error_code = "RATE_LIMITED"

    @property
    def public_message(self) -> str:
        return str(self)


class CleanupWarning(UserWarning):
    """A temporary file could not be removed. Never changes a run's outcome."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"could not remove {path}: {reason}")
        self.path = path
        self.reason = reason
