"""Data types shared by the pipeline, the workspace and the repository."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any


class Stage(str, Enum):
    RECEIVED = "received"
    SOURCE_WRITTEN = "source_written"
    SNAPSHOT_EXTRACTED = "snapshot_extracted"
    AUDIO_EXTRACTED = "audio_extracted"
    TRANSCRIBED = "transcribed"
    PERSISTED = "persisted"
    CLEANED_UP = "cleaned_up"
    FAILED = "failed"


@dataclass(frozen=True)
class RunPaths:
    source: Path
    snapshot: Path
    audio: Path

    def __iter__(self):
        return iter((self.source, self.snapshot, self.audio))


@dataclass
class PipelineRun:
    """Working state of one ingestion call. Never persisted."""

    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    source_suffix: str = ".bin"
    paths: RunPaths | None = None
    stage: Stage = Stage.RECEIVED
    failed_stage: str | None = None
    released: bool = False

    def advance(self, stage: Stage) -> None:
        self.stage = stage

    def fail(self, stage: str) -> None:
        self.failed_stage = stage
        self.stage = Stage.FAILED


@dataclass
class Recording:
    """
    One completed ingestion as stored in the document store.

    ``id`` and ``created_at`` are assigned by the repository on insert and
    are None on a record that has not been stored yet.
    """

    original_name: str
    mime_type: str
    size: int
    filename: str = ""
    snapshot: str | None = None
    transcription: str | None = None
    id: str | None = None
    created_at: datetime | None = None

    def __post_init__(self) -> None:
        if not self.filename:
            self.filename = self.original_name

    def to_document(self) -> dict[str, Any]:
        """Mongo document body (without ``_id``); optional fields are omitted when absent."""
        doc: dict[str, Any] = {
            "filename": self.filename,
            "originalName": self.original_name,
            "mimeType": self.mime_type,
            "size": self.size,
            "createdAt": self.created_at,
        }
        if self.snapshot is not None:
            doc["snapshot"] = self.snapshot
        if self.transcription is not None:
            doc["transcription"] = self.transcription
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "Recording":
        return cls(
            id=str(doc["_id"]),
            filename=doc.get("filename") or doc.get("originalName", ""),
            original_name=doc.get("originalName", ""),
            mime_type=doc.get("mimeType", ""),
            size=doc.get("size", 0),
            snapshot=doc.get("snapshot"),
            transcription=doc.get("transcription"),
            created_at=doc.get("createdAt"),
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly view used by the API and the CLI."""
        return {
            "id": self.id,
            "filename": self.filename,
            "originalName": self.original_name,
            "mimeType": self.mime_type,
            "size": self.size,
            "snapshot": self.snapshot,
            "transcription": self.transcription,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class IngestResult:
    id: str
    transcription: str | None
