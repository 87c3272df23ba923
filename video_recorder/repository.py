"""Recording documents in MongoDB."""

import asyncio
import logging
import threading
from datetime import datetime, timezone

import pymongo
from bson import ObjectId
from pymongo import DESCENDING
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from video_recorder.errors import PersistenceError
from video_recorder.models import Recording


logger = logging.getLogger(__name__)


def _now_ms() -> datetime:
    # BSON dates carry millisecond precision
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def _object_id(recording_id: str) -> ObjectId | None:
    if not isinstance(recording_id, str) or not ObjectId.is_valid(recording_id):
        return None
    return ObjectId(recording_id)


class RecordingRepository:
    """
    Stores and retrieves Recording documents.

    The collection is injected so callers decide which store (and which
    connection) is used. Driver calls block, so each runs in a worker thread.
    """

    def __init__(self, collection: Collection):
        self.collection = collection
        self._lock = threading.Lock()
        self._last_created_at: datetime | None = None

    def _next_identity(self) -> tuple[ObjectId, datetime]:
        # Ids and timestamps are handed out together so that createdAt never
        # goes backwards in insertion order, even if the wall clock does.
        with self._lock:
            created_at = _now_ms()
            if self._last_created_at is not None and created_at < self._last_created_at:
                created_at = self._last_created_at
            self._last_created_at = created_at
            return ObjectId(), created_at

    def _insert(self, record: Recording, timeout: float | None) -> str:
        oid, created_at = self._next_identity()
        doc = {"_id": oid, **record.to_document(), "createdAt": created_at}
        try:
            # The driver enforces the deadline, so a timeout error means the
            # write was abandoned rather than left running in this thread.
            with pymongo.timeout(timeout):
                self.collection.insert_one(doc)
        except PyMongoError as e:
            if e.timeout:
                raise PersistenceError(
                    f"storing recording {record.original_name!r} timed out after {timeout}s", timeout=timeout
                ) from e
            raise PersistenceError(f"could not store recording {record.original_name!r}: {e}") from e
        logger.info("stored recording %s (%s)", oid, record.original_name)
        return str(oid)

    def _list_all(self) -> list[Recording]:
        try:
            cursor = self.collection.find().sort([("createdAt", DESCENDING), ("_id", DESCENDING)])
            return [Recording.from_document(doc) for doc in cursor]
        except PyMongoError as e:
            raise PersistenceError(f"could not list recordings: {e}") from e

    def _get_by_id(self, recording_id: str) -> Recording | None:
        oid = _object_id(recording_id)
        if oid is None:
            return None
        try:
            doc = self.collection.find_one({"_id": oid})
        except PyMongoError as e:
            raise PersistenceError(f"could not read recording {recording_id}: {e}") from e
        return Recording.from_document(doc) if doc else None

    def _delete_by_id(self, recording_id: str) -> bool:
        oid = _object_id(recording_id)
        if oid is None:
            return False
        try:
            result = self.collection.delete_one({"_id": oid})
        except PyMongoError as e:
            raise PersistenceError(f"could not delete recording {recording_id}: {e}") from e
        if result.deleted_count:
            logger.info("deleted recording %s", recording_id)
        return result.deleted_count > 0

    async def insert(self, record: Recording, timeout: float | None = None) -> str:
        """
        Store a new recording.

        A fresh id and ``createdAt`` are assigned here; any id or timestamp
        already on ``record`` is ignored. The document is written with a
        single insert, so it is either stored whole or not at all.

        Args:
            record: The recording to store.
            timeout: Deadline in seconds for the write, enforced by the driver
                (``pymongo.timeout``). None leaves the client's defaults.

        Returns:
            The new recording's id.

        Raises:
            PersistenceError: The write failed or hit its deadline.
        """
        return await asyncio.to_thread(self._insert, record, timeout)

    async def list_all(self) -> list[Recording]:
        """All recordings, newest first (ties: most recently inserted first)."""
        return await asyncio.to_thread(self._list_all)

    async def get_by_id(self, recording_id: str) -> Recording | None:
        """Look up one recording; malformed or unknown ids give None."""
        return await asyncio.to_thread(self._get_by_id, recording_id)

    async def delete_by_id(self, recording_id: str) -> bool:
        """Delete a recording if it exists. Returns whether anything was removed."""
        return await asyncio.to_thread(self._delete_by_id, recording_id)
