"""Process-wide MongoDB connection, created on first use and reused afterwards."""

import logging
import threading

from pymongo import DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from video_recorder.errors import PersistenceError


logger = logging.getLogger(__name__)

_client: MongoClient | None = None
_lock = threading.Lock()


def get_client(uri: str) -> MongoClient:
    """Return the shared client, opening it on the first call."""
    global _client
    with _lock:
        if _client is None:
            if not uri:
                raise PersistenceError("MONGODB_URI is not set")
            _client = MongoClient(uri, serverSelectionTimeoutMS=5000, tz_aware=True)
            logger.info("MongoDB client created")
        return _client


def close_client() -> None:
    """Close the shared client so the next get_client call reconnects."""
    global _client
    with _lock:
        if _client is not None:
            _client.close()
            _client = None
            logger.info("MongoDB client closed")


def ensure_indexes(collection: Collection) -> None:
    """Create the index backing newest-first listing."""
    try:
        collection.create_index([("createdAt", DESCENDING), ("_id", DESCENDING)], name="createdAt_desc")
    except PyMongoError as e:
        raise PersistenceError(f"could not create indexes on {collection.name}: {e}") from e


def get_recordings_collection(uri: str, database: str = "video-recorder", collection: str = "recordings") -> Collection:
    """
    Return the recordings collection on the shared client, with indexes in place.

    Args:
        uri: MongoDB connection string.
        database: Database name.
        collection: Collection name.
    """
    coll = get_client(uri)[database][collection]
    ensure_indexes(coll)
    return coll
