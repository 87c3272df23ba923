"""Runtime settings loaded from environment variables (and a local .env file)."""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import find_dotenv, load_dotenv


ALLOWED_MIME_TYPES = (
    "video/mp4",
    "video/webm",
    "video/x-m4v",
    "video/x-msvideo",
    "video/x-flv",
    "video/x-matroska",
)

DEFAULT_MAX_FILE_SIZE = 100 * 1024 * 1024


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    mongodb_uri: str = ""
    mongodb_database: str = "video-recorder"
    mongodb_collection: str = "recordings"
    uploads_dir: str = "uploads"
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    allowed_mime_types: tuple[str, ...] = ALLOWED_MIME_TYPES
    ffmpeg_binary: str | None = None
    ffprobe_binary: str | None = None
    transcription_backend: str = "google"
    transcription_language: str = "en-US"
    transcription_chunk_seconds: int = 30
    openai_model: str = "whisper-1"
    extraction_timeout: float = 120.0
    transcription_timeout: float = 300.0
    persist_timeout: float = 30.0
    stale_file_max_age: int = 3600
    cleanup_interval: int = 3600
    rate_limit_requests: int = 100
    rate_limit_window: int = 900
    allowed_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"


def load_settings() -> Settings:
    """
    Build Settings from the process environment.

    A .env file in the working directory (or a parent) is loaded first; variables already
    present in the environment take precedence over it.
    """
    load_dotenv(find_dotenv(usecwd=True))

    origins = os.getenv("ALLOWED_ORIGINS", "").strip()
    return Settings(
        mongodb_uri=os.getenv("MONGODB_URI", ""),
        mongodb_database=os.getenv("MONGODB_DATABASE", "video-recorder"),
        mongodb_collection=os.getenv("MONGODB_COLLECTION", "recordings"),
        uploads_dir=os.getenv("UPLOADS_DIR", "uploads"),
        max_file_size=_int_env("MAX_FILE_SIZE", DEFAULT_MAX_FILE_SIZE),
        ffmpeg_binary=os.getenv("FFMPEG_BINARY") or None,
        ffprobe_binary=os.getenv("FFPROBE_BINARY") or None,
        transcription_backend=os.getenv("TRANSCRIPTION_BACKEND", "google").lower(),
        transcription_language=os.getenv("TRANSCRIPTION_LANGUAGE", "en-US"),
        transcription_chunk_seconds=_int_env("TRANSCRIPTION_CHUNK_SECONDS", 30),
        openai_model=os.getenv("OPENAI_TRANSCRIPTION_MODEL", "whisper-1"),
        extraction_timeout=_float_env("EXTRACTION_TIMEOUT_SECONDS", 120.0),
        transcription_timeout=_float_env("TRANSCRIPTION_TIMEOUT_SECONDS", 300.0),
        persist_timeout=_float_env("PERSIST_TIMEOUT_SECONDS", 30.0),
        stale_file_max_age=_int_env("STALE_FILE_MAX_AGE_SECONDS", 3600),
        cleanup_interval=_int_env("CLEANUP_INTERVAL_SECONDS", 3600),
        rate_limit_requests=_int_env("RATE_LIMIT_REQUESTS", 100),
        rate_limit_window=_int_env("RATE_LIMIT_WINDOW_SECONDS", 900),
        allowed_origins=tuple(o.strip() for o in origins.split(",") if o.strip()) or ("*",),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide Settings, loading them on first use."""
    return load_settings()
