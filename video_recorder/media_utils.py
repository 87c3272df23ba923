"""Snapshot and audio extraction from video files using ffmpeg (located via pydub)."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Protocol

from pydub.utils import get_encoder_name, get_prober_name

from video_recorder.errors import ExtractionError


logger = logging.getLogger(__name__)

SNAPSHOT_SIZE = (320, 240)
SNAPSHOT_POSITION = 0.5
AUDIO_SAMPLE_RATE = 16000


class MediaExtractor(Protocol):
    """What the pipeline needs from a transcoding engine."""

    async def snapshot(self, source_path: Path, out_path: Path) -> None: ...

    async def extract_audio(self, source_path: Path, out_path: Path) -> None: ...


def prober_for(ffmpeg: str) -> str:
    """ffprobe installed beside an ffmpeg given by path, else pydub's PATH lookup."""
    engine = Path(ffmpeg)
    if engine.parent != Path("."):
        for name in ("ffprobe", "ffprobe.exe"):
            candidate = engine.with_name(name)
            if candidate.is_file():
                return str(candidate)
    return get_prober_name()


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()


async def _execute(cmd: list[str], label: str) -> tuple[int, bytes, bytes]:
    """Run one tool to completion; the process is killed if the caller is cancelled."""
    logger.debug("%s: %s", label, " ".join(cmd))
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ExtractionError(f"{label}: could not start {cmd[0]}: {e}") from e

    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        await _terminate(proc)
        raise
    return proc.returncode, stdout or b"", stderr or b""


def _tail(stderr: bytes) -> str:
    return stderr.decode("utf-8", "ignore").strip()[-500:]


async def probe_media(video_path: str | Path, ffprobe: str) -> dict[str, Any]:
    """
    Read container and stream information with ffprobe.

    Args:
        video_path: Path to the media file.
        ffprobe: The ffprobe executable.

    Returns:
        ffprobe's JSON output (``format`` and ``streams`` keys).

    Raises:
        ExtractionError: ffprobe is missing or could not read the file.
    """
    returncode, stdout, stderr = await _execute(
        [ffprobe, "-v", "error", "-of", "json", "-show_format", "-show_streams", str(video_path)],
        "probe",
    )
    if returncode != 0:
        raise ExtractionError(
            f"could not probe {video_path}: ffprobe exited with code {returncode}: {_tail(stderr)}"
        )
    try:
        info = json.loads(stdout.decode("utf-8", "ignore"))
    except ValueError as e:
        raise ExtractionError(f"could not probe {video_path}: {e}") from e
    if not isinstance(info, dict) or "streams" not in info:
        raise ExtractionError(f"could not probe {video_path}: no stream information")
    return info


def has_stream(info: dict[str, Any], codec_type: str) -> bool:
    return any(s.get("codec_type") == codec_type for s in info.get("streams", []))


def media_duration(info: dict[str, Any]) -> float:
    """Duration in seconds from the container, falling back to the longest stream; 0.0 if unknown."""
    candidates = [(info.get("format") or {}).get("duration")]
    candidates += [s.get("duration") for s in info.get("streams", [])]
    for value in candidates:
        try:
            duration = float(value)
        except (TypeError, ValueError):
            continue
        if duration > 0:
            return duration
    return 0.0


class FfmpegMediaExtractor:
    """
    MediaExtractor backed by the ffmpeg command-line tools.

    Each call starts ffprobe and then one ffmpeg process and waits for them to
    exit. If the awaiting task is cancelled (e.g. a stage deadline expires) the
    running process is killed before the cancellation propagates.
    """

    def __init__(self, ffmpeg_binary: str | None = None, ffprobe_binary: str | None = None):
        self.ffmpeg = ffmpeg_binary or get_encoder_name()
        self.ffprobe = ffprobe_binary or prober_for(self.ffmpeg)

    async def _probe(self, source_path: Path) -> dict[str, Any]:
        return await probe_media(source_path, self.ffprobe)

    async def _run(self, args: list[str], out_path: Path, label: str) -> None:
        cmd = [self.ffmpeg, "-hide_banner", "-loglevel", "error", *args, "-y", str(out_path)]
        returncode, _, stderr = await _execute(cmd, label)
        if returncode != 0:
            raise ExtractionError(f"{label}: ffmpeg exited with code {returncode}: {_tail(stderr)}")
        if not out_path.is_file() or out_path.stat().st_size == 0:
            raise ExtractionError(f"{label}: ffmpeg produced no output file")

    async def snapshot(self, source_path: Path, out_path: Path) -> None:
        """
        Write a 320x240 JPEG of the frame at the middle of the video.

        Raises:
            ExtractionError: No video stream, unknown/zero duration, or ffmpeg failure.
        """
        info = await self._probe(source_path)
        if not has_stream(info, "video"):
            raise ExtractionError(f"snapshot: {source_path.name} has no video stream")
        duration = media_duration(info)
        if duration <= 0:
            raise ExtractionError(f"snapshot: {source_path.name} has no usable duration")

        width, height = SNAPSHOT_SIZE
        await self._run(
            [
                "-ss", f"{duration * SNAPSHOT_POSITION:.3f}",
                "-i", str(source_path),
                "-frames:v", "1",
                "-vf", f"scale={width}:{height}",
            ],
            out_path,
            "snapshot",
        )

    async def extract_audio(self, source_path: Path, out_path: Path) -> None:
        """
        Transcode the first audio stream to mono 16 kHz FLAC.

        Raises:
            ExtractionError: No audio stream, or ffmpeg failure.
        """
        info = await self._probe(source_path)
        if not has_stream(info, "audio"):
            raise ExtractionError(f"audio: {source_path.name} has no audio stream")

        await self._run(
            [
                "-i", str(source_path),
                "-map", "0:a:0",
                "-vn",
                "-ac", "1",
                "-ar", str(AUDIO_SAMPLE_RATE),
                "-c:a", "flac",
            ],
            out_path,
            "audio",
        )
