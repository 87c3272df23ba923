"""Per-run scratch files for the ingestion pipeline."""

import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from video_recorder.errors import CleanupWarning
from video_recorder.models import PipelineRun, RunPaths, Stage


logger = logging.getLogger(__name__)

MIME_SUFFIXES = {
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "video/x-m4v": ".m4v",
    "video/x-msvideo": ".avi",
    "video/x-flv": ".flv",
    "video/x-matroska": ".mkv",
}

SNAPSHOT_SUFFIX = ".jpg"
AUDIO_SUFFIX = ".flac"


def suffix_for_mime_type(mime_type: str) -> str:
    """Return the file extension used for a source video of this type."""
    return MIME_SUFFIXES.get(mime_type, ".bin")


class Workspace:
    """
    Allocates and reclaims the temporary files of pipeline runs.

    All runs share one directory; file names are prefixed with the run id
    (a random uuid4 hex), so concurrent runs never touch each other's files.
    """

    def __init__(self, root: str | Path = "uploads"):
        self.root = Path(root).resolve()

    def allocate(self, run: PipelineRun) -> RunPaths:
        """
        Reserve the source, snapshot and audio paths for a run.

        Only the directory is created here; the files themselves are written
        by the pipeline stages.

        Args:
            run: The run to allocate paths for.

        Returns:
            The run's paths (also stored on ``run.paths``).
        """
        self.root.mkdir(parents=True, exist_ok=True)
        prefix = run.run_id
        run.paths = RunPaths(
            source=self.root / f"{prefix}-source{run.source_suffix}",
            snapshot=self.root / f"{prefix}-snapshot{SNAPSHOT_SUFFIX}",
            audio=self.root / f"{prefix}-audio{AUDIO_SUFFIX}",
        )
        return run.paths

    def release(self, run: PipelineRun) -> list[CleanupWarning]:
        """
        Delete every file of the run that exists.

        Missing files are ignored. Any other OS error is logged and returned
        as a CleanupWarning rather than raised. Calling this again for the
        same run does nothing.

        Args:
            run: The run whose files should be removed.

        Returns:
            Warnings for files that could not be removed.
        """
        if run.released:
            return []
        run.released = True

        warnings: list[CleanupWarning] = []
        for path in run.paths or ():
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                warning = CleanupWarning(str(path), str(e))
                logger.warning("run %s: %s", run.run_id, warning)
                warnings.append(warning)

        if run.stage != Stage.FAILED:
            run.advance(Stage.CLEANED_UP)
        return warnings

    @contextmanager
    def scoped(self, run: PipelineRun) -> Iterator[RunPaths]:
        """Allocate paths for a run and release them however the block exits."""
        paths = self.allocate(run)
        try:
            yield paths
        finally:
            self.release(run)

    def sweep_stale(self, max_age_seconds: float = 3600) -> int:
        """
        Remove files in the workspace directory older than ``max_age_seconds``.

        Catches files orphaned by a process that died mid-run.

        Returns:
            Number of files removed.
        """
        if not self.root.is_dir():
            return 0

        cutoff = time.time() - max_age_seconds
        removed = 0
        for entry in os.scandir(self.root):
            if not entry.is_file():
                continue
            try:
                if entry.stat().st_mtime >= cutoff:
                    continue
                os.unlink(entry.path)
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("stale file %s not removed: %s", entry.path, e)
        if removed:
            logger.info("removed %d stale file(s) from %s", removed, self.root)
        return removed
