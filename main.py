#!/usr/bin/env python3
"""
CLI entrypoint for the video recording pipeline.

Usage:
  python3 main.py <video_path> [--mime-type TYPE] [--name NAME]
  python3 main.py --list
  python3 main.py --show RECORDING_ID
  python3 main.py --delete RECORDING_ID

  video_path: Local video file (mp4, webm, m4v, avi, flv, mkv).

Example:
  python3 main.py demo.webm
  python3 main.py clip.bin --mime-type video/mp4 --name "Team sync"
  python3 main.py --list
"""

import argparse
import asyncio
import json
import logging
import mimetypes
import sys
from pathlib import Path

from video_recorder.config import get_settings
from video_recorder.database import close_client
from video_recorder.errors import IngestError
from video_recorder.pipeline import IngestPipeline, build_pipeline


def _guess_mime_type(path: Path) -> str:
    mime_type, _ = mimetypes.guess_type(path.name)
    if path.suffix.lower() == ".mkv":
        return "video/x-matroska"
    return mime_type or "application/octet-stream"


async def _ingest(pipeline: IngestPipeline, path: Path, mime_type: str | None, name: str | None) -> int:
    data = path.read_bytes()
    result = await pipeline.ingest(
        data,
        mime_type=mime_type or _guess_mime_type(path),
        size=len(data),
        original_name=name or path.name,
    )
    print("Success.")
    print("Recording id:", result.id)
    t = result.transcription or ""
    print("Transcript (preview):", t[:200] + "..." if len(t) > 200 else t or "(no speech)")
    return 0


async def _list(pipeline: IngestPipeline) -> int:
    recordings = await pipeline.repository.list_all()
    for r in recordings:
        created = r.created_at.isoformat() if r.created_at else "-"
        print(f"{r.id}  {created}  {r.original_name}  ({r.size} bytes)")
    print(f"{len(recordings)} recording(s)")
    return 0


async def _show(pipeline: IngestPipeline, recording_id: str) -> int:
    recording = await pipeline.repository.get_by_id(recording_id)
    if recording is None:
        print("Recording not found:", recording_id, file=sys.stderr)
        return 1
    data = recording.to_dict()
    if data.get("snapshot"):
        data["snapshot"] = f"<{len(data['snapshot'])} base64 chars>"
    print(json.dumps(data, indent=2, ensure_ascii=False))
    return 0


async def _delete(pipeline: IngestPipeline, recording_id: str) -> int:
    removed = await pipeline.repository.delete_by_id(recording_id)
    print("Deleted." if removed else "Nothing to delete.")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Ingest a video (snapshot + transcript → MongoDB) or manage stored recordings."
    )
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("video_path", nargs="?", help="Path to a video file to ingest")
    group.add_argument("--list", "-l", action="store_true", help="List stored recordings, newest first")
    group.add_argument("--show", metavar="RECORDING_ID", help="Print one stored recording")
    group.add_argument("--delete", metavar="RECORDING_ID", help="Delete a stored recording")
    parser.add_argument("--mime-type", default=None, help="Override the detected content type")
    parser.add_argument("--name", default=None, help="Display name to store (default: file name)")
    args = parser.parse_args()

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    try:
        pipeline = build_pipeline(settings)
        if args.list:
            return asyncio.run(_list(pipeline))
        if args.show:
            return asyncio.run(_show(pipeline, args.show))
        if args.delete:
            return asyncio.run(_delete(pipeline, args.delete))

        path = Path(args.video_path)
        if not path.is_file():
            print("Failed: no such file:", path, file=sys.stderr)
            return 1
        return asyncio.run(_ingest(pipeline, path, args.mime_type, args.name))
    except IngestError as e:
        print("Failed:", e, file=sys.stderr)
        return 1
    finally:
        close_client()


if __name__ == "__main__":
    sys.exit(main())
