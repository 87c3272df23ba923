"""Video recorder ingestion: upload → snapshot + audio → transcript → MongoDB record."""

from video_recorder.pipeline import IngestPipeline, build_pipeline

__all__ = ["IngestPipeline", "build_pipeline"]
