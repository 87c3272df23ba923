"""FastAPI routes for uploading videos and managing stored recordings."""

import asyncio
import logging
import math
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from video_recorder.config import get_settings
from video_recorder.database import close_client
from video_recorder.errors import IngestError, RateLimitError
from video_recorder.models import Recording
from video_recorder.pipeline import IngestPipeline, build_pipeline
from video_recorder.security import RateLimiter, SecurityMiddleware


settings = get_settings()

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


class UploadResult(BaseModel):
    id: str
    transcription: Optional[str] = None


class RecordingOut(BaseModel):
    id: str
    filename: str
    originalName: str
    mimeType: str
    size: int
    snapshot: Optional[str] = None
    transcription: Optional[str] = None
    createdAt: Optional[str] = None

    @classmethod
    def from_recording(cls, recording: Recording) -> "RecordingOut":
        return cls(**recording.to_dict())


_pipeline: IngestPipeline | None = None


def get_pipeline() -> IngestPipeline:
    """Shared pipeline, built from settings on first request."""
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline(settings)
    return _pipeline


_rate_limiter = RateLimiter(settings.rate_limit_requests, settings.rate_limit_window)


def get_rate_limiter() -> RateLimiter:
    return _rate_limiter


async def enforce_rate_limit(request: Request, limiter: RateLimiter = Depends(get_rate_limiter)) -> None:
    """Answer 429 once a client exceeds its request budget for the window."""
    client = request.client.host if request.client else "unknown"
    retry_after = limiter.hit(client)
    if retry_after is not None:
        raise RateLimitError(
            "Too many requests from this IP, please try again later.",
            client=client,
            retry_after=max(1, math.ceil(retry_after)),
        )


async def _sweep_uploads_periodically(pipeline: IngestPipeline) -> None:
    while True:
        await asyncio.sleep(settings.cleanup_interval)
        try:
            await asyncio.to_thread(pipeline.workspace.sweep_stale, settings.stale_file_max_age)
        except OSError as e:
            logger.error("periodic upload cleanup failed: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    pipeline = app.dependency_overrides.get(get_pipeline, get_pipeline)()
    sweeper = asyncio.create_task(_sweep_uploads_periodically(pipeline))
    try:
        yield
    finally:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        close_client()


router = APIRouter(dependencies=[Depends(enforce_rate_limit)])


@router.post("/upload", status_code=201, response_model=UploadResult)
async def upload_video(
    video: UploadFile = File(...),
    pipeline: IngestPipeline = Depends(get_pipeline),
):
    """Ingest one uploaded video: snapshot, audio extraction, transcription, storage."""
    mime_type = video.content_type or ""
    if video.size is not None:
        # reject on the declared type and size before the content is read
        pipeline.check_upload(mime_type, video.size)
    content = await video.read()
    logger.info("upload received: %s (%s, %d bytes)", video.filename, mime_type, len(content))
    result = await pipeline.ingest(
        content,
        mime_type=mime_type,
        size=len(content),
        original_name=video.filename or "upload",
    )
    return UploadResult(id=result.id, transcription=result.transcription)


@router.get("/recordings", response_model=list[RecordingOut])
async def list_recordings(pipeline: IngestPipeline = Depends(get_pipeline)):
    recordings = await pipeline.repository.list_all()
    return [RecordingOut.from_recording(r) for r in recordings]


@router.get("/{recording_id}", response_model=RecordingOut)
async def get_recording(recording_id: str, pipeline: IngestPipeline = Depends(get_pipeline)):
    recording = await pipeline.repository.get_by_id(recording_id)
    if recording is None:
        raise HTTPException(status_code=404, detail="Recording not found")
    return RecordingOut.from_recording(recording)


@router.delete("/{recording_id}", status_code=204)
async def delete_recording(recording_id: str, pipeline: IngestPipeline = Depends(get_pipeline)):
    await pipeline.repository.delete_by_id(recording_id)
    return Response(status_code=204)


app = FastAPI(
    title="Video Recorder API",
    description=(
        "APIs for:\n"
        "- Uploading a recorded video (snapshot + transcript are stored)\n"
        "- Listing, fetching and deleting stored recordings\n"
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.allowed_origins),
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=86400,
)
app.add_middleware(SecurityMiddleware, max_file_size=settings.max_file_size)


@app.exception_handler(IngestError)
async def handle_ingest_error(request: Request, exc: IngestError) -> JSONResponse:
    logger.error(
        "%s %s failed: %s (code=%s, stage=%s)",
        request.method, request.url.path, exc, exc.error_code, exc.stage,
    )
    headers = None
    if "retry_after" in exc.context:
        headers = {"Retry-After": str(exc.context["retry_after"])}
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.public_message, "code": exc.error_code},
        headers=headers,
    )


@app.exception_handler(StarletteHTTPException)
async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.get("/health")
async def health():
    return {"status": "ok"}


app.include_router(router, prefix="/api/videos")
