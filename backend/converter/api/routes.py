"""API routes for submitting conversions and collecting their results."""
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import Response

from converter.config import (
    DEFAULT_COLOR_PROFILE,
    DEFAULT_QUALITY,
    DEFAULT_TARGET_FORMAT,
    MAX_IMAGE_SIZE_BYTES,
    MAX_SHORT_EDGE,
    SOURCE_EXTENSIONS,
)
from converter.conversion.errors import SchedulerClosedError
from converter.conversion.models import (
    FORMATS,
    WORKING_PROFILES,
    ConversionTask,
    SourceFormat,
    TargetFormat,
)
from converter.conversion.scheduler import WorkerPoolScheduler
from converter.inbox import TaskInbox, TaskState

logger = logging.getLogger("converter.api")
router = APIRouter(prefix="/api", tags=["converter"])


def get_scheduler(request: Request) -> WorkerPoolScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None or scheduler.closed:
        raise HTTPException(503, "Conversion pool is not running")
    return scheduler


def get_inbox(request: Request) -> TaskInbox:
    return request.app.state.inbox


def _resolve_source_format(file: UploadFile) -> SourceFormat:
    source = SourceFormat.from_filename(file.filename or "") or SourceFormat.from_mime(file.content_type or "")
    if source is None:
        raise HTTPException(400, f"Unsupported source format: {file.filename or file.content_type}. Use JPEG or PNG.")
    return source


def _state_to_dict(state: TaskState) -> dict:
    return {
        "task_id": state.task_id,
        "filename": state.filename,
        "status": state.status.value,
        "progress": state.progress,
        "error": state.error,
        "mime": state.target_format.value,
        "output_filename": state.output_filename,
        "output_size": state.output_size,
        "source_profile": state.source_profile.value if state.source_profile else None,
    }


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/limits")
def get_limits(request: Request):
    """Return upload limits and pool size for the client."""
    scheduler = getattr(request.app.state, "scheduler", None)
    return {
        "max_image_size_mb": MAX_IMAGE_SIZE_BYTES // (1024 * 1024),
        "max_image_size_bytes": MAX_IMAGE_SIZE_BYTES,
        "max_short_edge": MAX_SHORT_EDGE,
        "workers": scheduler.size if scheduler else 0,
    }


@router.get("/formats")
def get_formats():
    return {
        "source": [{"value": s.value, "label": s.label} for s in SourceFormat],
        "source_extensions": sorted(SOURCE_EXTENSIONS),
        "target": [
            {"value": fmt.value, "label": info.label, "extension": info.extension, "supports_quality": info.supports_quality}
            for fmt, info in FORMATS.items()
        ],
        "color_profiles": [{"value": p.value, "label": p.label} for p in WORKING_PROFILES],
    }


@router.post("/convert")
async def convert(
    file: UploadFile = File(...),
    target_format: TargetFormat = Query(TargetFormat(DEFAULT_TARGET_FORMAT)),
    color_profile: str = Query(DEFAULT_COLOR_PROFILE, description="srgb | adobe-rgb"),
    quality: int = Query(DEFAULT_QUALITY, ge=0, le=100),
    short_edge: Optional[int] = Query(None, ge=1, le=MAX_SHORT_EDGE),
    scheduler: WorkerPoolScheduler = Depends(get_scheduler),
    inbox: TaskInbox = Depends(get_inbox),
):
    """Upload one JPEG/PNG and queue its conversion. Poll /api/task/{task_id} for progress."""
    source_format = _resolve_source_format(file)
    if color_profile not in [p.value for p in WORKING_PROFILES]:
        raise HTTPException(400, f"Unsupported color profile: {color_profile}")

    chunks: list[bytes] = []
    total = 0
    while chunk := await file.read(1024 * 1024):
        total += len(chunk)
        if total > MAX_IMAGE_SIZE_BYTES:
            raise HTTPException(413, f"File too large (max {MAX_IMAGE_SIZE_BYTES // (1024 * 1024)} MB)")
        chunks.append(chunk)
    if total == 0:
        raise HTTPException(400, "Empty file")

    filename = file.filename or f"image.{source_format.label.lower()}"
    task = ConversionTask(
        task_id=str(uuid.uuid4()),
        source_format=source_format,
        target_format=target_format,
        target_color_profile=color_profile,
        target_quality=quality,
        buffer=b"".join(chunks),
        short_edge=short_edge,
        filename=filename,
    )
    state = inbox.track(task.task_id, filename, target_format)
    try:
        scheduler.enqueue(task)
    except SchedulerClosedError:
        inbox.forget(task.task_id)
        raise HTTPException(503, "Conversion pool is shutting down")
    logger.info("Queued %s (%s bytes) as %s", filename, total, task.task_id)
    return _state_to_dict(state)


@router.get("/task/{task_id}")
def get_task_status(task_id: str, inbox: TaskInbox = Depends(get_inbox)):
    """Get conversion task status and progress. A failed task is reported once and then forgotten."""
    state = inbox.poll(task_id)
    if not state:
        raise HTTPException(404, "Task not found")
    return _state_to_dict(state)


@router.get("/task/{task_id}/download")
def download_output(task_id: str, inbox: TaskInbox = Depends(get_inbox)):
    """Download a converted file. The result is handed out once and then discarded."""
    state = inbox.take_result(task_id)
    if not state or state.result is None:
        raise HTTPException(404, "Result not ready")
    return Response(
        content=state.result,
        media_type=state.target_format.value,
        headers={
            "Content-Disposition": f'attachment; filename="{state.output_filename}"',
            "X-Source-Profile": state.source_profile.value if state.source_profile else "",
        },
    )
