import logging
import os
import tempfile
import uuid
from typing import Optional
from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from swingcapture.core.config import settings
from swingcapture.core.errors import CaptureError, ExtractionError, MissingPhaseError, NoPosesDetectedError
from swingcapture.processing.coordinator import CaptureConfig, CaptureCoordinator
from swingcapture.schemas.capture import CaptureDetailResponse, CaptureResponse, StageOutcomeResponse
from swingcapture.schemas.frame import FrameResponse, FramesListResponse

logger = logging.getLogger(__name__)
router = APIRouter()

ALLOWED_MIME_TYPES = ["video/mp4", "video/quicktime"]
FILE_EXTENSIONS = {"video/mp4": "mp4", "video/quicktime": "mov"}

# Failures caused by the recording itself rather than by the service
CONTENT_ERRORS = (NoPosesDetectedError, MissingPhaseError, ExtractionError)


def get_coordinator(request: Request) -> CaptureCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Capture pipeline is not ready",
        )
    return coordinator


@router.post("/captures", response_model=CaptureResponse, status_code=status.HTTP_200_OK)
async def create_capture(
    file: UploadFile = File(...),
    user_id: str = Form(...),
    club: Optional[str] = Form(None),
    duration_ms: Optional[int] = Form(None),
    generate_overlays: Optional[bool] = Form(None),
    client_capture_id: Optional[uuid.UUID] = Form(None),
    coordinator: CaptureCoordinator = Depends(get_coordinator),
):
    """Upload a swing video and run the capture pipeline synchronously."""
    logger.info(f"Capture upload request from user {user_id}: {file.filename}")

    # Validate MIME type
    if file.content_type not in ALLOWED_MIME_TYPES:
        logger.warning(f"Invalid MIME type: {file.content_type}")
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Unsupported media type. Allowed: {', '.join(ALLOWED_MIME_TYPES)}",
        )

    # Read and validate size
    content = await file.read()
    file_size = len(content)
    max_file_size = settings.max_upload_size_mb * 1024 * 1024

    if file_size > max_file_size:
        logger.warning(f"File too large: {file_size} bytes")
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail=f"File size exceeds {settings.max_upload_size_mb}MB",
        )

    if file_size == 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="File is empty",
        )

    config = CaptureConfig(
        generate_overlays=settings.generate_overlays if generate_overlays is None else generate_overlays,
        club=club,
        client_capture_id=str(client_capture_id) if client_capture_id else None,
    )

    temp_dir = settings.temp_dir or None
    if temp_dir:
        os.makedirs(temp_dir, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="wb",
        suffix=f".{FILE_EXTENSIONS[file.content_type]}",
        dir=temp_dir,
        delete=False,
    ) as temp_file:
        temp_file.write(content)
        temp_file_path = temp_file.name
    logger.info(f"Saved video to temp file: {temp_file_path}")

    try:
        result = await run_in_threadpool(
            coordinator.process_swing_capture,
            temp_file_path,
            duration_ms,
            user_id,
            config,
        )
    except CONTENT_ERRORS as e:
        logger.warning(f"Capture rejected at {e.stage}: {e.message}")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=e.message)
    except CaptureError as e:
        logger.error(f"Capture failed at {e.stage}: {e.message}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=e.message)
    finally:
        try:
            os.unlink(temp_file_path)
        except OSError as e:
            logger.warning(f"Failed to delete temp video {temp_file_path}: {e}")

    summary = result.pose_summary
    return CaptureResponse(
        capture_id=result.capture_id,
        client_capture_id=result.client_capture_id,
        status="uploaded",
        metrics=summary.metrics,
        keyframes=summary.keyframes,
        report=[StageOutcomeResponse(**outcome.to_dict()) for outcome in result.report.outcomes],
    )


@router.get("/captures/{capture_id}", response_model=CaptureDetailResponse)
async def get_capture(capture_id: int, coordinator: CaptureCoordinator = Depends(get_coordinator)):
    """Get a stored capture and its pose summary."""
    capture = coordinator.repository.get_capture(capture_id)
    if not capture:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Capture {capture_id} not found",
        )

    return CaptureDetailResponse(
        capture_id=capture.id,
        user_id=capture.user_id,
        client_capture_id=capture.client_capture_id,
        status=capture.status,
        club=capture.club,
        captured_at=capture.captured_at.isoformat(),
        pose_summary=capture.pose_summary,
    )


@router.get("/captures/{capture_id}/frames", response_model=FramesListResponse)
async def get_capture_frames(capture_id: int, coordinator: CaptureCoordinator = Depends(get_coordinator)):
    """Get all frames of a capture with their storage URLs."""
    if not coordinator.repository.get_capture(capture_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Capture {capture_id} not found",
        )

    uploader = coordinator.uploader
    frames = []
    for frame in coordinator.repository.list_frames(capture_id):
        frames.append(
            FrameResponse(
                frame_id=frame.id,
                capture_id=frame.capture_id,
                frame_number=frame.frame_number,
                phase=frame.phase,
                t_ms=frame.t_ms,
                frame_path=frame.frame_path,
                frame_url=uploader.public_url(settings.frames_bucket, frame.frame_path),
                overlay_path=frame.overlay_path,
                overlay_url=(
                    uploader.public_url(settings.overlays_bucket, frame.overlay_path) if frame.overlay_path else None
                ),
                pose_data=frame.pose_data,
            )
        )

    return FramesListResponse(capture_id=capture_id, frames=frames)
