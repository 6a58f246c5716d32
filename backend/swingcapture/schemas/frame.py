from typing import Any, Dict, List, Optional
from pydantic import BaseModel


class FrameResponse(BaseModel):
    frame_id: int
    capture_id: int
    frame_number: int
    phase: str
    t_ms: int
    frame_path: str  # Storage path in the frames bucket
    frame_url: str
    overlay_path: Optional[str] = None
    overlay_url: Optional[str] = None
    pose_data: Optional[Dict[str, Any]] = None  # SwingFrameArtifactV1


class FramesListResponse(BaseModel):
    capture_id: int
    frames: List[FrameResponse]
