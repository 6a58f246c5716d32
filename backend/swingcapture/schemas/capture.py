from typing import Any, Dict, List, Optional
from pydantic import BaseModel
from swingcapture.schemas.pose import KeyframeSummary, PoseMetrics


class StageOutcomeResponse(BaseModel):
    stage: str
    status: str  # "success", "degraded" or "fatal"
    detail: str = ""
    timestamp_ms: Optional[int] = None


class CaptureResponse(BaseModel):
    capture_id: int
    client_capture_id: str
    status: str  # Always "uploaded" for a successful capture
    metrics: PoseMetrics
    keyframes: List[KeyframeSummary]
    report: List[StageOutcomeResponse] = []


class CaptureDetailResponse(BaseModel):
    capture_id: int
    user_id: str
    client_capture_id: str
    status: str
    club: Optional[str] = None
    captured_at: str
    pose_summary: Optional[Dict[str, Any]] = None  # PoseSummaryV1
