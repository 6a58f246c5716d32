"""
Pose data contract types.

These models define the JSON that flows from the capture pipeline into the
swing_capture and swing_frame tables, where the downstream analysis function
reads it. Keep them backwards compatible; bump the version on breaking changes.
"""
from typing import Dict, List, Literal, Optional
from pydantic import BaseModel

SwingPhase = Literal[
    "address",
    "takeaway",
    "backswing",
    "top",
    "transition",
    "downswing",
    "impact",
    "follow_through",
]

SWING_PHASES: tuple = (
    "address",
    "takeaway",
    "backswing",
    "top",
    "transition",
    "downswing",
    "impact",
    "follow_through",
)


class Landmark(BaseModel):
    """One of the 33 pose landmarks. x/y normalized to [0, 1], z in model units."""
    x: float
    y: float
    z: float = 0.0
    visibility: Optional[float] = None  # 0-1, confidence the landmark is visible


class PoseMetrics(BaseModel):
    # Angles (degrees)
    hip_rotation_max: float
    shoulder_turn_max: float
    knee_flex_address: float
    wrist_hinge_top: float
    spine_tilt_address: float

    # Positions (normalized 0-1)
    weight_shift: float  # Lateral hip-midpoint movement, address -> top
    head_stability: float  # 1 - max nose travel; higher is steadier
    club_path_deviation: float  # Proxy from the lead-hand path

    # Motion
    swing_tempo: float  # Backswing:downswing frame ratio
    total_duration_ms: int


class KeyframeSummary(BaseModel):
    timestamp_ms: int
    phase: SwingPhase
    has_overlay: bool


class KeyLandmark(BaseModel):
    idx: int
    x: float
    y: float
    z: float


class PoseSummaryV1(BaseModel):
    """Canonical compact summary stored on swing_capture.pose_summary. Never holds full landmarks."""
    version: Literal["v1"] = "v1"
    extractor: str
    captured_at: str  # ISO-8601 UTC
    total_frames: int  # Keyframes sampled from the video
    keyframe_count: int  # Keyframes that produced a pose
    duration_ms: int
    metrics: PoseMetrics
    keyframes: List[KeyframeSummary]
    key_landmarks: Optional[Dict[str, List[KeyLandmark]]] = None  # address/top/impact only


class FrameMetrics(BaseModel):
    hip_angle: Optional[float] = None
    shoulder_angle: Optional[float] = None
    knee_flex: Optional[float] = None


class SwingFrameArtifactV1(BaseModel):
    """Per-frame payload stored on swing_frame.pose_data."""
    version: Literal["v1"] = "v1"
    timestamp_ms: int
    phase: SwingPhase
    landmarks: List[Landmark]
    frame_metrics: Optional[FrameMetrics] = None
