"""
Swing metrics calculation module for golf swing analysis.

Computes a compact set of scalar metrics from the phase-tagged keyframes of one
capture. These are deterministic geometric proxies from body landmarks, not
club-trajectory physics.

Sign Conventions and Assumptions:
- Image coordinates: y-down, x-right, normalized to [0, 1]
- Right-handed golfer assumed: lead side = left side
- Angles are reported in degrees

Notation:
- angle(a, b, c) = angle at vertex b between rays b->a and b->c, folded into [0, 180]
- hipMid = mean of left and right hip
"""
import logging
import math
from typing import List, Sequence
import numpy as np
from swingcapture.core.errors import MissingPhaseError
from swingcapture.processing import landmarks as lm
from swingcapture.schemas.pose import FrameMetrics, KeyLandmark, Landmark, PoseMetrics

logger = logging.getLogger(__name__)

# Shoulder width change is scaled by this to read like a rotation in degrees
SHOULDER_TURN_SCALE = 180.0

BACKSWING_PHASES = ("takeaway", "backswing", "top")
DOWNSWING_PHASES = ("transition", "downswing", "impact")


def calculate_angle(a: Landmark, b: Landmark, c: Landmark) -> float:
    """
    Angle at vertex b formed by points a and c, in degrees.

    Returns:
        Angle in [0, 180]; calculate_angle(a, b, c) == calculate_angle(c, b, a)
    """
    radians = math.atan2(c.y - b.y, c.x - b.x) - math.atan2(a.y - b.y, a.x - b.x)
    angle = abs(math.degrees(radians))
    if angle > 180.0:
        angle = 360.0 - angle
    return angle


def calculate_distance(a: Landmark, b: Landmark) -> float:
    """3D Euclidean distance between two landmarks."""
    return math.sqrt((a.x - b.x) ** 2 + (a.y - b.y) ** 2 + (a.z - b.z) ** 2)


def planar_distance(a: Landmark, b: Landmark) -> float:
    return math.hypot(a.x - b.x, a.y - b.y)


def hip_midpoint(landmarks: List[Landmark]) -> np.ndarray:
    left_hip = landmarks[lm.LEFT_HIP]
    right_hip = landmarks[lm.RIGHT_HIP]
    return np.array([(left_hip.x + right_hip.x) / 2, (left_hip.y + right_hip.y) / 2])


def _first_with_phase(keyframes: Sequence, phase: str):
    return next((kf for kf in keyframes if kf.phase == phase), None)


def compute_pose_metrics(keyframes: Sequence) -> PoseMetrics:
    """
    Derive the capture's pose metrics from phase-tagged keyframes.

    Args:
        keyframes: Frames ordered by timestamp, each with ``phase``,
            ``timestamp_ms`` and ``landmarks``

    Returns:
        PoseMetrics

    Raises:
        MissingPhaseError: if no frame is tagged address or none is tagged top
    """
    address_frame = _first_with_phase(keyframes, "address")
    top_frame = _first_with_phase(keyframes, "top")
    if address_frame is None or top_frame is None:
        found = sorted({kf.phase for kf in keyframes})
        logger.warning(f"Cannot compute metrics, phases present: {found}")
        raise MissingPhaseError()

    address = address_frame.landmarks
    top = top_frame.landmarks

    # Hip rotation (change in shoulder-hip-knee angle between address and top)
    address_hip_angle = calculate_angle(address[lm.LEFT_SHOULDER], address[lm.LEFT_HIP], address[lm.LEFT_KNEE])
    top_hip_angle = calculate_angle(top[lm.LEFT_SHOULDER], top[lm.LEFT_HIP], top[lm.LEFT_KNEE])
    hip_rotation_max = abs(top_hip_angle - address_hip_angle)

    # Shoulder turn proxy: apparent shoulder width shrinks as the shoulders rotate
    address_shoulder_width = calculate_distance(address[lm.LEFT_SHOULDER], address[lm.RIGHT_SHOULDER])
    top_shoulder_width = calculate_distance(top[lm.LEFT_SHOULDER], top[lm.RIGHT_SHOULDER])
    shoulder_turn_max = abs(top_shoulder_width - address_shoulder_width) * SHOULDER_TURN_SCALE

    knee_flex_address = calculate_angle(address[lm.LEFT_HIP], address[lm.LEFT_KNEE], address[lm.LEFT_ANKLE])
    wrist_hinge_top = calculate_angle(top[lm.LEFT_ELBOW], top[lm.LEFT_WRIST], top[lm.LEFT_INDEX])

    nose = address[lm.NOSE]
    lead_hip = address[lm.LEFT_HIP]
    spine_tilt_address = math.degrees(math.atan2(nose.y - lead_hip.y, nose.x - lead_hip.x))

    weight_shift = float(abs(hip_midpoint(top)[0] - hip_midpoint(address)[0]))

    address_head = address[lm.NOSE]
    head_movements = [planar_distance(kf.landmarks[lm.NOSE], address_head) for kf in keyframes]
    head_stability = 1.0 - max(head_movements)

    # Club path proxy: lateral spread of the lead hand around its mean
    hand_xs = np.array([kf.landmarks[lm.LEAD_WRIST].x for kf in keyframes], dtype=float)
    club_path_deviation = float(np.max(np.abs(hand_xs - hand_xs.mean())))

    backswing_frames = sum(1 for kf in keyframes if kf.phase in BACKSWING_PHASES)
    downswing_frames = sum(1 for kf in keyframes if kf.phase in DOWNSWING_PHASES)
    swing_tempo = backswing_frames / downswing_frames if downswing_frames > 0 else 1.0

    total_duration_ms = int(keyframes[-1].timestamp_ms - keyframes[0].timestamp_ms)

    metrics = PoseMetrics(
        hip_rotation_max=hip_rotation_max,
        shoulder_turn_max=shoulder_turn_max,
        knee_flex_address=knee_flex_address,
        wrist_hinge_top=wrist_hinge_top,
        spine_tilt_address=spine_tilt_address,
        weight_shift=weight_shift,
        head_stability=head_stability,
        club_path_deviation=club_path_deviation,
        swing_tempo=swing_tempo,
        total_duration_ms=total_duration_ms,
    )
    logger.info(f"Computed swing metrics: {metrics.model_dump()}")
    return metrics


def compute_frame_metrics(landmarks: List[Landmark]) -> FrameMetrics:
    """Per-frame lead-side joint angles stored alongside the frame's landmarks."""
    return FrameMetrics(
        hip_angle=calculate_angle(landmarks[lm.LEFT_SHOULDER], landmarks[lm.LEFT_HIP], landmarks[lm.LEFT_KNEE]),
        shoulder_angle=calculate_angle(landmarks[lm.LEFT_HIP], landmarks[lm.LEFT_SHOULDER], landmarks[lm.LEFT_ELBOW]),
        knee_flex=calculate_angle(landmarks[lm.LEFT_HIP], landmarks[lm.LEFT_KNEE], landmarks[lm.LEFT_ANKLE]),
    )


def extract_key_landmarks(landmarks: List[Landmark]) -> List[KeyLandmark]:
    """Reduce a full landmark set to the golf-relevant subset for the pose summary."""
    return [
        KeyLandmark(idx=idx, x=landmarks[idx].x, y=landmarks[idx].y, z=landmarks[idx].z)
        for idx in lm.KEY_LANDMARK_INDICES
    ]
