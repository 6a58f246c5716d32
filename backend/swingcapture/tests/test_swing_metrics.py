"""
Tests for swing metrics calculation module.
"""
import math
import pytest
from swingcapture.core.errors import MissingPhaseError
from swingcapture.processing import landmarks as lm
from swingcapture.processing.keyframes import KeyframeData
from swingcapture.processing.pose_estimation import synthetic_swing_pose
from swingcapture.processing.swing_metrics import (
    calculate_angle,
    calculate_distance,
    compute_frame_metrics,
    compute_pose_metrics,
    extract_key_landmarks,
    hip_midpoint,
)
from swingcapture.schemas.pose import Landmark
from swingcapture.tests.factories import PHASES_3000MS, swing_frames


def point(x, y, z=0.0):
    return Landmark(x=x, y=y, z=z, visibility=0.9)


def still_frames(phases, landmarks=None):
    """Frames that all share one pose, tagged with the given phases."""
    landmarks = landmarks or synthetic_swing_pose(0.0)
    return [
        KeyframeData(timestamp_ms=100 * i, landmarks=list(landmarks), frame_path=f"frame_{100 * i}.jpg", phase=phase)
        for i, phase in enumerate(phases)
    ]


def test_calculate_angle_right_angle():
    """Test angle calculation at a right-angle vertex."""
    a, b, c = point(1.0, 0.0), point(0.0, 0.0), point(0.0, 1.0)
    assert math.isclose(calculate_angle(a, b, c), 90.0, abs_tol=1e-9)


def test_calculate_angle_straight_line():
    a, b, c = point(0.0, 0.0), point(0.5, 0.5), point(1.0, 1.0)
    assert math.isclose(calculate_angle(a, b, c), 180.0, abs_tol=1e-9)


def test_calculate_angle_symmetric_and_folded():
    """The angle is the same in both directions and never exceeds 180."""
    a, b, c = point(0.9, 0.1), point(0.5, 0.5), point(0.2, 0.7)
    forward = calculate_angle(a, b, c)
    assert math.isclose(forward, calculate_angle(c, b, a), abs_tol=1e-9)
    assert 0.0 <= forward <= 180.0

    # Raw atan2 difference here exceeds 180 and must be folded back
    a, b, c = point(-1.0, -0.1), point(0.0, 0.0), point(-1.0, 0.1)
    assert calculate_angle(a, b, c) < 180.0
    assert math.isclose(calculate_angle(a, b, c), math.degrees(2 * math.atan2(0.1, 1.0)), abs_tol=1e-9)


def test_calculate_distance_3d():
    assert math.isclose(calculate_distance(point(0, 0, 0), point(0.3, 0.4, 1.2)), 1.3, abs_tol=1e-9)


def test_hip_midpoint():
    landmarks = synthetic_swing_pose(0.0)
    landmarks[lm.LEFT_HIP] = point(0.6, 0.5)
    landmarks[lm.RIGHT_HIP] = point(0.4, 0.7)
    mid = hip_midpoint(landmarks)
    assert mid[0] == pytest.approx(0.5)
    assert mid[1] == pytest.approx(0.6)


def test_compute_pose_metrics_synthetic_swing():
    """Test the full metric set on a phase-tagged synthetic swing."""
    metrics = compute_pose_metrics(swing_frames(phases=PHASES_3000MS))

    # 3 backswing frames (backswing x2, top) over 4 downswing (transition, downswing x2, impact)
    assert metrics.swing_tempo == pytest.approx(0.75)
    assert metrics.total_duration_ms == 2850 - 150
    assert metrics.shoulder_turn_max > 0
    assert metrics.weight_shift > 0
    assert 0.0 <= metrics.head_stability <= 1.0
    assert metrics.club_path_deviation > 0
    assert 0.0 <= metrics.knee_flex_address <= 180.0
    assert 0.0 <= metrics.wrist_hinge_top <= 180.0


def test_compute_pose_metrics_still_pose():
    """A golfer who never moves has no rotation, shift or head movement."""
    metrics = compute_pose_metrics(still_frames(["address", "top"]))

    assert metrics.hip_rotation_max == pytest.approx(0.0)
    assert metrics.shoulder_turn_max == pytest.approx(0.0)
    assert metrics.weight_shift == pytest.approx(0.0)
    assert metrics.head_stability == pytest.approx(1.0)
    assert metrics.club_path_deviation == pytest.approx(0.0)
    # No downswing frames
    assert metrics.swing_tempo == 1.0
    assert metrics.total_duration_ms == 100


def test_compute_pose_metrics_address_geometry():
    """Test knee flex and spine tilt for a known address pose."""
    landmarks = synthetic_swing_pose(0.0)
    landmarks[lm.NOSE] = point(0.55, 0.20)
    landmarks[lm.LEFT_HIP] = point(0.55, 0.55)
    landmarks[lm.LEFT_KNEE] = point(0.55, 0.72)
    landmarks[lm.LEFT_ANKLE] = point(0.55, 0.90)

    metrics = compute_pose_metrics(still_frames(["address", "top"], landmarks))

    # Straight leg, head directly above the lead hip (image y grows downward)
    assert metrics.knee_flex_address == pytest.approx(180.0)
    assert metrics.spine_tilt_address == pytest.approx(-90.0)


def test_compute_pose_metrics_uses_first_address_and_top():
    landmarks = synthetic_swing_pose(0.0)
    moved = list(landmarks)
    moved[lm.LEFT_HIP] = point(0.75, 0.55)
    moved[lm.RIGHT_HIP] = point(0.65, 0.55)
    frames = still_frames(["address", "top", "top"])
    frames[2].landmarks = moved

    metrics = compute_pose_metrics(frames)
    assert metrics.weight_shift == pytest.approx(0.0)


@pytest.mark.parametrize("phases", [["top", "impact"], ["address", "backswing", "impact"], []])
def test_compute_pose_metrics_missing_phase(phases):
    """Test that address and top are both required."""
    with pytest.raises(MissingPhaseError) as exc_info:
        compute_pose_metrics(still_frames(phases))
    assert "address, top" in exc_info.value.message


def test_compute_frame_metrics():
    landmarks = synthetic_swing_pose(0.0)
    landmarks[lm.LEFT_HIP] = point(0.5, 0.5)
    landmarks[lm.LEFT_KNEE] = point(0.5, 0.7)
    landmarks[lm.LEFT_ANKLE] = point(0.7, 0.7)
    landmarks[lm.LEFT_SHOULDER] = point(0.5, 0.3)
    landmarks[lm.LEFT_ELBOW] = point(0.7, 0.3)

    frame_metrics = compute_frame_metrics(landmarks)
    assert frame_metrics.knee_flex == pytest.approx(90.0)
    assert frame_metrics.hip_angle == pytest.approx(180.0)
    assert frame_metrics.shoulder_angle == pytest.approx(90.0)


def test_extract_key_landmarks():
    landmarks = synthetic_swing_pose(0.45)
    key = extract_key_landmarks(landmarks)
    assert [k.idx for k in key] == list(lm.KEY_LANDMARK_INDICES)
    wrist = next(k for k in key if k.idx == lm.LEFT_WRIST)
    assert wrist.y == pytest.approx(landmarks[lm.LEFT_WRIST].y)
