"""
Tests for pose estimation engines.
"""
from unittest.mock import patch, MagicMock
import numpy as np
import pytest
from swingcapture.core.config import Settings
from swingcapture.core.errors import PoseEngineError, PoseNotDetected
from swingcapture.processing import landmarks as lm
from swingcapture.processing.pose_estimation import (
    MOVENET_TO_LANDMARK,
    FakePoseEstimator,
    MediaPipePoseEstimator,
    MoveNetPoseEstimator,
    average_visibility,
    create_pose_estimator,
    movenet_to_landmarks,
    synthetic_swing_pose,
    timestamp_from_frame_path,
)
from swingcapture.schemas.pose import Landmark
from swingcapture.tests.factories import write_test_image


def test_movenet_mapping_covers_all_landmarks():
    """Every one of the 33 landmark slots is fed by a COCO keypoint."""
    assert len(MOVENET_TO_LANDMARK) == lm.NUM_LANDMARKS
    assert all(0 <= source < 17 for source, _ in MOVENET_TO_LANDMARK)
    assert MOVENET_TO_LANDMARK[lm.LEFT_WRIST] == (9, True)
    assert MOVENET_TO_LANDMARK[lm.RIGHT_HIP] == (12, True)


def test_movenet_to_landmarks_square_image():
    """Test conversion of MoveNet (y, x, score) output on an unpadded image."""
    keypoints = np.zeros((1, 1, 17, 3), dtype=np.float32)
    keypoints[0, 0, :, 2] = 0.8
    keypoints[0, 0, 9, :] = [0.25, 0.75, 0.9]  # left wrist

    landmarks = movenet_to_landmarks(keypoints, image_height=256, image_width=256)

    assert len(landmarks) == 33
    wrist = landmarks[lm.LEFT_WRIST]
    assert wrist.x == pytest.approx(0.75)
    assert wrist.y == pytest.approx(0.25)
    assert wrist.visibility == pytest.approx(0.9)
    # Proxy slots borrow the position but not the confidence
    assert landmarks[lm.LEFT_INDEX].x == pytest.approx(0.75)
    assert landmarks[lm.LEFT_INDEX].visibility == 0.0


def test_movenet_to_landmarks_removes_letterbox():
    """Coordinates in the padded square map back onto the original frame."""
    keypoints = np.zeros((1, 1, 17, 3), dtype=np.float32)
    keypoints[0, 0, :, 2] = 0.8
    # Landscape 200x100: the image fills the middle half of the square vertically
    keypoints[0, 0, 0, :] = [0.25, 0.5, 0.8]
    keypoints[0, 0, 5, :] = [0.75, 1.0, 0.8]

    landmarks = movenet_to_landmarks(keypoints, image_height=100, image_width=200)

    assert landmarks[lm.NOSE].y == pytest.approx(0.0)
    assert landmarks[lm.NOSE].x == pytest.approx(0.5)
    assert landmarks[lm.LEFT_SHOULDER].y == pytest.approx(1.0)
    assert landmarks[lm.LEFT_SHOULDER].x == pytest.approx(1.0)


def test_movenet_to_landmarks_no_person():
    keypoints = np.full((1, 1, 17, 3), 0.05, dtype=np.float32)
    with pytest.raises(PoseNotDetected):
        movenet_to_landmarks(keypoints, 256, 256)


def test_movenet_unknown_model():
    with pytest.raises(ValueError):
        MoveNetPoseEstimator("movenet_unknown")


@patch("tensorflow_hub.load")
def test_movenet_estimator_detect(mock_hub_load, tmp_path):
    """Test the MoveNet engine end to end with the hub model mocked."""
    keypoints = np.zeros((1, 1, 17, 3), dtype=np.float32)
    keypoints[0, 0, :, :] = [0.5, 0.5, 0.7]
    mock_output = MagicMock()
    mock_output.numpy.return_value = keypoints
    mock_signature = MagicMock(return_value={"output_0": mock_output})
    mock_module = MagicMock()
    mock_module.signatures = {"serving_default": mock_signature}
    mock_hub_load.return_value = mock_module

    estimator = MoveNetPoseEstimator("movenet_lightning")
    assert estimator.input_size == 192
    estimator.initialize()
    result = estimator.detect(write_test_image(str(tmp_path / "frame_100.jpg"), size=(120, 80)))

    mock_hub_load.assert_called_once_with("https://tfhub.dev/google/movenet/singlepose/lightning/4")
    model_input = mock_signature.call_args[0][0]
    assert tuple(model_input.shape) == (1, 192, 192, 3)
    assert len(result.landmarks) == 33
    assert result.landmarks[lm.NOSE].visibility == pytest.approx(0.7)


def test_mediapipe_missing_model_file(tmp_path):
    """Test that a missing model file fails initialization with a typed error."""
    estimator = MediaPipePoseEstimator(str(tmp_path / "pose_landmarker.task"))
    with pytest.raises(PoseEngineError) as exc_info:
        estimator.initialize()
    assert "not found" in exc_info.value.message
    assert not estimator.initialized


def test_fake_estimator_detect_before_initialize():
    estimator = FakePoseEstimator()
    with pytest.raises(PoseEngineError):
        estimator.detect("/tmp/frame_100.jpg")


def test_fake_estimator_initialize_is_idempotent():
    """Test that the model is loaded once however often initialize() is called."""
    estimator = FakePoseEstimator()
    estimator.initialize()
    estimator.initialize()
    assert estimator.load_count == 1
    assert estimator.initialized

    estimator.dispose()
    assert not estimator.initialized
    with pytest.raises(PoseEngineError):
        estimator.detect("/tmp/frame_100.jpg")


def test_fake_estimator_initialize_failure():
    estimator = FakePoseEstimator(fail_initialize=True)
    with pytest.raises(PoseEngineError):
        estimator.initialize()
    assert not estimator.initialized


def test_fake_estimator_default_pose():
    """The default response follows the synthetic swing for the frame's timestamp."""
    estimator = FakePoseEstimator(duration_ms=3000)
    estimator.initialize()
    result = estimator.detect("/tmp/work/frame_1350.jpg")

    assert len(result.landmarks) == 33
    assert result.landmarks[lm.LEFT_WRIST].y == pytest.approx(0.20)
    assert result.confidence == pytest.approx(0.9)
    assert estimator.detected_paths == ["/tmp/work/frame_1350.jpg"]


def test_fake_estimator_failures_and_responder():
    responder_pose = [Landmark(x=0.1, y=0.2, visibility=0.4) for _ in range(33)]
    estimator = FakePoseEstimator(responder=lambda path: responder_pose, fail_timestamps=[450])
    estimator.initialize()

    with pytest.raises(PoseNotDetected):
        estimator.detect("/tmp/frame_450.jpg")
    assert estimator.detect("/tmp/frame_900.jpg").landmarks is responder_pose


def test_synthetic_swing_pose_hand_path():
    """Hands are highest at the top and lowest at impact."""
    heights = {p: synthetic_swing_pose(p)[lm.LEAD_WRIST].y for p in (0.0, 0.45, 0.78, 1.0)}
    assert heights[0.45] == min(heights.values())
    assert heights[0.78] == max(heights.values())


def test_timestamp_from_frame_path():
    assert timestamp_from_frame_path("/tmp/x/frame_2160.jpg") == 2160
    assert timestamp_from_frame_path("/tmp/x/overlay.png") is None


def test_average_visibility():
    assert average_visibility([]) == 0.0
    landmarks = [Landmark(x=0, y=0, visibility=0.5), Landmark(x=0, y=0, visibility=None)]
    assert average_visibility(landmarks) == pytest.approx(0.25)


@pytest.mark.parametrize(
    "engine,expected",
    [("mediapipe", MediaPipePoseEstimator), ("movenet", MoveNetPoseEstimator), ("fake", FakePoseEstimator)],
)
def test_create_pose_estimator(engine, expected):
    """Test that the engine is chosen by configuration name."""
    estimator = create_pose_estimator(Settings(pose_engine=engine))
    assert isinstance(estimator, expected)
    assert not estimator.initialized


def test_create_pose_estimator_unknown():
    with pytest.raises(ValueError):
        create_pose_estimator(Settings(pose_engine="openpose"))
