"""
Pose estimation engines.

The pose model is consumed as a black box behind one interface:
initialize() loads the model at most once, detect() returns the 33 landmarks
for a single person in a still image, dispose() releases the model. The
concrete engine is chosen from configuration by create_pose_estimator().

Engines:
- mediapipe: MediaPipe Tasks PoseLandmarker, the native 33-landmark model
- movenet: MoveNet single-pose from TensorFlow Hub (the web model family);
  its 17 COCO keypoints are spread onto the 33-landmark layout
- fake: deterministic test double
"""
import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional
import numpy as np
from PIL import Image
from swingcapture.core.config import Settings, settings as default_settings
from swingcapture.core.errors import PoseEngineError, PoseNotDetected
from swingcapture.processing import landmarks as lm
from swingcapture.schemas.pose import Landmark

logger = logging.getLogger(__name__)


@dataclass
class PoseDetectionResult:
    landmarks: List[Landmark]
    confidence: float  # Mean landmark visibility


def average_visibility(landmarks: List[Landmark]) -> float:
    if not landmarks:
        return 0.0
    return sum(l.visibility or 0.0 for l in landmarks) / len(landmarks)


class PoseEstimator(ABC):
    """
    Stateful single-person pose engine.

    Calls are serialized with an internal lock: the underlying engines keep
    per-instance state and must not be entered from several threads at once.
    """

    extractor_name = "unknown"

    def __init__(self):
        self._initialized = False
        self._lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """Load the model. Safe to call repeatedly; only the first call loads."""
        with self._lock:
            if self._initialized:
                return
            try:
                self._load()
            except PoseEngineError:
                raise
            except Exception as e:
                logger.error(f"Failed to initialize {self.extractor_name} pose engine: {e}", exc_info=True)
                raise PoseEngineError(f"Pose engine initialization failed: {e}") from e
            self._initialized = True
            logger.info(f"Pose engine initialized: {self.extractor_name}")

    def detect(self, image_path: str) -> PoseDetectionResult:
        """
        Detect the 33 pose landmarks in a still image.

        Raises:
            PoseEngineError: if called before initialize()
            PoseNotDetected: if no person is found in the image
        """
        with self._lock:
            if not self._initialized:
                raise PoseEngineError("Pose engine not initialized. Call initialize() first.")
            landmarks = self._detect(image_path)
        return PoseDetectionResult(landmarks=landmarks, confidence=average_visibility(landmarks))

    def dispose(self) -> None:
        with self._lock:
            if not self._initialized:
                return
            try:
                self._release()
            finally:
                self._initialized = False
            logger.info(f"Pose engine disposed: {self.extractor_name}")

    @abstractmethod
    def _load(self) -> None:
        ...

    @abstractmethod
    def _detect(self, image_path: str) -> List[Landmark]:
        ...

    def _release(self) -> None:
        pass


class MediaPipePoseEstimator(PoseEstimator):
    extractor_name = "mediapipe-pose-landmarker"

    def __init__(
        self,
        model_path: str,
        min_detection_confidence: float = 0.5,
        min_presence_confidence: float = 0.5,
        min_tracking_confidence: float = 0.5,
    ):
        super().__init__()
        self.model_path = model_path
        self.min_detection_confidence = min_detection_confidence
        self.min_presence_confidence = min_presence_confidence
        self.min_tracking_confidence = min_tracking_confidence
        self._mp = None
        self._landmarker = None

    def _load(self) -> None:
        if not os.path.exists(self.model_path):
            raise PoseEngineError(f"Pose model file not found: {self.model_path}")

        import mediapipe as mp
        from mediapipe.tasks import python
        from mediapipe.tasks.python import vision

        options = vision.PoseLandmarkerOptions(
            base_options=python.BaseOptions(model_asset_path=self.model_path),
            running_mode=vision.RunningMode.IMAGE,
            num_poses=1,
            min_pose_detection_confidence=self.min_detection_confidence,
            min_pose_presence_confidence=self.min_presence_confidence,
            min_tracking_confidence=self.min_tracking_confidence,
        )
        logger.info(f"Loading MediaPipe pose landmarker from {self.model_path}")
        self._landmarker = vision.PoseLandmarker.create_from_options(options)
        self._mp = mp

    def _detect(self, image_path: str) -> List[Landmark]:
        try:
            mp_image = self._mp.Image.create_from_file(image_path)
        except (RuntimeError, OSError, ValueError) as e:
            raise PoseNotDetected(f"Failed to load image {image_path}: {e}") from e

        result = self._landmarker.detect(mp_image)
        if not result.pose_landmarks:
            raise PoseNotDetected(f"No pose detected in image {image_path}")

        # Only one pose is requested
        return [
            Landmark(
                x=float(p.x),
                y=float(p.y),
                z=float(p.z),
                visibility=float(p.visibility) if p.visibility is not None else None,
            )
            for p in result.pose_landmarks[0]
        ]

    def _release(self) -> None:
        if self._landmarker is not None:
            self._landmarker.close()
        self._landmarker = None


# MoveNet (COCO-17) keypoint feeding each of the 33 landmark slots.
# True correspondences keep the keypoint score; proxies get visibility 0.
MOVENET_TO_LANDMARK = (
    (0, True),    # nose
    (1, False),   # left eye inner
    (1, True),    # left eye
    (1, False),   # left eye outer
    (2, False),   # right eye inner
    (2, True),    # right eye
    (2, False),   # right eye outer
    (3, True),    # left ear
    (4, True),    # right ear
    (0, False),   # mouth left
    (0, False),   # mouth right
    (5, True),    # left shoulder
    (6, True),    # right shoulder
    (7, True),    # left elbow
    (8, True),    # right elbow
    (9, True),    # left wrist
    (10, True),   # right wrist
    (9, False),   # left pinky
    (10, False),  # right pinky
    (9, False),   # left index
    (10, False),  # right index
    (9, False),   # left thumb
    (10, False),  # right thumb
    (11, True),   # left hip
    (12, True),   # right hip
    (13, True),   # left knee
    (14, True),   # right knee
    (15, True),   # left ankle
    (16, True),   # right ankle
    (15, False),  # left heel
    (16, False),  # right heel
    (15, False),  # left foot index
    (16, False),  # right foot index
)

MOVENET_MODELS = {
    "movenet_lightning": ("https://tfhub.dev/google/movenet/singlepose/lightning/4", 192),
    "movenet_thunder": ("https://tfhub.dev/google/movenet/singlepose/thunder/4", 256),
}


def movenet_to_landmarks(
    keypoints: np.ndarray,
    image_height: int,
    image_width: int,
    min_score: float = 0.11,
) -> List[Landmark]:
    """
    Convert a MoveNet [1, 1, 17, 3] (y, x, score) output into 33 landmarks.

    MoveNet sees the frame letterboxed into a square, so coordinates are
    mapped back from the padded square onto the original image.

    Raises:
        PoseNotDetected: if no keypoint clears min_score
    """
    kpts = np.asarray(keypoints, dtype=np.float64).reshape(17, 3)
    if float(kpts[:, 2].max()) < min_score:
        raise PoseNotDetected("No keypoint above the MoveNet confidence threshold")

    longest = float(max(image_height, image_width))
    h_frac = image_height / longest
    w_frac = image_width / longest
    ys = (kpts[:, 0] - (1.0 - h_frac) / 2.0) / h_frac
    xs = (kpts[:, 1] - (1.0 - w_frac) / 2.0) / w_frac

    result = []
    for source, exact in MOVENET_TO_LANDMARK:
        result.append(
            Landmark(
                x=float(xs[source]),
                y=float(ys[source]),
                z=0.0,
                visibility=float(kpts[source, 2]) if exact else 0.0,
            )
        )
    return result


class MoveNetPoseEstimator(PoseEstimator):
    extractor_name = "movenet-singlepose"

    def __init__(self, model_name: str = "movenet_thunder", input_size: Optional[int] = None):
        super().__init__()
        if model_name not in MOVENET_MODELS:
            raise ValueError(f"Unsupported model name: {model_name}")
        self.model_name = model_name
        self.model_url, default_size = MOVENET_MODELS[model_name]
        self.input_size = input_size or default_size
        self._tf = None
        self._movenet = None

    def _load(self) -> None:
        import tensorflow as tf
        import tensorflow_hub as hub

        logger.info(f"Loading MoveNet model: {self.model_name} from {self.model_url}")
        module = hub.load(self.model_url)
        self._movenet = module.signatures["serving_default"]
        self._tf = tf
        logger.info(f"MoveNet model loaded successfully. Input size: {self.input_size}x{self.input_size}")

    def _detect(self, image_path: str) -> List[Landmark]:
        tf = self._tf
        try:
            with Image.open(image_path) as img:
                image = np.array(img.convert("RGB"))
        except OSError as e:
            raise PoseNotDetected(f"Failed to load image {image_path}: {e}") from e

        height, width = image.shape[:2]
        image_tensor = tf.expand_dims(tf.constant(image), axis=0)
        image_tensor = tf.image.resize_with_pad(image_tensor, self.input_size, self.input_size)
        # SavedModel format expects tensor type of int32
        outputs = self._movenet(tf.cast(image_tensor, dtype=tf.int32))
        keypoints = outputs["output_0"].numpy()
        return movenet_to_landmarks(keypoints, height, width)

    def _release(self) -> None:
        self._movenet = None


_FRAME_TIMESTAMP = re.compile(r"frame_(\d+)")


def synthetic_swing_pose(progress: float, visibility: float = 0.9) -> List[Landmark]:
    """
    Build a plausible face-on swing pose for a point in the swing (0..1).

    The lead wrist starts low at address, is highest around 45% of the clip
    (top), lowest around 78% (impact) and rises again into the finish.
    """
    progress = min(max(progress, 0.0), 1.0)
    wrist_y = float(np.interp(progress, [0.0, 0.45, 0.78, 1.0], [0.70, 0.20, 0.75, 0.30]))
    wrist_x = float(np.interp(progress, [0.0, 0.45, 0.78, 1.0], [0.50, 0.38, 0.49, 0.62]))
    hip_shift = float(np.interp(progress, [0.0, 0.45, 1.0], [0.0, -0.02, 0.04]))
    turn = float(np.interp(progress, [0.0, 0.45, 0.78, 1.0], [0.0, 0.05, 0.01, 0.06]))

    points = [(0.5, 0.5, 0.0)] * lm.NUM_LANDMARKS
    points[lm.NOSE] = (0.5 + hip_shift / 2, 0.22, 0.0)
    points[lm.LEFT_EYE] = (0.52, 0.20, 0.0)
    points[lm.RIGHT_EYE] = (0.48, 0.20, 0.0)
    points[lm.LEFT_EAR] = (0.54, 0.21, 0.0)
    points[lm.RIGHT_EAR] = (0.46, 0.21, 0.0)
    points[lm.LEFT_SHOULDER] = (0.58 - turn, 0.32, 0.0)
    points[lm.RIGHT_SHOULDER] = (0.42 + turn, 0.32, 0.0)
    points[lm.LEFT_ELBOW] = ((0.58 + wrist_x) / 2, (0.32 + wrist_y) / 2, 0.0)
    points[lm.RIGHT_ELBOW] = ((0.42 + wrist_x) / 2, (0.32 + wrist_y) / 2, 0.0)
    points[lm.LEFT_WRIST] = (wrist_x, wrist_y, 0.0)
    points[lm.RIGHT_WRIST] = (wrist_x - 0.02, wrist_y + 0.01, 0.0)
    for idx in (lm.LEFT_PINKY, lm.LEFT_INDEX, lm.LEFT_THUMB):
        points[idx] = (wrist_x - 0.03, wrist_y + 0.03, 0.0)
    for idx in (lm.RIGHT_PINKY, lm.RIGHT_INDEX, lm.RIGHT_THUMB):
        points[idx] = (wrist_x - 0.05, wrist_y + 0.04, 0.0)
    points[lm.LEFT_HIP] = (0.55 + hip_shift, 0.55, 0.0)
    points[lm.RIGHT_HIP] = (0.45 + hip_shift, 0.55, 0.0)
    points[lm.LEFT_KNEE] = (0.57 + hip_shift / 2, 0.72, 0.0)
    points[lm.RIGHT_KNEE] = (0.43 + hip_shift / 2, 0.72, 0.0)
    points[lm.LEFT_ANKLE] = (0.58, 0.90, 0.0)
    points[lm.RIGHT_ANKLE] = (0.42, 0.90, 0.0)
    points[lm.LEFT_HEEL] = (0.57, 0.92, 0.0)
    points[lm.RIGHT_HEEL] = (0.43, 0.92, 0.0)
    points[lm.LEFT_FOOT_INDEX] = (0.61, 0.93, 0.0)
    points[lm.RIGHT_FOOT_INDEX] = (0.39, 0.93, 0.0)

    return [Landmark(x=x, y=y, z=z, visibility=visibility) for x, y, z in points]


def timestamp_from_frame_path(image_path: str) -> Optional[int]:
    """Recover the keyframe timestamp from an extracted frame's file name."""
    match = _FRAME_TIMESTAMP.search(os.path.basename(image_path))
    return int(match.group(1)) if match else None


class FakePoseEstimator(PoseEstimator):
    """
    Test double for the pose engine.

    By default returns synthetic_swing_pose() for the swing progress implied
    by the frame's timestamp over ``duration_ms``. Frames whose timestamp is in
    ``fail_timestamps`` raise PoseNotDetected.
    """

    extractor_name = "fake-pose"

    def __init__(
        self,
        responder: Optional[Callable[[str], List[Landmark]]] = None,
        fail_timestamps: Iterable[int] = (),
        duration_ms: int = 2500,
        fail_initialize: bool = False,
    ):
        super().__init__()
        self.responder = responder
        self.fail_timestamps = set(fail_timestamps)
        self.duration_ms = duration_ms
        self.fail_initialize = fail_initialize
        self.load_count = 0
        self.detected_paths: List[str] = []

    def _load(self) -> None:
        if self.fail_initialize:
            raise PoseEngineError("Fake pose engine configured to fail initialization")
        self.load_count += 1

    def _detect(self, image_path: str) -> List[Landmark]:
        self.detected_paths.append(image_path)
        timestamp_ms = timestamp_from_frame_path(image_path)
        if timestamp_ms is not None and timestamp_ms in self.fail_timestamps:
            raise PoseNotDetected(f"No pose detected in image {image_path}")
        if self.responder is not None:
            return self.responder(image_path)
        progress = (timestamp_ms or 0) / float(self.duration_ms)
        return synthetic_swing_pose(progress)


def create_pose_estimator(config: Optional[Settings] = None) -> PoseEstimator:
    """Build the pose engine named by the ``pose_engine`` setting."""
    config = config or default_settings
    engine = config.pose_engine.lower()
    if engine == "mediapipe":
        return MediaPipePoseEstimator(config.pose_model_path)
    if engine == "movenet":
        return MoveNetPoseEstimator(config.pose_model_name, config.pose_input_size)
    if engine == "fake":
        logger.warning("Using FakePoseEstimator; landmarks are synthetic")
        return FakePoseEstimator(duration_ms=config.default_duration_ms)
    raise ValueError(f"Unsupported pose engine: {config.pose_engine}")
