"""
Skeleton overlay rendering.

Draws the pose skeleton on a copy of a keyframe and writes it as a new PNG.
Low-confidence landmarks are left out entirely rather than drawn as noise.
"""
import logging
from typing import List, Optional
import cv2
import numpy as np
from swingcapture.core.errors import OverlayRenderError
from swingcapture.processing import landmarks as lm
from swingcapture.schemas.pose import Landmark

logger = logging.getLogger(__name__)

# Skeleton connections for 33 landmarks (MediaPipe Pose format)
POSE_CONNECTIONS = [
    # Face
    (lm.NOSE, lm.LEFT_EYE),
    (lm.NOSE, lm.RIGHT_EYE),
    (lm.LEFT_EYE, lm.LEFT_EAR),
    (lm.RIGHT_EYE, lm.RIGHT_EAR),
    # Torso
    (lm.LEFT_SHOULDER, lm.RIGHT_SHOULDER),
    (lm.LEFT_SHOULDER, lm.LEFT_HIP),
    (lm.RIGHT_SHOULDER, lm.RIGHT_HIP),
    (lm.LEFT_HIP, lm.RIGHT_HIP),
    # Left arm
    (lm.LEFT_SHOULDER, lm.LEFT_ELBOW),
    (lm.LEFT_ELBOW, lm.LEFT_WRIST),
    (lm.LEFT_WRIST, lm.LEFT_PINKY),
    (lm.LEFT_WRIST, lm.LEFT_INDEX),
    (lm.LEFT_WRIST, lm.LEFT_THUMB),
    # Right arm
    (lm.RIGHT_SHOULDER, lm.RIGHT_ELBOW),
    (lm.RIGHT_ELBOW, lm.RIGHT_WRIST),
    (lm.RIGHT_WRIST, lm.RIGHT_PINKY),
    (lm.RIGHT_WRIST, lm.RIGHT_INDEX),
    (lm.RIGHT_WRIST, lm.RIGHT_THUMB),
    # Left leg
    (lm.LEFT_HIP, lm.LEFT_KNEE),
    (lm.LEFT_KNEE, lm.LEFT_ANKLE),
    (lm.LEFT_ANKLE, lm.LEFT_HEEL),
    (lm.LEFT_ANKLE, lm.LEFT_FOOT_INDEX),
    # Right leg
    (lm.RIGHT_HIP, lm.RIGHT_KNEE),
    (lm.RIGHT_KNEE, lm.RIGHT_ANKLE),
    (lm.RIGHT_ANKLE, lm.RIGHT_HEEL),
    (lm.RIGHT_ANKLE, lm.RIGHT_FOOT_INDEX),
]

LINE_COLOR = (0, 255, 0)  # Green (BGR)
POINT_COLOR = (0, 0, 255)  # Red (BGR)
LINE_THICKNESS = 3
POINT_RADIUS = 4


def is_visible(landmark: Landmark, threshold: float = 0.5) -> bool:
    """Landmarks without a visibility score are treated as visible."""
    return landmark.visibility is None or landmark.visibility >= threshold


def draw_pose_overlay(
    image: np.ndarray,
    landmarks: List[Landmark],
    visibility_threshold: float = 0.5,
) -> np.ndarray:
    """
    Draw skeleton lines and landmark points on a copy of an image.

    Args:
        image: HxWx3 uint8 image (BGR, as loaded by OpenCV)
        landmarks: 33 landmarks with normalized coordinates
        visibility_threshold: Landmarks below this visibility are skipped,
            together with every segment touching them

    Returns:
        Annotated copy of the image; the input array is not modified
    """
    out = image.copy()
    h, w = out.shape[:2]

    def to_pixel(landmark: Landmark):
        return int(round(landmark.x * w)), int(round(landmark.y * h))

    for start_idx, end_idx in POSE_CONNECTIONS:
        if start_idx >= len(landmarks) or end_idx >= len(landmarks):
            continue
        start, end = landmarks[start_idx], landmarks[end_idx]
        if not (is_visible(start, visibility_threshold) and is_visible(end, visibility_threshold)):
            continue
        cv2.line(out, to_pixel(start), to_pixel(end), LINE_COLOR, LINE_THICKNESS, lineType=cv2.LINE_AA)

    for landmark in landmarks:
        if not is_visible(landmark, visibility_threshold):
            continue
        cv2.circle(out, to_pixel(landmark), POINT_RADIUS, POINT_COLOR, -1, lineType=cv2.LINE_AA)

    return out


def render_pose_overlay(
    image_path: str,
    landmarks: List[Landmark],
    output_path: str,
    visibility_threshold: float = 0.5,
) -> str:
    """
    Render a skeleton overlay for a keyframe into a new PNG file.

    Raises:
        OverlayRenderError: if the keyframe cannot be read or the PNG cannot be written
    """
    image: Optional[np.ndarray] = cv2.imread(image_path, cv2.IMREAD_COLOR)
    if image is None:
        raise OverlayRenderError(f"Failed to load image for overlay rendering: {image_path}")

    annotated = draw_pose_overlay(image, landmarks, visibility_threshold)

    try:
        written = cv2.imwrite(output_path, annotated)
    except cv2.error as e:
        raise OverlayRenderError(f"Failed to write overlay image {output_path}: {e}") from e
    if not written:
        raise OverlayRenderError(f"Failed to write overlay image: {output_path}")

    logger.debug(f"Rendered overlay {output_path}")
    return output_path
