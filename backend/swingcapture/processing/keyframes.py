"""
Keyframe sampling and extraction.

Phase boundaries are unknown until poses have been extracted, so sampling
uses fixed proportions of the clip length tuned to typical golf swing timing
rather than any feedback from the pose stage.
"""
import logging
import math
import os
import subprocess
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple
from PIL import Image
from swingcapture.core.errors import ExtractionError
from swingcapture.schemas.pose import Landmark

logger = logging.getLogger(__name__)

# Proportional timestamps (as fraction of total duration)
SWING_PHASE_PROPORTIONS = (
    0.05,  # address
    0.15,  # early backswing
    0.30,  # mid backswing
    0.45,  # top
    0.55,  # early downswing
    0.65,  # mid downswing
    0.72,  # late downswing
    0.78,  # impact zone
    0.85,  # early follow-through
    0.95,  # full follow-through
)

# Shortest clip for which the proportion table still yields distinct timestamps
MIN_DURATION_MS = 100


@dataclass
class Keyframe:
    """A still image sampled from the source video."""
    timestamp_ms: int
    path: str


@dataclass
class KeyframeData:
    """A keyframe that produced a pose, as it moves through the later stages."""
    timestamp_ms: int
    landmarks: List[Landmark]
    frame_path: str
    phase: str = "address"  # Placeholder until phase tagging runs
    overlay_path: Optional[str] = None


def swing_optimized_timestamps(duration_ms: int) -> List[int]:
    """
    Generate keyframe timestamps with denser sampling around the downswing and impact.

    Args:
        duration_ms: Total video duration in milliseconds

    Returns:
        10 strictly increasing millisecond offsets, each below duration_ms
    """
    if duration_ms < MIN_DURATION_MS:
        raise ValueError(f"Video too short for swing sampling: {duration_ms}ms (minimum {MIN_DURATION_MS}ms)")
    return [math.floor(duration_ms * p) for p in SWING_PHASE_PROPORTIONS]


def generate_keyframe_timestamps(duration_ms: int, target_frame_count: int = 10) -> List[int]:
    """
    Generate evenly spaced keyframe timestamps.

    The frame count is capped so consecutive frames are at least 100ms apart.
    """
    if duration_ms < MIN_DURATION_MS:
        raise ValueError(f"Video too short for keyframe sampling: {duration_ms}ms (minimum {MIN_DURATION_MS}ms)")
    safe_frame_count = min(target_frame_count, duration_ms // 100)
    interval = duration_ms / (safe_frame_count + 1)
    return [math.floor(interval * i) for i in range(1, safe_frame_count + 1)]


def get_video_duration_ms(video_path: str) -> Optional[int]:
    """Get video duration in milliseconds using ffprobe."""
    try:
        result = subprocess.run(
            [
                "ffprobe",
                "-v",
                "error",
                "-show_entries",
                "format=duration",
                "-of",
                "default=noprint_wrappers=1:nokey=1",
                video_path,
            ],
            capture_output=True,
            text=True,
            check=True,
        )
        return int(math.floor(float(result.stdout.strip()) * 1000))
    except (subprocess.CalledProcessError, ValueError, OSError) as e:
        logger.error(f"Failed to get video duration: {e}")
        return None


def probe_duration_ms(video_path: str, default_ms: int = 2500) -> int:
    """Probe the video duration, falling back to a typical swing length."""
    duration_ms = get_video_duration_ms(video_path)
    if not duration_ms or duration_ms <= 0:
        logger.warning(f"Could not get video duration for {video_path}, using default {default_ms}ms")
        return default_ms
    return duration_ms


def extract_single_frame(video_path: str, timestamp: float, output_path: str) -> bool:
    """Extract a single frame at the given timestamp (seconds) using ffmpeg."""
    try:
        subprocess.run(
            [
                "ffmpeg",
                "-ss",  # Input seek, before -i
                str(timestamp),
                "-i",
                video_path,
                "-frames:v",
                "1",
                "-q:v",
                "2",  # High quality
                "-y",  # Overwrite output
                output_path,
            ],
            capture_output=True,
            check=True,
        )
        return os.path.exists(output_path)
    except subprocess.CalledProcessError as e:
        logger.error(f"ffmpeg error: {e.stderr.decode() if e.stderr else str(e)}")
        return False
    except OSError as e:
        logger.error(f"Failed to run ffmpeg: {e}")
        return False


def extract_keyframes(
    video_path: str,
    timestamps: List[int],
    output_dir: str,
    track: Optional[Callable[[str], None]] = None,
) -> List[Keyframe]:
    """
    Extract one still JPEG per timestamp.

    A missing keyframe would shift the phase bucketing downstream, so the
    first failure aborts the whole extraction.

    Args:
        video_path: Local path to the recorded video
        timestamps: Millisecond offsets, in order
        output_dir: Directory the JPEG files are written to
        track: Called with every output path before it is written, so the
            caller can clean up partial output

    Returns:
        Keyframes in the same order as timestamps

    Raises:
        ExtractionError: naming the first timestamp that could not be extracted
    """
    keyframes = []
    for timestamp_ms in timestamps:
        frame_path = os.path.join(output_dir, f"frame_{timestamp_ms}.jpg")
        if track is not None:
            track(frame_path)
        if not extract_single_frame(video_path, timestamp_ms / 1000.0, frame_path):
            raise ExtractionError(timestamp_ms, "ffmpeg did not produce a frame")
        keyframes.append(Keyframe(timestamp_ms=timestamp_ms, path=frame_path))
        logger.debug(f"Extracted keyframe at {timestamp_ms}ms -> {frame_path}")

    logger.info(f"Extracted {len(keyframes)} keyframes from {video_path}")
    return keyframes


def get_image_dimensions(image_path: str) -> Tuple[int, int]:
    """Return (width, height) of an image file."""
    with Image.open(image_path) as img:
        return img.size
