"""
Heuristic swing phase tagging.

Deterministic, not ML: phases are bucketed around the frames where the lead
hand is highest (top) and lowest after the top (impact). Image y grows
downward, so the highest hand has the smallest y.
"""
import logging
from typing import List, Sequence
from swingcapture.processing.landmarks import LEAD_WRIST

logger = logging.getLogger(__name__)


def _clamp(idx: int, length: int) -> int:
    return min(max(idx, 0), length - 1)


def tag_swing_phases(keyframes: Sequence) -> List[str]:
    """
    Label every keyframe with a swing phase.

    Args:
        keyframes: Frames ordered by timestamp, each with a ``landmarks`` list

    Returns:
        One phase per input frame, in the same order
    """
    if not keyframes:
        return []

    n = len(keyframes)
    hand_heights = [kf.landmarks[LEAD_WRIST].y for kf in keyframes]

    address_idx = 0
    # list.index returns the first occurrence, which is the tie-break we want
    top_idx = _clamp(hand_heights.index(min(hand_heights)), n)
    after_top = hand_heights[top_idx:]
    impact_idx = _clamp(top_idx + after_top.index(max(after_top)), n)

    backswing_start = address_idx + (top_idx - address_idx) // 2
    downswing_start = top_idx + (impact_idx - top_idx) // 2

    phases = []
    for i in range(n):
        if i == address_idx:
            phases.append("address")
        elif i < top_idx:
            phases.append("takeaway" if i < backswing_start else "backswing")
        elif i == top_idx:
            phases.append("top")
        elif i < impact_idx:
            phases.append("transition" if i < downswing_start else "downswing")
        elif i == impact_idx:
            phases.append("impact")
        else:
            phases.append("follow_through")

    logger.debug(f"Tagged {n} frames: top={top_idx}, impact={impact_idx}, phases={phases}")
    return phases
