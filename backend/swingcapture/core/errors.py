"""Exception types raised by the swing capture pipeline."""
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from swingcapture.processing.coordinator import PipelineReport


class CaptureError(Exception):
    """Base class for pipeline failures.

    The coordinator fills in ``stage`` and ``report`` before re-raising so
    callers can see where the pipeline stopped and what had already happened.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.stage: Optional[str] = None
        self.report: Optional["PipelineReport"] = None


class CoordinatorNotInitializedError(CaptureError):
    pass


class PoseEngineError(CaptureError):
    """Pose engine could not be loaded or was used before initialization."""


class PoseNotDetected(CaptureError):
    """No person was found in a single frame."""


class ExtractionError(CaptureError):
    def __init__(self, timestamp_ms: int, reason: str = ""):
        message = f"Keyframe extraction failed at {timestamp_ms}ms"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.timestamp_ms = timestamp_ms


class NoPosesDetectedError(CaptureError):
    def __init__(self, message: str = "No poses detected in video. Please ensure the golfer is visible."):
        super().__init__(message)


class MissingPhaseError(CaptureError):
    def __init__(self, message: str = "Missing critical swing phases (address, top)"):
        super().__init__(message)


class OverlayRenderError(CaptureError):
    pass


class UploadError(CaptureError):
    def __init__(self, bucket: str, path: str, reason: str = ""):
        message = f"Storage upload failed for {bucket}/{path}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.bucket = bucket
        self.path = path


class MissingArtifactError(CaptureError):
    def __init__(self, timestamp_ms: int):
        super().__init__(f"No uploaded frame found for timestamp {timestamp_ms}ms")
        self.timestamp_ms = timestamp_ms


class CaptureRecordError(CaptureError):
    pass


class FrameInsertError(CaptureError):
    pass


class AnalysisTriggerError(CaptureError):
    pass
