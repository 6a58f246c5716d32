"""
Swing capture pipeline.

Takes one recorded swing video from disk to stored artifacts: sample
keyframes, detect poses, tag phases, render overlays, compute metrics, then
persist the capture record, frame images and frame rows, and finally ask the
analysis function to pick the capture up.

Every stage either succeeds, degrades (some frames lost, work continues) or
fails the whole attempt. Each of those outcomes is recorded in a
PipelineReport that is returned with the result, or attached to the raised
CaptureError. Temporary files are always removed, whatever the outcome.
"""
import logging
import os
import shutil
import tempfile
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence
from swingcapture.core.config import Settings, settings as default_settings
from swingcapture.core.errors import (
    AnalysisTriggerError,
    CaptureError,
    CoordinatorNotInitializedError,
    ExtractionError,
    NoPosesDetectedError,
)
from swingcapture.processing.keyframes import (
    Keyframe,
    KeyframeData,
    extract_keyframes,
    get_image_dimensions,
    probe_duration_ms,
    swing_optimized_timestamps,
)
from swingcapture.processing.overlay import render_pose_overlay
from swingcapture.processing.phases import tag_swing_phases
from swingcapture.processing.pose_estimation import PoseEstimator, create_pose_estimator
from swingcapture.processing.swing_metrics import compute_pose_metrics, extract_key_landmarks
from swingcapture.schemas.pose import KeyframeSummary, PoseMetrics, PoseSummaryV1
from swingcapture.services.analysis import AnalysisTrigger
from swingcapture.services.capture_repository import CaptureRepository
from swingcapture.services.storage import ArtifactUploader

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float], None]

# Phases whose key landmarks are kept in the compact pose summary
SUMMARY_LANDMARK_PHASES = ("address", "top", "impact")


class CaptureStage(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    DURATION_PROBE = "duration_probe"
    KEYFRAME_EXTRACTION = "keyframe_extraction"
    POSE_DETECTION = "pose_detection"
    PHASE_TAGGING = "phase_tagging"
    OVERLAY_RENDERING = "overlay_rendering"
    METRICS_COMPUTATION = "metrics_computation"
    CAPTURE_RECORD_CREATION = "capture_record_creation"
    ARTIFACT_UPLOAD = "artifact_upload"
    FRAME_RECORD_INSERTION = "frame_record_insertion"
    ANALYSIS_TRIGGER = "analysis_trigger"
    CLEANUP = "cleanup"
    COMPLETE = "complete"
    FAILED = "failed"


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"
    FATAL = "fatal"


@dataclass
class StageOutcome:
    stage: CaptureStage
    status: OutcomeStatus
    detail: str = ""
    timestamp_ms: Optional[int] = None  # Set for per-frame outcomes

    def to_dict(self) -> dict:
        return {
            "stage": self.stage.value,
            "status": self.status.value,
            "detail": self.detail,
            "timestamp_ms": self.timestamp_ms,
        }


@dataclass
class PipelineReport:
    client_capture_id: str
    outcomes: List[StageOutcome] = field(default_factory=list)
    current_stage: CaptureStage = CaptureStage.IDLE  # Stage this run is in

    def record(
        self,
        stage: CaptureStage,
        status: OutcomeStatus,
        detail: str = "",
        timestamp_ms: Optional[int] = None,
    ) -> StageOutcome:
        outcome = StageOutcome(stage=stage, status=status, detail=detail, timestamp_ms=timestamp_ms)
        self.outcomes.append(outcome)
        return outcome

    def success(self, stage: CaptureStage, detail: str = "") -> StageOutcome:
        return self.record(stage, OutcomeStatus.SUCCESS, detail)

    def degraded(self, stage: CaptureStage, detail: str, timestamp_ms: Optional[int] = None) -> StageOutcome:
        return self.record(stage, OutcomeStatus.DEGRADED, detail, timestamp_ms)

    def fatal(self, stage: CaptureStage, detail: str) -> StageOutcome:
        return self.record(stage, OutcomeStatus.FATAL, detail)

    def for_stage(self, stage: CaptureStage) -> List[StageOutcome]:
        return [o for o in self.outcomes if o.stage == stage]

    @property
    def degraded_outcomes(self) -> List[StageOutcome]:
        return [o for o in self.outcomes if o.status == OutcomeStatus.DEGRADED]

    @property
    def failed_stage(self) -> Optional[CaptureStage]:
        fatal = [o for o in self.outcomes if o.status == OutcomeStatus.FATAL]
        return fatal[0].stage if fatal else None

    def to_dict(self) -> dict:
        return {
            "client_capture_id": self.client_capture_id,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


@dataclass
class CaptureConfig:
    generate_overlays: bool = True
    club: Optional[str] = None
    # Pass the key of an earlier attempt to retry it; None mints a new one
    client_capture_id: Optional[str] = None


@dataclass
class CaptureResult:
    capture_id: int
    client_capture_id: str
    pose_summary: PoseSummaryV1
    report: PipelineReport


class TempFileTracker:
    """Owns the per-capture temp directory and every file written into it."""

    def __init__(self, root_dir: Optional[str] = None):
        if root_dir:
            os.makedirs(root_dir, exist_ok=True)
        self.directory = tempfile.mkdtemp(prefix="swing_capture_", dir=root_dir or None)
        self._paths: List[str] = []
        self._lock = threading.Lock()

    @property
    def paths(self) -> List[str]:
        with self._lock:
            return list(self._paths)

    def track(self, path: str) -> None:
        with self._lock:
            self._paths.append(path)

    def path_for(self, filename: str) -> str:
        path = os.path.join(self.directory, filename)
        self.track(path)
        return path

    def cleanup(self, report: Optional[PipelineReport] = None) -> List[str]:
        """
        Delete every tracked file and the temp directory.

        Failures are logged and reported as degraded, never raised.

        Returns:
            Paths that could not be deleted
        """
        failed = []
        for path in self.paths:
            try:
                if os.path.exists(path):
                    os.remove(path)
            except OSError as e:
                logger.warning(f"Failed to delete temp file {path}: {e}")
                failed.append(path)
                if report is not None:
                    report.degraded(CaptureStage.CLEANUP, f"Failed to delete {path}: {e}")
        try:
            shutil.rmtree(self.directory)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove temp directory {self.directory}: {e}")
            failed.append(self.directory)
            if report is not None:
                report.degraded(CaptureStage.CLEANUP, f"Failed to remove {self.directory}: {e}")
        logger.debug(f"Cleaned up {len(self._paths)} temp files in {self.directory}")
        return failed


def build_pose_summary(
    keyframes: Sequence[KeyframeData],
    metrics: PoseMetrics,
    total_frames: int,
    duration_ms: int,
    extractor: str,
) -> PoseSummaryV1:
    """Compact summary for the capture row: phases and metrics, landmarks only for key phases."""
    key_landmarks = {}
    for phase in SUMMARY_LANDMARK_PHASES:
        frame = next((kf for kf in keyframes if kf.phase == phase), None)
        if frame is not None:
            key_landmarks[phase] = extract_key_landmarks(frame.landmarks)

    return PoseSummaryV1(
        extractor=extractor,
        captured_at=datetime.now(timezone.utc).isoformat(),
        total_frames=total_frames,
        keyframe_count=len(keyframes),
        duration_ms=duration_ms,
        metrics=metrics,
        keyframes=[
            KeyframeSummary(timestamp_ms=kf.timestamp_ms, phase=kf.phase, has_overlay=kf.overlay_path is not None)
            for kf in keyframes
        ],
        key_landmarks=key_landmarks or None,
    )


class CaptureCoordinator:
    """
    Runs the capture pipeline with one pose engine and one set of collaborators.

    The caller owns the instance: call initialize() once before processing and
    dispose() when done. Several captures may run on one coordinator at once;
    each run tracks its own stage on its PipelineReport, and ``stage`` only
    reflects the coordinator lifecycle.
    """

    def __init__(
        self,
        pose_estimator: Optional[PoseEstimator] = None,
        uploader: Optional[ArtifactUploader] = None,
        repository: Optional[CaptureRepository] = None,
        analysis_trigger: Optional[AnalysisTrigger] = None,
        config: Optional[Settings] = None,
    ):
        self.settings = config or default_settings
        if pose_estimator is None:
            pose_estimator = create_pose_estimator(self.settings)
        if uploader is None:
            uploader = ArtifactUploader(config=self.settings)
        if repository is None:
            repository = CaptureRepository()
        if analysis_trigger is None:
            analysis_trigger = AnalysisTrigger(config=self.settings)

        self.pose_estimator = pose_estimator
        self.uploader = uploader
        self.repository = repository
        self.analysis_trigger = analysis_trigger
        self.stage = CaptureStage.IDLE
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """Load the pose engine. Raises PoseEngineError if it cannot be loaded."""
        if self._initialized:
            return
        self.stage = CaptureStage.INITIALIZING
        try:
            self.pose_estimator.initialize()
        except CaptureError:
            self.stage = CaptureStage.FAILED
            raise
        self._initialized = True
        self.stage = CaptureStage.IDLE
        logger.info("Capture coordinator initialized")

    def dispose(self) -> None:
        self.pose_estimator.dispose()
        self._initialized = False
        self.stage = CaptureStage.IDLE
        logger.info("Capture coordinator disposed")

    def _progress(self, on_progress: Optional[ProgressCallback], stage_name: str, fraction: float) -> None:
        if on_progress is None:
            return
        try:
            on_progress(stage_name, fraction)
        except Exception as e:
            logger.warning(f"Progress callback failed at '{stage_name}': {e}")

    def _enter(self, report: PipelineReport, stage: CaptureStage) -> None:
        report.current_stage = stage
        logger.debug(f"Capture {report.client_capture_id} stage: {stage.value}")

    def process_swing_capture(
        self,
        video_path: str,
        duration_ms: Optional[int],
        user_id: str,
        config: Optional[CaptureConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> CaptureResult:
        """
        Process one recorded swing.

        Args:
            video_path: Local path to the video file
            duration_ms: Known video duration; probed from the file when None
            user_id: Owner of the capture
            config: Per-capture options
            on_progress: Called with (stage name, fraction 0..1) as the pipeline advances

        Returns:
            CaptureResult with the capture id, idempotency key, pose summary and report

        Raises:
            CoordinatorNotInitializedError: if initialize() has not been called
            CaptureError: the typed failure of the stage that stopped the
                pipeline, with ``stage`` and ``report`` filled in
        """
        if not self._initialized:
            raise CoordinatorNotInitializedError("Capture coordinator not initialized. Call initialize() first.")

        if config is None:
            config = CaptureConfig(generate_overlays=self.settings.generate_overlays)
        client_capture_id = config.client_capture_id or str(uuid.uuid4())
        report = PipelineReport(client_capture_id=client_capture_id)
        tracker = TempFileTracker(self.settings.temp_dir or None)
        failed = False
        logger.info(f"Processing swing capture {client_capture_id} for user {user_id}: {video_path}")

        try:
            self._enter(report, CaptureStage.DURATION_PROBE)
            self._progress(on_progress, "Analyzing video", 0.05)
            if not duration_ms or duration_ms <= 0:
                duration_ms = probe_duration_ms(video_path, self.settings.default_duration_ms)
            try:
                timestamps = swing_optimized_timestamps(duration_ms)
            except ValueError as e:
                raise ExtractionError(0, str(e)) from e
            report.success(CaptureStage.DURATION_PROBE, f"{duration_ms}ms")

            self._enter(report, CaptureStage.KEYFRAME_EXTRACTION)
            self._progress(on_progress, "Extracting keyframes", 0.1)
            keyframes = extract_keyframes(video_path, timestamps, tracker.directory, track=tracker.track)
            width, height = get_image_dimensions(keyframes[0].path)
            report.success(CaptureStage.KEYFRAME_EXTRACTION, f"{len(keyframes)} keyframes at {width}x{height}")

            self._enter(report, CaptureStage.POSE_DETECTION)
            self._progress(on_progress, "Detecting pose", 0.3)
            frames = self._detect_poses(keyframes, report, on_progress)
            if not frames:
                raise NoPosesDetectedError()
            report.success(CaptureStage.POSE_DETECTION, f"{len(frames)}/{len(keyframes)} frames with pose")

            self._enter(report, CaptureStage.PHASE_TAGGING)
            self._progress(on_progress, "Analyzing swing phases", 0.6)
            for frame, phase in zip(frames, tag_swing_phases(frames)):
                frame.phase = phase
            report.success(CaptureStage.PHASE_TAGGING)

            if config.generate_overlays:
                self._enter(report, CaptureStage.OVERLAY_RENDERING)
                self._progress(on_progress, "Rendering overlays", 0.65)
                rendered = self._render_overlays(frames, tracker, report, on_progress)
                report.success(CaptureStage.OVERLAY_RENDERING, f"{rendered}/{len(frames)} overlays")

            self._enter(report, CaptureStage.METRICS_COMPUTATION)
            self._progress(on_progress, "Calculating metrics", 0.75)
            metrics = compute_pose_metrics(frames)
            pose_summary = build_pose_summary(
                frames,
                metrics,
                total_frames=len(keyframes),
                duration_ms=duration_ms,
                extractor=self.pose_estimator.extractor_name,
            )
            report.success(CaptureStage.METRICS_COMPUTATION)

            self._enter(report, CaptureStage.CAPTURE_RECORD_CREATION)
            self._progress(on_progress, "Creating capture record", 0.77)
            capture_id = self.repository.create_or_get_capture(
                user_id, client_capture_id, pose_summary, club=config.club
            )
            report.success(CaptureStage.CAPTURE_RECORD_CREATION, f"capture {capture_id}")

            self._enter(report, CaptureStage.ARTIFACT_UPLOAD)
            self._progress(on_progress, "Uploading frames", 0.8)
            uploaded = self.uploader.upload_capture_artifacts(
                user_id,
                client_capture_id,
                frames=[(f.timestamp_ms, f.frame_path) for f in frames],
                overlays=[(f.timestamp_ms, f.overlay_path) for f in frames if f.overlay_path],
                max_workers=self.settings.max_upload_workers,
            )
            reused = sum(1 for a in uploaded.frame_paths + uploaded.overlay_paths if a.already_existed)
            report.success(
                CaptureStage.ARTIFACT_UPLOAD,
                f"{len(uploaded.frame_paths)} frames, {len(uploaded.overlay_paths)} overlays, {reused} already stored",
            )

            self._enter(report, CaptureStage.FRAME_RECORD_INSERTION)
            self._progress(on_progress, "Saving frame data", 0.9)
            inserted = self.repository.insert_frames(capture_id, frames, uploaded)
            report.success(CaptureStage.FRAME_RECORD_INSERTION, f"{inserted} rows")

            self._enter(report, CaptureStage.ANALYSIS_TRIGGER)
            self._progress(on_progress, "Starting AI analysis", 0.95)
            try:
                if self.analysis_trigger.trigger(capture_id):
                    report.success(CaptureStage.ANALYSIS_TRIGGER)
                else:
                    report.success(CaptureStage.ANALYSIS_TRIGGER, "skipped, analysis URL not configured")
            except AnalysisTriggerError as e:
                logger.warning(f"Analysis trigger failed for capture {capture_id}, continuing: {e}")
                report.degraded(CaptureStage.ANALYSIS_TRIGGER, e.message)

            result = CaptureResult(
                capture_id=capture_id,
                client_capture_id=client_capture_id,
                pose_summary=pose_summary,
                report=report,
            )
        except CaptureError as e:
            failed = True
            self._fail(e, report)
            raise
        except Exception as e:
            failed = True
            logger.error(f"Unexpected error in stage {report.current_stage.value}: {e}", exc_info=True)
            error = CaptureError(f"Swing capture failed during {report.current_stage.value}: {e}")
            self._fail(error, report)
            raise error from e
        finally:
            self._enter(report, CaptureStage.CLEANUP)
            self._progress(on_progress, "Cleaning up", 0.98)
            tracker.cleanup(report)
            if failed:
                report.current_stage = CaptureStage.FAILED

        self._enter(report, CaptureStage.COMPLETE)
        self._progress(on_progress, "Complete", 1.0)
        logger.info(
            f"Swing capture {client_capture_id} complete: capture {result.capture_id}, "
            f"{len(report.degraded_outcomes)} degraded outcomes"
        )
        return result

    def _fail(self, error: CaptureError, report: PipelineReport) -> None:
        stage = report.current_stage
        error.stage = stage.value
        error.report = report
        report.fatal(stage, error.message)
        logger.error(f"Swing capture {report.client_capture_id} failed at {stage.value}: {error.message}")

    def _detect_poses(
        self,
        keyframes: List[Keyframe],
        report: PipelineReport,
        on_progress: Optional[ProgressCallback],
    ) -> List[KeyframeData]:
        """Run pose detection on every keyframe; frames without a pose are dropped."""
        detected: Dict[int, KeyframeData] = {}
        total = len(keyframes)
        done = 0
        workers = max(1, self.settings.max_frame_workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pose") as pool:
            futures = {pool.submit(self.pose_estimator.detect, kf.path): kf for kf in keyframes}
            for future in as_completed(futures):
                keyframe = futures[future]
                done += 1
                try:
                    result = future.result()
                    detected[keyframe.timestamp_ms] = KeyframeData(
                        timestamp_ms=keyframe.timestamp_ms,
                        landmarks=result.landmarks,
                        frame_path=keyframe.path,
                    )
                except Exception as e:
                    logger.warning(f"Pose detection failed for frame at {keyframe.timestamp_ms}ms: {e}")
                    report.degraded(CaptureStage.POSE_DETECTION, str(e), timestamp_ms=keyframe.timestamp_ms)
                self._progress(on_progress, "Detecting pose", 0.3 + 0.3 * done / total)

        logger.info(f"Detected poses in {len(detected)}/{total} keyframes")
        return [detected[t] for t in sorted(detected)]

    def _render_overlays(
        self,
        frames: List[KeyframeData],
        tracker: TempFileTracker,
        report: PipelineReport,
        on_progress: Optional[ProgressCallback],
    ) -> int:
        """Render an overlay PNG per frame; failures leave that frame without an overlay."""
        total = len(frames)
        done = 0
        rendered = 0
        threshold = self.settings.overlay_visibility_threshold
        workers = max(1, self.settings.max_frame_workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="overlay") as pool:
            futures = {}
            for frame in frames:
                output_path = tracker.path_for(f"overlay_{frame.timestamp_ms}.png")
                future = pool.submit(render_pose_overlay, frame.frame_path, frame.landmarks, output_path, threshold)
                futures[future] = frame
            for future in as_completed(futures):
                frame = futures[future]
                done += 1
                try:
                    frame.overlay_path = future.result()
                    rendered += 1
                except Exception as e:
                    logger.warning(f"Overlay rendering failed for frame at {frame.timestamp_ms}ms: {e}")
                    report.degraded(CaptureStage.OVERLAY_RENDERING, str(e), timestamp_ms=frame.timestamp_ms)
                self._progress(on_progress, "Rendering overlays", 0.65 + 0.1 * done / total)

        logger.info(f"Rendered {rendered}/{total} overlays")
        return rendered
