import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Set, Union
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from swingcapture.core.config import settings
from swingcapture.core.errors import CaptureRecordError, FrameInsertError, MissingArtifactError
from swingcapture.core.retry import retry_on_timeout
from swingcapture.models.capture import SwingCapture
from swingcapture.models.frame import SwingFrame
from swingcapture.processing.swing_metrics import compute_frame_metrics
from swingcapture.schemas.pose import PoseSummaryV1, SwingFrameArtifactV1
from swingcapture.services.storage import UploadedArtifact, UploadedArtifacts

logger = logging.getLogger(__name__)


def _find_by_timestamp(artifacts: Sequence[UploadedArtifact], timestamp_ms: int) -> Optional[UploadedArtifact]:
    return next((a for a in artifacts if a.timestamp_ms == timestamp_ms), None)


class CaptureRepository:
    """
    Idempotent persistence for swing captures and their frames.

    Every call opens and closes its own session, so one repository can be
    shared by request handlers running on different threads.
    """

    def __init__(self, session_factory=None, retry_attempts: Optional[int] = None):
        if session_factory is None:
            from swingcapture.core.db import get_session_local
            session_factory = get_session_local()
        self._session_factory = session_factory
        self._retry_attempts = retry_attempts or settings.network_retry_attempts

    @staticmethod
    def _find_capture_id(db: Session, user_id: str, client_capture_id: str) -> Optional[int]:
        row = (
            db.query(SwingCapture.id)
            .filter(SwingCapture.user_id == user_id)
            .filter(SwingCapture.client_capture_id == client_capture_id)
            .first()
        )
        return row[0] if row else None

    def create_or_get_capture(
        self,
        user_id: str,
        client_capture_id: str,
        pose_summary: Union[PoseSummaryV1, dict],
        club: Optional[str] = None,
    ) -> int:
        """
        Insert the swing_capture row for an idempotency key, or return the existing one.

        If a concurrent attempt inserts the same (user_id, client_capture_id)
        first, the unique constraint rejects ours and the winner's id is returned.

        Raises:
            CaptureRecordError: if the row can neither be inserted nor read back
        """
        if isinstance(pose_summary, PoseSummaryV1):
            pose_summary = pose_summary.model_dump(mode="json")
        try:
            return retry_on_timeout(
                lambda: self._create_or_get(user_id, client_capture_id, pose_summary, club),
                (OperationalError,),
                attempts=self._retry_attempts,
                description="swing_capture insert",
            )
        except OperationalError as e:
            raise CaptureRecordError(f"Failed to insert swing_capture: {e}") from e

    def _create_or_get(self, user_id: str, client_capture_id: str, pose_summary: dict, club: Optional[str]) -> int:
        db = self._session_factory()
        try:
            existing_id = self._find_capture_id(db, user_id, client_capture_id)
            if existing_id is not None:
                logger.info(
                    f"Capture already exists with client_capture_id {client_capture_id}, "
                    f"returning existing ID {existing_id}"
                )
                return existing_id

            capture = SwingCapture(
                user_id=user_id,
                client_capture_id=client_capture_id,
                status="uploaded",
                pose_summary=pose_summary,
                club=club,
                captured_at=datetime.now(timezone.utc),
            )
            db.add(capture)
            try:
                db.commit()
            except IntegrityError:
                # Lost the race to a concurrent insert with the same key
                db.rollback()
                existing_id = self._find_capture_id(db, user_id, client_capture_id)
                if existing_id is None:
                    raise CaptureRecordError("Failed to fetch existing capture after conflict")
                logger.info(f"Capture insert raced for {client_capture_id}, using existing ID {existing_id}")
                return existing_id

            capture_id = capture.id
            logger.info(f"Capture record created: {capture_id} (client_capture_id {client_capture_id})")
            return capture_id
        except OperationalError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error creating capture: {e}", exc_info=True)
            raise CaptureRecordError(f"Failed to insert swing_capture: {e}") from e
        finally:
            db.close()

    def insert_frames(self, capture_id: int, keyframes: Sequence, uploaded_artifacts: UploadedArtifacts) -> int:
        """
        Insert one swing_frame row per keyframe.

        Every keyframe must have an uploaded frame image with the same
        timestamp. Rows already stored for the capture by an earlier attempt
        are skipped, so the call is safe to repeat. A concurrent attempt that
        stores some of the same timestamps first is caught by the
        (capture_id, t_ms) unique constraint and its rows are kept.

        Returns:
            Number of rows inserted

        Raises:
            MissingArtifactError: if a keyframe has no uploaded frame image
            FrameInsertError: if the batch insert fails
        """
        rows = []
        for index, keyframe in enumerate(keyframes):
            frame_artifact = _find_by_timestamp(uploaded_artifacts.frame_paths, keyframe.timestamp_ms)
            if frame_artifact is None:
                raise MissingArtifactError(keyframe.timestamp_ms)
            overlay_artifact = _find_by_timestamp(uploaded_artifacts.overlay_paths, keyframe.timestamp_ms)

            pose_data = SwingFrameArtifactV1(
                timestamp_ms=keyframe.timestamp_ms,
                phase=keyframe.phase,
                landmarks=keyframe.landmarks,
                frame_metrics=compute_frame_metrics(keyframe.landmarks),
            )
            rows.append(dict(
                capture_id=capture_id,
                frame_number=index,
                phase=keyframe.phase,
                frame_path=frame_artifact.storage_path,
                overlay_path=overlay_artifact.storage_path if overlay_artifact else None,
                t_ms=keyframe.timestamp_ms,
                pose_data=pose_data.model_dump(mode="json"),
            ))

        db = self._session_factory()
        try:
            try:
                inserted = self._insert_missing_frames(db, capture_id, rows)
            except IntegrityError:
                # A concurrent attempt with the same capture stored some of these frames first
                db.rollback()
                logger.info(f"Frame insert raced for capture {capture_id}, retrying against stored frames")
                inserted = self._insert_missing_frames(db, capture_id, rows)
            logger.info(f"Inserted {inserted} frames for capture {capture_id}")
            return inserted
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to insert swing_frames: {e}", exc_info=True)
            raise FrameInsertError(f"Failed to insert swing_frames: {e}") from e
        finally:
            db.close()

    @staticmethod
    def _stored_timestamps(db: Session, capture_id: int) -> Set[int]:
        return {t_ms for (t_ms,) in db.query(SwingFrame.t_ms).filter(SwingFrame.capture_id == capture_id).all()}

    def _insert_missing_frames(self, db: Session, capture_id: int, rows: List[dict]) -> int:
        existing = self._stored_timestamps(db, capture_id)
        new_rows = [SwingFrame(**row) for row in rows if row["t_ms"] not in existing]
        if existing:
            logger.info(f"Capture {capture_id} already has {len(existing)} frames, inserting {len(new_rows)} new")
        db.add_all(new_rows)
        db.commit()
        return len(new_rows)

    def get_capture(self, capture_id: int) -> Optional[SwingCapture]:
        db = self._session_factory()
        try:
            return db.query(SwingCapture).filter(SwingCapture.id == capture_id).first()
        finally:
            db.close()

    def list_frames(self, capture_id: int) -> List[SwingFrame]:
        db = self._session_factory()
        try:
            return (
                db.query(SwingFrame)
                .filter(SwingFrame.capture_id == capture_id)
                .order_by(SwingFrame.frame_number)
                .all()
            )
        finally:
            db.close()
