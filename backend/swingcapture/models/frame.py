from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Integer, ForeignKey, UniqueConstraint
from swingcapture.models.capture import Base, JSONBCompat


class SwingFrame(Base):
    __tablename__ = "swing_frame"

    id = Column(Integer, primary_key=True, autoincrement=True)
    capture_id = Column(Integer, ForeignKey("swing_capture.id"), nullable=False, index=True)
    frame_number = Column(Integer, nullable=False)  # Position among surviving keyframes (0, 1, 2, ...)
    phase = Column(String, nullable=False)  # Swing phase (e.g., "address", "top", ...)
    frame_path = Column(String, nullable=False)  # Storage path in the frames bucket
    overlay_path = Column(String, nullable=True)  # Storage path in the overlays bucket
    t_ms = Column(Integer, nullable=False)  # Keyframe timestamp within the source video
    pose_data = Column(JSONBCompat, nullable=True)  # SwingFrameArtifactV1 with full landmarks
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        UniqueConstraint("capture_id", "t_ms", name="uq_swing_frame_capture_t_ms"),
    )
