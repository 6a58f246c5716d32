from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Integer, JSON, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


class JSONBCompat(TypeDecorator):
    """A type that uses JSONB for PostgreSQL and JSON for SQLite."""
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(JSONB())
        else:
            return dialect.type_descriptor(JSON())


class SwingCapture(Base):
    __tablename__ = "swing_capture"
    __table_args__ = (
        UniqueConstraint("user_id", "client_capture_id", name="uq_swing_capture_user_client_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    client_capture_id = Column(String(36), nullable=False)  # Client-minted UUID, idempotency key
    status = Column(String, nullable=False, default="uploaded")
    pose_summary = Column(JSONBCompat, nullable=True)  # PoseSummaryV1, compact (no full landmarks)
    club = Column(String, nullable=True)
    captured_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
