import logging
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from swingcapture.core.config import settings
from swingcapture.models.capture import Base
from swingcapture.models.frame import SwingFrame  # Import to ensure table is created

logger = logging.getLogger(__name__)

# Database setup (lazy initialization)
_engine = None
_SessionLocal = None


def build_engine(db_url: str):
    """Create an engine with connection timeouts appropriate for the dialect."""
    connect_args = {}
    if db_url.startswith("postgresql"):
        connect_args["connect_timeout"] = settings.db_connect_timeout
    elif db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args, pool_pre_ping=True)
    Base.metadata.create_all(bind=engine)
    return engine


def get_engine():
    global _engine
    if _engine is None:
        _engine = build_engine(settings.db_url)
        logger.info(f"Database engine created: {settings.db_url.split('@')[-1]}")
    return _engine


def get_session_local():
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _SessionLocal
