import logging
import os
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from swingcapture.api.captures import router as captures_router
from swingcapture.core.config import settings
from swingcapture.processing.coordinator import CaptureCoordinator

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Swing Capture API", version="0.1.0")

cors_origins = ["http://localhost:3000"]
# Add production origins from environment variable if set
allowed_origins_env = os.getenv("ALLOWED_ORIGINS", "")
if allowed_origins_env:
    cors_origins.extend([origin.strip() for origin in allowed_origins_env.split(",")])

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(captures_router)


@app.on_event("startup")
async def startup_event():
    """Build the capture pipeline and load the pose engine."""
    import sys
    import psutil

    logger.info("=" * 60)
    logger.info("Starting application startup sequence...")
    logger.info(f"Python version: {sys.version}")
    logger.info(f"DB_URL endpoint: {settings.db_url.split('@')[-1] if '@' in settings.db_url else 'Not set'}")
    logger.info(f"Pose engine: {settings.pose_engine}")

    process = psutil.Process()
    logger.info(f"Memory usage before pose engine load: {process.memory_info().rss / 1024 / 1024:.2f} MB")

    if os.environ.get("TESTING"):
        logger.info("TESTING set, skipping pipeline initialization")
        return

    coordinator = CaptureCoordinator()
    coordinator.initialize()
    app.state.coordinator = coordinator

    logger.info(f"Memory usage after pose engine load: {process.memory_info().rss / 1024 / 1024:.2f} MB")
    logger.info(f"Memory available: {psutil.virtual_memory().available / 1024 / 1024:.2f} MB")
    logger.info("=" * 60)
    logger.info("Application startup sequence completed - server ready to accept requests")


@app.on_event("shutdown")
async def shutdown_event():
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is not None:
        coordinator.dispose()
        app.state.coordinator = None


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/ready")
async def ready():
    if getattr(app.state, "coordinator", None) is None:
        return {"status": "starting"}
    return {"status": "ready"}
