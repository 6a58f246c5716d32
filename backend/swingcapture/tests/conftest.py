"""Pytest configuration and fixtures."""
import os
import threading
from unittest.mock import patch, MagicMock
import pytest
from botocore.exceptions import ClientError
from sqlalchemy.orm import sessionmaker

# Set TESTING environment variable so app startup does not load a pose engine
os.environ["TESTING"] = "1"

from swingcapture.core.db import build_engine  # noqa: E402
from swingcapture.services.capture_repository import CaptureRepository  # noqa: E402
from swingcapture.services.storage import ArtifactUploader  # noqa: E402
from swingcapture.tests.factories import write_test_image  # noqa: E402


@pytest.fixture(autouse=True)
def patch_settings(tmp_path):
    """Automatically patch settings for all tests to use temp directories and the fake engine."""
    temp_dir = tmp_path / "work"
    temp_dir.mkdir()
    with patch("swingcapture.core.config.settings.temp_dir", str(temp_dir)), \
         patch("swingcapture.core.config.settings.pose_engine", "fake"), \
         patch("swingcapture.core.config.settings.analysis_base_url", ""), \
         patch("swingcapture.core.config.settings.storage_public_base_url", "https://storage.example.com"):
        yield str(temp_dir)


@pytest.fixture
def session_factory(tmp_path):
    """SQLite-backed session factory; file-based so worker threads share the data."""
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def repository(session_factory):
    return CaptureRepository(session_factory, retry_attempts=1)


class InMemoryS3:
    """Stores objects by (bucket, key) and honours IfNoneMatch like S3 does."""

    def __init__(self):
        self.objects = {}
        self.lock = threading.Lock()
        self.put_object = MagicMock(side_effect=self._put_object)

    def _put_object(self, Bucket, Key, Body, ContentType=None, IfNoneMatch=None):
        with self.lock:
            if IfNoneMatch == "*" and (Bucket, Key) in self.objects:
                raise ClientError(
                    {
                        "Error": {"Code": "PreconditionFailed", "Message": "At least one of the pre-conditions failed"},
                        "ResponseMetadata": {"HTTPStatusCode": 412},
                    },
                    "PutObject",
                )
            self.objects[(Bucket, Key)] = Body
        return {"ETag": '"etag"'}


@pytest.fixture
def mock_s3():
    return InMemoryS3()


@pytest.fixture
def uploader(mock_s3):
    return ArtifactUploader(s3_client=mock_s3)


@pytest.fixture
def mock_ffmpeg():
    """
    Mock ffmpeg/ffprobe subprocess calls.

    ffprobe reports a 3 second clip and ffmpeg writes a real JPEG to the
    requested output path. Millisecond offsets added to
    ``mock_ffmpeg.fail_at`` make ffmpeg produce nothing.
    """
    fail_at = set()

    def mock_run_side_effect(*args, **kwargs):
        cmd = args[0]
        mock_result = MagicMock()
        mock_result.returncode = 0
        if cmd[0] == "ffprobe":
            mock_result.stdout = "3.0\n"
        elif cmd[0] == "ffmpeg":
            timestamp = float(cmd[cmd.index("-ss") + 1])
            if round(timestamp * 1000) not in fail_at:
                write_test_image(cmd[-1], size=(96, 128))
        return mock_result

    with patch("swingcapture.processing.keyframes.subprocess.run") as mock_run:
        mock_run.side_effect = mock_run_side_effect
        mock_run.fail_at = fail_at
        yield mock_run
