"""
Tests for idempotent artifact uploads.
"""
from unittest.mock import MagicMock
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError
from swingcapture.core.errors import UploadError
from swingcapture.services.storage import (
    ArtifactUploader,
    swing_frame_path,
    swing_overlay_path,
)
from swingcapture.tests.factories import write_test_image

CAPTURE_ID = "3f1b7c2e-9a4d-4e8f-b6a1-2c5d7e9f0a1b"


def client_error(code, status):
    return ClientError({"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}}, "PutObject")


def test_storage_paths():
    """Paths are keyed by user and client capture id, never by database id."""
    assert swing_frame_path("user-1", CAPTURE_ID, 1350) == f"user-1/{CAPTURE_ID}/frame_1350.jpg"
    assert swing_overlay_path("user-1", CAPTURE_ID, 1350) == f"user-1/{CAPTURE_ID}/overlay_1350.png"


def test_upload_new_object(uploader, mock_s3):
    """Test a first upload is a conditional write that reports a fresh object."""
    artifact = uploader.upload("swing-frames", "u/c/frame_1.jpg", b"jpeg", "image/jpeg")

    assert artifact.storage_path == "u/c/frame_1.jpg"
    assert artifact.public_url == "https://storage.example.com/swing-frames/u/c/frame_1.jpg"
    assert artifact.already_existed is False
    mock_s3.put_object.assert_called_once_with(
        Bucket="swing-frames",
        Key="u/c/frame_1.jpg",
        Body=b"jpeg",
        ContentType="image/jpeg",
        IfNoneMatch="*",
    )


def test_upload_existing_object_is_not_an_error(uploader, mock_s3):
    """Test that a second write to the same path resolves to already_existed."""
    uploader.upload("swing-frames", "u/c/frame_1.jpg", b"first", "image/jpeg")
    artifact = uploader.upload("swing-frames", "u/c/frame_1.jpg", b"second", "image/jpeg")

    assert artifact.already_existed is True
    assert artifact.storage_path == "u/c/frame_1.jpg"
    # The original object is never overwritten
    assert mock_s3.objects[("swing-frames", "u/c/frame_1.jpg")] == b"first"


def test_upload_conflicting_concurrent_write():
    s3 = MagicMock()
    s3.put_object.side_effect = client_error("ConditionalRequestConflict", 409)
    artifact = ArtifactUploader(s3_client=s3).upload("swing-frames", "p.jpg", b"x", "image/jpeg")
    assert artifact.already_existed is True


@pytest.mark.parametrize(
    "error",
    [
        client_error("AccessDenied", 403),
        client_error("NoSuchBucket", 404),
        EndpointConnectionError(endpoint_url="https://s3.example.com"),
    ],
)
def test_upload_failure_raises(error):
    s3 = MagicMock()
    s3.put_object.side_effect = error
    with pytest.raises(UploadError) as exc_info:
        ArtifactUploader(s3_client=s3).upload("swing-frames", "p.jpg", b"x", "image/jpeg")
    assert exc_info.value.bucket == "swing-frames"
    assert exc_info.value.path == "p.jpg"


def test_public_url_without_base(mock_s3):
    uploader = ArtifactUploader(s3_client=mock_s3)
    uploader.settings = uploader.settings.model_copy(update={"storage_public_base_url": "", "aws_region": "eu-west-1"})
    assert uploader.public_url("swing-frames", "a/b.jpg") == "https://swing-frames.s3.eu-west-1.amazonaws.com/a/b.jpg"


def test_upload_file_missing(uploader):
    with pytest.raises(UploadError):
        uploader.upload_file("swing-frames", "p.jpg", "/nonexistent/frame.jpg", "image/jpeg")


def test_upload_capture_artifacts(uploader, mock_s3, tmp_path):
    """Test all frames and overlays are uploaded and returned ordered by timestamp."""
    timestamps = [2850, 150, 1350]
    frames = [(t, write_test_image(str(tmp_path / f"frame_{t}.jpg"))) for t in timestamps]
    overlays = [(t, write_test_image(str(tmp_path / f"overlay_{t}.png"))) for t in timestamps[:2]]

    uploaded = uploader.upload_capture_artifacts("user-1", CAPTURE_ID, frames, overlays, max_workers=3)

    assert [a.timestamp_ms for a in uploaded.frame_paths] == [150, 1350, 2850]
    assert [a.timestamp_ms for a in uploaded.overlay_paths] == [150, 2850]
    assert uploaded.frame_paths[0].storage_path == f"user-1/{CAPTURE_ID}/frame_150.jpg"
    assert uploaded.overlay_paths[1].storage_path == f"user-1/{CAPTURE_ID}/overlay_2850.png"
    assert ("swing-frames", f"user-1/{CAPTURE_ID}/frame_1350.jpg") in mock_s3.objects
    assert ("swing-overlays", f"user-1/{CAPTURE_ID}/overlay_150.png") in mock_s3.objects
    assert mock_s3.put_object.call_count == 5


def test_upload_capture_artifacts_retry_reuses_objects(uploader, mock_s3, tmp_path):
    """Test that re-uploading the same capture writes nothing new."""
    frames = [(t, write_test_image(str(tmp_path / f"frame_{t}.jpg"))) for t in (150, 450)]
    uploader.upload_capture_artifacts("user-1", CAPTURE_ID, frames)
    stored = dict(mock_s3.objects)

    retried = uploader.upload_capture_artifacts("user-1", CAPTURE_ID, frames)

    assert all(a.already_existed for a in retried.frame_paths)
    assert mock_s3.objects == stored


def test_upload_capture_artifacts_failure(tmp_path):
    """Test that one failed upload fails the batch after the others finish."""
    s3 = MagicMock()

    def put_object(Bucket, Key, Body, ContentType, IfNoneMatch):
        if Key.endswith("frame_450.jpg"):
            raise client_error("InternalError", 500)
        return {}

    s3.put_object.side_effect = put_object
    frames = [(t, write_test_image(str(tmp_path / f"frame_{t}.jpg"))) for t in (150, 450, 900)]

    with pytest.raises(UploadError) as exc_info:
        ArtifactUploader(s3_client=s3).upload_capture_artifacts("user-1", CAPTURE_ID, frames)

    assert exc_info.value.path.endswith("frame_450.jpg")
    assert s3.put_object.call_count == 3
