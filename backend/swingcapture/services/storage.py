import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple
import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from swingcapture.core.config import Settings, settings as default_settings
from swingcapture.core.errors import UploadError

logger = logging.getLogger(__name__)

# S3 answers a conditional write on an existing key with 412; a write racing
# another write to the same key can get 409.
ALREADY_EXISTS_CODES = {"PreconditionFailed", "ConditionalRequestConflict"}
ALREADY_EXISTS_STATUS = {409, 412}


@dataclass
class UploadedArtifact:
    storage_path: str
    public_url: str
    timestamp_ms: Optional[int] = None
    already_existed: bool = False  # Uploaded by an earlier attempt with the same key


@dataclass
class UploadedArtifacts:
    frame_paths: List[UploadedArtifact] = field(default_factory=list)
    overlay_paths: List[UploadedArtifact] = field(default_factory=list)


def artifact_path(user_id: str, client_capture_id: str, kind: str, timestamp_ms: int, ext: str) -> str:
    """
    Deterministic storage path for a capture artifact.

    Keyed by the client-generated capture id, which exists before any
    database row does, so a retried upload lands on the same path.
    """
    return f"{user_id}/{client_capture_id}/{kind}_{timestamp_ms}.{ext}"


def swing_frame_path(user_id: str, client_capture_id: str, timestamp_ms: int) -> str:
    return artifact_path(user_id, client_capture_id, "frame", timestamp_ms, "jpg")


def swing_overlay_path(user_id: str, client_capture_id: str, timestamp_ms: int) -> str:
    return artifact_path(user_id, client_capture_id, "overlay", timestamp_ms, "png")


class ArtifactUploader:
    def __init__(self, s3_client=None, config: Optional[Settings] = None):
        self.settings = config or default_settings
        if s3_client is None:
            s3_client = boto3.client(
                "s3",
                region_name=self.settings.aws_region,
                endpoint_url=self.settings.s3_endpoint_url or None,
                config=BotoConfig(
                    connect_timeout=self.settings.s3_connect_timeout,
                    read_timeout=self.settings.s3_read_timeout,
                    retries={"max_attempts": self.settings.s3_max_attempts, "mode": "standard"},
                ),
            )
        self.s3_client = s3_client

    def public_url(self, bucket: str, path: str) -> str:
        base = self.settings.storage_public_base_url.rstrip("/")
        if base:
            return f"{base}/{bucket}/{path}"
        return f"https://{bucket}.s3.{self.settings.aws_region}.amazonaws.com/{path}"

    def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> UploadedArtifact:
        """
        Upload bytes to storage without overwriting.

        An object already at ``path`` means an earlier attempt uploaded it;
        that is reported through ``already_existed`` instead of an error.

        Raises:
            UploadError: on any other storage failure
        """
        try:
            self.s3_client.put_object(
                Bucket=bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
                IfNoneMatch="*",  # Never overwrite
            )
            logger.info(f"Uploaded file to s3://{bucket}/{path}")
            already_existed = False
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code")
            status_code = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if error_code in ALREADY_EXISTS_CODES or status_code in ALREADY_EXISTS_STATUS:
                logger.info(f"Object already exists at s3://{bucket}/{path}, treating as uploaded")
                already_existed = True
            else:
                logger.error(f"Error uploading to S3: {e}")
                raise UploadError(bucket, path, str(e)) from e
        except BotoCoreError as e:
            logger.error(f"Error uploading to S3: {e}")
            raise UploadError(bucket, path, str(e)) from e

        return UploadedArtifact(
            storage_path=path,
            public_url=self.public_url(bucket, path),
            already_existed=already_existed,
        )

    def upload_file(
        self, bucket: str, path: str, local_path: str, content_type: str, timestamp_ms: Optional[int] = None
    ) -> UploadedArtifact:
        try:
            with open(local_path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise UploadError(bucket, path, f"cannot read {local_path}: {e}") from e
        artifact = self.upload(bucket, path, data, content_type)
        artifact.timestamp_ms = timestamp_ms
        return artifact

    def upload_capture_artifacts(
        self,
        user_id: str,
        client_capture_id: str,
        frames: Sequence[Tuple[int, str]],
        overlays: Sequence[Tuple[int, str]] = (),
        max_workers: Optional[int] = None,
    ) -> UploadedArtifacts:
        """
        Upload every keyframe and overlay of a capture.

        Uploads run on a bounded thread pool. Each result stays tied to its
        timestamp regardless of completion order, and one failed upload does
        not cancel the others; the first failure is raised once all finish.

        Args:
            user_id: Owner of the capture
            client_capture_id: Idempotency key used in the storage paths
            frames: (timestamp_ms, local JPEG path) pairs
            overlays: (timestamp_ms, local PNG path) pairs

        Returns:
            UploadedArtifacts with frame and overlay entries ordered by timestamp
        """
        max_workers = max(1, max_workers or self.settings.max_upload_workers)
        jobs = []
        for timestamp_ms, local_path in frames:
            jobs.append((
                "frame",
                timestamp_ms,
                self.settings.frames_bucket,
                swing_frame_path(user_id, client_capture_id, timestamp_ms),
                local_path,
                "image/jpeg",
            ))
        for timestamp_ms, local_path in overlays:
            jobs.append((
                "overlay",
                timestamp_ms,
                self.settings.overlays_bucket,
                swing_overlay_path(user_id, client_capture_id, timestamp_ms),
                local_path,
                "image/png",
            ))

        results = UploadedArtifacts()
        errors = []
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="upload") as pool:
            futures = [
                (kind, pool.submit(self.upload_file, bucket, path, local_path, content_type, timestamp_ms))
                for kind, timestamp_ms, bucket, path, local_path, content_type in jobs
            ]
            for kind, future in futures:
                try:
                    artifact = future.result()
                except UploadError as e:
                    errors.append(e)
                    continue
                if kind == "frame":
                    results.frame_paths.append(artifact)
                else:
                    results.overlay_paths.append(artifact)

        if errors:
            logger.error(f"{len(errors)} of {len(jobs)} artifact uploads failed for capture {client_capture_id}")
            raise errors[0]

        results.frame_paths.sort(key=lambda a: a.timestamp_ms)
        results.overlay_paths.sort(key=lambda a: a.timestamp_ms)
        logger.info(
            f"Uploaded {len(results.frame_paths)} frames and {len(results.overlay_paths)} overlays "
            f"for capture {client_capture_id}"
        )
        return results
