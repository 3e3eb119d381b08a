"""Object storage (S3 or MinIO) for downloaded assets."""

import asyncio
import logging
import mimetypes
import os
from pathlib import Path

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ingest.errors import UPLOAD, StorageError

logger = logging.getLogger(__name__)

S3_BUCKET: str = os.getenv("S3_BUCKET") or os.getenv("MINIO_BUCKET") or "videos"
MINIO_ENDPOINT: str = os.getenv("MINIO_ENDPOINT", "")
MINIO_ACCESS_KEY: str = os.getenv("MINIO_ACCESS_KEY", "minio")
MINIO_SECRET_KEY: str = os.getenv("MINIO_SECRET_KEY", "minio123")
AWS_REGION: str = os.getenv("AWS_REGION", "us-west-2")


def make_s3_client():
    """
    MinIO when MINIO_ENDPOINT is set (path-style, explicit credentials),
    otherwise AWS S3 with whatever credentials the environment provides.
    """
    if MINIO_ENDPOINT:
        logger.info("Using MinIO endpoint", extra={"endpoint": MINIO_ENDPOINT})
        return boto3.client(
            "s3",
            endpoint_url=MINIO_ENDPOINT,
            aws_access_key_id=MINIO_ACCESS_KEY,
            aws_secret_access_key=MINIO_SECRET_KEY,
            region_name=AWS_REGION,
            config=Config(s3={"addressing_style": "path"}),
        )
    return boto3.client("s3", region_name=AWS_REGION)


def video_key(job_id: str, path: Path) -> str:
    return f"videos/{job_id}{path.suffix.lower() or '.mp4'}"


def thumbnail_key(job_id: str, path: Path) -> str:
    return f"thumbnails/{job_id}{path.suffix.lower()}"


class ObjectUploader:
    """
    Pushes local files to the bucket. upload() only returns once a HEAD on
    the new object reports the same size as the local file.
    """

    def __init__(self, client=None, bucket: str = S3_BUCKET) -> None:
        self._client = client
        self.bucket = bucket

    @property
    def client(self):
        if self._client is None:
            self._client = make_s3_client()
        return self._client

    def _exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
        return True

    def _upload_sync(self, path: Path, key: str) -> None:
        if self._exists(key):
            raise StorageError(UPLOAD, f"object {key} already exists", category="conflict")
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        self.client.upload_file(
            str(path), self.bucket, key, ExtraArgs={"ContentType": content_type}
        )
        head = self.client.head_object(Bucket=self.bucket, Key=key)
        expected = path.stat().st_size
        if int(head.get("ContentLength", -1)) != expected:
            raise StorageError(
                UPLOAD,
                f"object size mismatch for {key}: "
                f"{head.get('ContentLength')} != {expected}",
            )

    async def upload(self, path: Path, key: str) -> str:
        try:
            await asyncio.to_thread(self._upload_sync, path, key)
        except (BotoCoreError, ClientError, OSError) as exc:
            raise StorageError(UPLOAD, f"failed to upload {key}: {exc}")
        logger.info("Object uploaded", extra={"bucket": self.bucket, "key": key})
        return key

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            logger.error("Object delete failed", extra={"key": key, "error": str(exc)})
