"""S3 object storage adapter for source videos and caption tracks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import ClientError

from config import settings

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class ObjectNotFoundError(FileNotFoundError):
    """Requested object key does not exist in the bucket."""


@dataclass(frozen=True)
class StoredObject:
    key: str
    public_url: str


def caption_key(video_id: str, folder: Optional[str] = None) -> str:
    """Stable per-video caption track key."""
    prefix = (folder if folder is not None else settings.AWS_S3_FOLDER).strip("/")
    return f"{prefix}/captions/{video_id}.vtt" if prefix else f"captions/{video_id}.vtt"


def _is_not_found(exc: ClientError) -> bool:
    code = str(exc.response.get("Error", {}).get("Code", ""))
    return code in NOT_FOUND_CODES


class S3ObjectStore:
    """Thin boto3 wrapper; all methods are blocking and meant for asyncio.to_thread."""

    def __init__(
        self,
        bucket: str,
        region: str,
        access_key_id: str = "",
        secret_access_key: str = "",
        endpoint_url: str = "",
        client=None,
    ):
        if not bucket:
            raise ValueError("AWS_S3_BUCKET_NAME is not configured")
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url or None
        if client is None:
            client_kwargs = {"region_name": region}
            if access_key_id and secret_access_key:
                client_kwargs["aws_access_key_id"] = access_key_id
                client_kwargs["aws_secret_access_key"] = secret_access_key
            if self.endpoint_url:
                client_kwargs["endpoint_url"] = self.endpoint_url
            client = boto3.client("s3", **client_kwargs)
        self.client = client

    @classmethod
    def from_settings(cls) -> "S3ObjectStore":
        return cls(
            bucket=settings.AWS_S3_BUCKET_NAME,
            region=settings.AWS_S3_REGION,
            access_key_id=settings.AWS_S3_ACCESS_KEY_ID,
            secret_access_key=settings.AWS_S3_SECRET_ACCESS_KEY,
            endpoint_url=settings.AWS_S3_ENDPOINT_URL,
        )

    def public_url(self, key: str) -> str:
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def object_size(self, key: str) -> int:
        try:
            head = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _is_not_found(exc):
                raise ObjectNotFoundError(f"Object not found in storage: {key}") from exc
            raise
        return int(head.get("ContentLength") or 0)

    def download(self, key: str, destination: Path) -> Path:
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.client.download_file(self.bucket, key, str(destination))
        except ClientError as exc:
            if _is_not_found(exc):
                raise ObjectNotFoundError(f"Object not found in storage: {key}") from exc
            raise
        return destination

    def upload(
        self,
        body: bytes,
        key: str,
        content_type: str,
        cache_control: Optional[str] = None,
    ) -> StoredObject:
        extra = {"CacheControl": cache_control} if cache_control else {}
        self.client.put_object(Bucket=self.bucket, Key=key, Body=body, ContentType=content_type, **extra)
        logger.info("Uploaded %s (%d bytes) to s3://%s", key, len(body), self.bucket)
        return StoredObject(key=key, public_url=self.public_url(key))
