"""
S3 Blob Store

Object layout (all under one bucket):

    s3://<BUCKET>/jobs/<job_id>/metadata.json
    s3://<BUCKET>/jobs/<job_id>/uploads/raw/documents.zip
    s3://<BUCKET>/jobs/<job_id>/uploads/extracted/<name>
    s3://<BUCKET>/jobs/<job_id>/processing/queue.json
    s3://<BUCKET>/jobs/<job_id>/processing/logs.json
    s3://<BUCKET>/jobs/<job_id>/output/<report>
    s3://<BUCKET>/masters/legal_audit_prompt.json

Keys are always built server-side by app.storage.keys; client input only
ever contributes a sanitized basename.
"""

from __future__ import annotations

import logging
import mimetypes
from typing import AsyncIterator, BinaryIO

import aioboto3
from botocore.exceptions import ClientError

from app.storage.base import STREAM_CHUNK_BYTES, BlobStore

logger = logging.getLogger(__name__)

_MISSING_CODES = ("NoSuchKey", "404", "NotFound")


def _content_type(key: str, content_type: str | None) -> str:
    return content_type or mimetypes.guess_type(key)[0] or "application/octet-stream"


class S3BlobStore(BlobStore):
    """Async S3 operations against a single bucket."""

    def __init__(self, bucket: str, region: str) -> None:
        self._bucket = bucket
        self._region = region
        self._session = aioboto3.Session()

    @classmethod
    def from_settings(cls) -> "S3BlobStore":
        from app.core.config import settings
        return cls(bucket=settings.s3_bucket, region=settings.aws_region)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client(
            "s3",
            region_name=self._region,
            # In production: IAM role assumed via ECS task role / IRSA.
            # In local dev: reads AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY.
        )

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def put(self, key: str, data: bytes, content_type: str | None = None) -> None:
        async with self._client() as s3:
            await s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=_content_type(key, content_type),
            )
        logger.debug("S3 put | key=%s size=%d", key, len(data))

    async def put_file(self, key: str, fileobj: BinaryIO, content_type: str | None = None) -> None:
        # upload_fileobj switches to multipart transfer for large bodies
        async with self._client() as s3:
            await s3.upload_fileobj(
                fileobj,
                self._bucket,
                key,
                ExtraArgs={"ContentType": _content_type(key, content_type)},
            )
        logger.info("S3 upload ok | key=%s", key)

    async def get(self, key: str) -> bytes:
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                return await resp["Body"].read()
            except ClientError as exc:
                if exc.response["Error"]["Code"] in _MISSING_CODES:
                    raise FileNotFoundError(f"Object not found: {key}") from exc
                raise

    async def iter_chunks(self, key: str, chunk_size: int = STREAM_CHUNK_BYTES) -> AsyncIterator[bytes]:
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
            except ClientError as exc:
                if exc.response["Error"]["Code"] in _MISSING_CODES:
                    raise FileNotFoundError(f"Object not found: {key}") from exc
                raise
            body = resp["Body"]
            while True:
                chunk = await body.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    async def list(self, prefix: str) -> list[str]:
        keys: list[str] = []
        async with self._client() as s3:
            paginator = s3.get_paginator("list_objects_v2")
            async for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
        return sorted(keys)

    async def exists(self, key: str) -> bool:
        async with self._client() as s3:
            try:
                await s3.head_object(Bucket=self._bucket, Key=key)
                return True
            except ClientError as exc:
                if exc.response["Error"]["Code"] in _MISSING_CODES:
                    return False
                raise

    async def signed_download_url(self, key: str, ttl: int) -> str:
        """
        Generate a short-lived presigned GET URL for direct browser download.
        The URL is scoped to the exact object key, never a prefix.
        """
        async with self._client() as s3:
            return await s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self._bucket, "Key": key},
                ExpiresIn=ttl,
            )
