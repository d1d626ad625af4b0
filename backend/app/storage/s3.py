"""
S3 Document Reader

The worker only ever reads the uploaded document bytes back out of S3; the
upload path, encryption policy and key layout belong to the API service
that wrote them. This module is therefore a read-only slice:

  - get_object(key)  →  raw bytes of the stored document
  - missing key      →  FileNotFoundError (never retried by the pipeline)
"""

from __future__ import annotations

import logging

import aioboto3
from botocore.exceptions import ClientError

from app.core.config import settings

logger = logging.getLogger(__name__)


class DocumentStorage:
    """Async S3 reads against a single bucket."""

    def __init__(self, bucket: str | None = None, region: str | None = None) -> None:
        self._bucket  = bucket or settings.s3_bucket
        self._region  = region or settings.aws_region
        self._session = aioboto3.Session()

    @property
    def bucket(self) -> str:
        return self._bucket

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client(
            "s3",
            region_name=self._region,
            # In production: IAM role assumed via ECS task role / IRSA.
            # In local dev: reads AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY.
        )

    async def get_object(self, key: str) -> bytes:
        """Download one stored document."""
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                body = await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: s3://{self._bucket}/{key}") from exc
                raise
        logger.debug("S3 read | key=%s bytes=%d", key, len(body))
        return body
