"""Statement document storage on S3."""

from __future__ import annotations

import uuid
from typing import Any, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import settings
from app.core.exceptions import ArtifactError
from app.core.logging import get_logger

logger = get_logger(__name__)


def client_config() -> Config:
    """Bounded connect/read timeouts so a stalled AWS call cannot hang a worker."""
    return Config(
        connect_timeout=settings.aws_connect_timeout_seconds,
        read_timeout=settings.aws_read_timeout_seconds,
        retries={"max_attempts": 3, "mode": "standard"},
    )


def statement_artifact_key(tenant_id: uuid.UUID, statement_id: uuid.UUID) -> str:
    return f"statements/{tenant_id}/{statement_id}.pdf"


class ArtifactStore(Protocol):
    def put(self, key: str, data: bytes) -> str: ...

    def get(self, key: str) -> bytes: ...

    def presigned_get(self, key: str, filename: str, ttl_seconds: int) -> str: ...


class S3ArtifactStore:
    """Stores PDFs in one bucket.  Every S3 failure surfaces as ``ArtifactError``."""

    def __init__(self, bucket: str, region: str, client: Any = None) -> None:
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3", region_name=region, config=client_config()
        )

    def put(self, key: str, data: bytes) -> str:
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType="application/pdf",
            )
        except (ClientError, BotoCoreError) as e:
            raise ArtifactError(f"Failed to store {key}: {e}", key=key) from e
        logger.info("Stored artifact s3://%s/%s (%d bytes)", self.bucket, key, len(data))
        return key

    def get(self, key: str) -> bytes:
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=key)
            return obj["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise ArtifactError(f"Failed to fetch {key}: {e}", key=key) from e

    def presigned_get(self, key: str, filename: str, ttl_seconds: int) -> str:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={
                    "Bucket": self.bucket,
                    "Key": key,
                    "ResponseContentDisposition": f'attachment; filename="{filename}"',
                },
                ExpiresIn=ttl_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            raise ArtifactError(f"Failed to presign {key}: {e}", key=key) from e
