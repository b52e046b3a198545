"""S3-compatible object storage backend for conversation history.

Supports AWS S3 and S3-compatible services (MinIO, LocalStack, ...).
Credentials come from the configured environment variables, or from the
ambient IAM role / instance profile when those are unset. boto3 is
blocking, so every call runs in the default executor.
"""

from __future__ import annotations

import asyncio
from functools import partial
from typing import Any, Callable

import structlog

from taxassist.config import S3Config
from taxassist.core.memory.history import BackendHistoryStore, StorageInitError

logger = structlog.get_logger()

_MISSING_CODES = {"404", "NoSuchKey", "NoSuchBucket", "NotFound"}


def _error_code(error: Exception) -> str | None:
    """Error code of a botocore ClientError, None for anything else."""
    response = getattr(error, "response", None)
    if not isinstance(response, dict):
        return None
    return response.get("Error", {}).get("Code")


class S3HistoryStore(BackendHistoryStore):
    """Stores ``<prefix><conversation_id>.json`` objects in one bucket."""

    name = "s3"

    def __init__(self, config: S3Config, client: Any = None) -> None:
        super().__init__()
        self.config = config
        self._client = client

    @property
    def location(self) -> str:
        return f"s3://{self.config.bucket}/{self.config.prefix}"

    async def _call(self, fn: Callable[..., Any], **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, **kwargs))

    def _build_client(self) -> Any:
        import boto3
        from botocore.config import Config

        client_kwargs: dict[str, Any] = {
            "service_name": "s3",
            "region_name": self.config.region,
            "config": Config(
                signature_version="s3v4",
                retries={"max_attempts": 3, "mode": "adaptive"},
            ),
        }

        access_key, secret_key = self.config.get_credentials()
        if access_key and secret_key:
            client_kwargs["aws_access_key_id"] = access_key
            client_kwargs["aws_secret_access_key"] = secret_key
            logger.debug("s3_credentials", source="environment")
        else:
            logger.debug("s3_credentials", source="ambient")

        if self.config.endpoint_url:
            client_kwargs["endpoint_url"] = self.config.endpoint_url
            logger.info("s3_custom_endpoint", endpoint_url=self.config.endpoint_url)

        return boto3.client(**client_kwargs)

    async def _initialize(self) -> None:
        if not self.config.bucket:
            raise StorageInitError("no S3 bucket configured (storage.s3.bucket)")

        if self._client is None:
            self._client = self._build_client()

        attempts = max(1, self.config.init_attempts)
        exists = False
        for attempt in range(1, attempts + 1):
            try:
                await self._call(self._client.head_bucket, Bucket=self.config.bucket)
                exists = True
                break
            except Exception as e:
                if _error_code(e) in _MISSING_CODES:
                    break
                logger.warning(
                    "s3_bucket_check_failed",
                    bucket=self.config.bucket,
                    attempt=attempt,
                    retries_left=attempts - attempt,
                    error=str(e),
                )
                if attempt == attempts:
                    raise StorageInitError(
                        f"cannot reach bucket {self.config.bucket}: {e}"
                    ) from e
                await asyncio.sleep(self.config.init_retry_delay)

        if not exists:
            logger.info("s3_bucket_creating", bucket=self.config.bucket)
            create_kwargs: dict[str, Any] = {"Bucket": self.config.bucket}
            if self.config.region and self.config.region != "us-east-1":
                create_kwargs["CreateBucketConfiguration"] = {
                    "LocationConstraint": self.config.region,
                }
            await self._call(self._client.create_bucket, **create_kwargs)
            logger.info("s3_bucket_created", bucket=self.config.bucket)

    def _object_key(self, key: str) -> str:
        return f"{self.config.prefix}{key}"

    async def _read(self, key: str) -> str | None:
        try:
            response = await self._call(
                self._client.get_object,
                Bucket=self.config.bucket,
                Key=self._object_key(key),
            )
        except Exception as e:
            if _error_code(e) in _MISSING_CODES:
                return None
            raise
        data = await self._call(response["Body"].read)
        return data.decode("utf-8")

    async def _write(self, key: str, body: str) -> None:
        await self._call(
            self._client.put_object,
            Bucket=self.config.bucket,
            Key=self._object_key(key),
            Body=body.encode("utf-8"),
            ContentType="application/json",
        )

    async def _remove(self, key: str) -> bool | None:
        # DeleteObject succeeds for missing keys, so whether one existed is unknown.
        await self._call(
            self._client.delete_object,
            Bucket=self.config.bucket,
            Key=self._object_key(key),
        )
        return None
