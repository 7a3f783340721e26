"""S3-compatible storage for LFS objects.

Uses S3 client factory pattern for reliable async operations:
Each S3 operation creates a fresh client context to avoid connection
pool exhaustion and hanging issues with aiobotocore.
"""

import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from aiobotocore.session import get_session
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from lfshost.core import (
    ConfigurationError,
    ObjectMetadata,
    StorageError,
    TransferOperation,
)
from lfshost.storage import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_EXPIRES_IN,
    DEFAULT_READ_TIMEOUT,
    BlobAdapter,
    TransferAction,
    expiry_from_now,
    method_for,
)

logger = logging.getLogger("storage")

OCTET_STREAM = "application/octet-stream"

# Error codes S3 (and S3-compatible providers) use for a missing key
NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def create_s3_client_factory(
    region_name: Optional[str] = None,
    endpoint_url: Optional[str] = None,
    access_key_id: Optional[str] = None,
    secret_access_key: Optional[str] = None,
    acceleration: bool = False,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    read_timeout: float = DEFAULT_READ_TIMEOUT,
) -> Callable:
    """Create an S3 client factory.

    Returns a callable that returns an async context manager for S3 client.
    Each call creates a fresh client context for reliable async operations.
    """
    if acceleration and endpoint_url:
        raise ConfigurationError(
            "S3 acceleration cannot be combined with a custom endpoint URL"
        )

    session = get_session()
    config = Config(
        connect_timeout=connect_timeout,
        read_timeout=read_timeout,
        signature_version="s3v4",
        s3={"use_accelerate_endpoint": acceleration},
    )

    @asynccontextmanager
    async def s3_client_factory():
        async with session.create_client(
            "s3",
            region_name=region_name,
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=config,
        ) as client:
            yield client

    return s3_client_factory


class S3BlobAdapter(BlobAdapter):
    """Store LFS objects in an S3 bucket and hand out presigned URLs."""

    name = "s3"

    def __init__(self, s3_client_factory: Callable, bucket: str):
        """Initialize the adapter.

        Args:
            s3_client_factory: Factory function that returns an async context manager
                               for S3 client
            bucket: S3 bucket name
        """
        if not bucket:
            raise ConfigurationError("An S3 bucket name is required")
        self.s3_client_factory = s3_client_factory
        self.bucket = bucket

    async def exists(self, key: str) -> Optional[ObjectMetadata]:
        """Check if an object exists in S3 and return its size."""
        async with self.s3_client_factory() as s3_client:
            try:
                response = await s3_client.head_object(Bucket=self.bucket, Key=key)
            except ClientError as e:
                error = e.response.get("Error", {})
                if str(error.get("Code")) in NOT_FOUND_CODES:
                    return None
                raise StorageError(
                    f"S3 head_object failed: {error.get('Code', 'unknown')}"
                ) from e
            except BotoCoreError as e:
                raise StorageError(f"S3 head_object failed: {type(e).__name__}") from e

        return ObjectMetadata(
            size=response["ContentLength"],
            etag=(response.get("ETag") or "").strip('"') or None,
        )

    async def url_for(
        self,
        key: str,
        operation: TransferOperation,
        size: int,
        expires_in: int = DEFAULT_EXPIRES_IN,
    ) -> TransferAction:
        """Generate a presigned URL for uploading or downloading one object."""
        if operation == TransferOperation.upload:
            client_method = "put_object"
            params = {
                "Bucket": self.bucket,
                "Key": key,
                "ContentLength": size,
                "ContentType": OCTET_STREAM,
            }
            header = {"Content-Type": OCTET_STREAM}
        else:
            client_method = "get_object"
            params = {"Bucket": self.bucket, "Key": key}
            header = None

        async with self.s3_client_factory() as s3_client:
            try:
                url = await s3_client.generate_presigned_url(
                    client_method,
                    Params=params,
                    ExpiresIn=expires_in,
                )
            except (ClientError, BotoCoreError) as e:
                raise StorageError(f"S3 URL signing failed: {type(e).__name__}") from e

        return TransferAction(
            href=url,
            method=method_for(operation),
            header=header,
            expires_in=expires_in,
            expires_at=expiry_from_now(expires_in),
        )
