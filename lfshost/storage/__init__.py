"""Blob storage adapters for LFS objects.

An adapter answers two questions about a storage key: whether an object
is stored there (and how large it is), and which time-limited URL lets a
client move the bytes directly. Object content never passes through
this server.
"""

import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from pydantic import BaseModel, Field

from lfshost.core import ObjectMetadata, TransferOperation

LOGLEVEL = os.environ.get("LFS_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("storage")
logger.setLevel(LOGLEVEL)

# Default URL expiration time (15 minutes)
DEFAULT_EXPIRES_IN = 900

# Default timeouts for calls to the storage provider, in seconds
DEFAULT_CONNECT_TIMEOUT = 5
DEFAULT_READ_TIMEOUT = 10


class TransferAction(BaseModel):
    """A signed request the client can make directly against storage."""

    href: str = Field(..., description="Signed URL for the transfer")
    method: str = Field(..., description="HTTP verb to use with href")
    header: Optional[Dict[str, str]] = Field(
        default=None, description="HTTP headers to include"
    )
    expires_in: int = Field(..., description="Seconds until the URL expires")
    expires_at: datetime = Field(..., description="When the URL expires (UTC)")


def method_for(operation: TransferOperation) -> str:
    """Return the HTTP verb a client uses for the operation."""
    return "PUT" if operation == TransferOperation.upload else "GET"


def expiry_from_now(expires_in: int) -> datetime:
    """Return the UTC expiration time for a URL valid for expires_in seconds."""
    return datetime.now(timezone.utc).replace(microsecond=0) + timedelta(
        seconds=expires_in
    )


class BlobAdapter:
    """Base class for storage backends.

    Implementations are configured once at startup and shared by all
    requests, so they must not keep per-request state.
    """

    name = "base"

    async def exists(self, key: str) -> Optional[ObjectMetadata]:
        """Probe an object without transferring its content.

        Returns:
            ObjectMetadata if the object is stored, None if it is absent

        Raises:
            StorageError: If the backend cannot tell whether the object exists
        """
        raise NotImplementedError

    async def url_for(
        self,
        key: str,
        operation: TransferOperation,
        size: int,
        expires_in: int = DEFAULT_EXPIRES_IN,
    ) -> TransferAction:
        """Sign a URL allowing exactly one operation on exactly one key.

        Raises:
            StorageError: If the URL cannot be signed
        """
        raise NotImplementedError


from lfshost.storage.s3 import S3BlobAdapter  # noqa: E402
from lfshost.storage.azure import AzureBlobAdapter  # noqa: E402

__all__ = [
    "DEFAULT_EXPIRES_IN",
    "TransferAction",
    "BlobAdapter",
    "S3BlobAdapter",
    "AzureBlobAdapter",
    "method_for",
    "expiry_from_now",
]
