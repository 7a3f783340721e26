"""Provide the core LFS data model."""

import logging
import os
import sys
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

LOGLEVEL = os.environ.get("LFS_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("core")
logger.setLevel(LOGLEVEL)


class LFSError(Exception):
    """Base class for lfshost errors."""


class ConfigurationError(LFSError, ValueError):
    """Raised at startup when the server configuration is missing or ambiguous."""


class ObjectValidationError(LFSError, ValueError):
    """Raised when an object identifier or size is not acceptable."""


class StorageError(LFSError):
    """Raised when a storage backend cannot answer a request."""


class TransferOperation(str, Enum):
    """Represent the transfer direction of a batch request."""

    upload = "upload"
    download = "download"


class ObjectDescriptor(BaseModel):
    """Represent a validated object referenced by a batch request."""

    model_config = ConfigDict(frozen=True)

    oid: str
    size: int = Field(..., ge=0)


class ObjectMetadata(BaseModel):
    """Represent what a storage backend knows about a stored object."""

    model_config = ConfigDict(frozen=True)

    size: int
    etag: Optional[str] = None


class Credential(BaseModel):
    """Represent an identifier/secret pair presented by a client."""

    model_config = ConfigDict(frozen=True)

    identifier: str
    secret: str = Field(..., repr=False)


class AuthorizationDecision(BaseModel):
    """Represent the outcome of authenticating a batch request."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: str = ""

    @classmethod
    def allow(cls) -> "AuthorizationDecision":
        """Return an allowing decision."""
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> "AuthorizationDecision":
        """Return a denying decision with the given reason."""
        return cls(allowed=False, reason=reason)


__all__ = [
    "LFSError",
    "ConfigurationError",
    "ObjectValidationError",
    "StorageError",
    "TransferOperation",
    "ObjectDescriptor",
    "ObjectMetadata",
    "Credential",
    "AuthorizationDecision",
]
