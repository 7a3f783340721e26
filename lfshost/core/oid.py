"""Validation of LFS object identifiers and storage key derivation."""

from typing import Any

from lfshost.core import ObjectDescriptor, ObjectValidationError

OID_LENGTH = 64
OID_ALPHABET = frozenset("0123456789abcdef")


def is_valid_oid(value: Any) -> bool:
    """Check whether value is a lowercase hex SHA-256 digest."""
    if not isinstance(value, str) or len(value) != OID_LENGTH:
        return False
    return all(c in OID_ALPHABET for c in value)


def _normalize_size(raw_size: Any) -> int:
    # bool is a subclass of int, but True is not a size
    if isinstance(raw_size, bool):
        raise ObjectValidationError("invalid object size")
    if isinstance(raw_size, int):
        size = raw_size
    elif isinstance(raw_size, float) and raw_size.is_integer():
        size = int(raw_size)
    else:
        raise ObjectValidationError("invalid object size")
    if size < 0:
        raise ObjectValidationError("invalid object size")
    return size


def validate_object(raw_oid: Any, raw_size: Any) -> ObjectDescriptor:
    """Validate a raw (oid, size) pair taken from a batch request.

    Args:
        raw_oid: The object ID as sent by the client
        raw_size: The declared size in bytes as sent by the client

    Returns:
        ObjectDescriptor with the normalized oid and size

    Raises:
        ObjectValidationError: If the oid is not 64 lowercase hex characters
            or the size is not a non-negative integer
    """
    if not is_valid_oid(raw_oid):
        raise ObjectValidationError("invalid object identifier")
    return ObjectDescriptor(oid=raw_oid, size=_normalize_size(raw_size))


def storage_key(oid: str, prefix: str = "") -> str:
    """Get the storage key for an LFS object.

    Objects are stored in a sharded directory structure:
    {prefix}/{oid[0:2]}/{oid[2:4]}/{oid}
    """
    if not is_valid_oid(oid):
        raise ObjectValidationError("invalid object identifier")
    key = f"{oid[0:2]}/{oid[2:4]}/{oid}"
    prefix = (prefix or "").strip("/")
    if prefix:
        return f"{prefix}/{key}"
    return key
