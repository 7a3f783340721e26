"""Test the lfshost module."""

OID_A = "a" * 64
OID_B = "b" * 64
OID_C = "0123456789abcdef" * 4

BASIC_USER = "alice"
BASIC_PASSWORD = "correct horse battery staple"


def basic_auth(username, password):
    """Build an HTTP Basic Authorization header value."""
    import base64

    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def find_object(response_objects, oid):
    """Find the first response entry for an oid."""
    for obj in response_objects:
        if obj["oid"] == oid:
            return obj
    raise KeyError(oid)
