"""Authentication of Git LFS clients.

Git LFS clients authenticate with HTTP Basic Auth, the same credentials
Git itself uses for the remote. The credential is checked once per batch
request by exactly one configured authenticator:

- DictionaryAuthenticator: a static table of users loaded at startup
- GitHubAuthenticator: read access to a GitHub organisation/repository
- BitBucketAuthenticator: access to a BitBucket workspace/repository
"""

import base64
import binascii
import logging
import os
import sys
from typing import Optional

from lfshost.core import AuthorizationDecision, Credential

LOGLEVEL = os.environ.get("LFS_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("auth")
logger.setLevel(LOGLEVEL)

# Reason reported for every denial; the protocol does not distinguish
# malformed credentials from rejected ones.
UNAUTHORIZED = "Unauthorized"


def extract_credential(authorization: Optional[str]) -> Optional[Credential]:
    """Extract a credential from an HTTP Basic Auth header.

    Format: Authorization: Basic base64(identifier:secret)

    Args:
        authorization: The Authorization header value

    Returns:
        Credential, or None if the header is missing or not usable Basic Auth
    """
    if not authorization:
        return None

    scheme, _, encoded = authorization.strip().partition(" ")
    if scheme.lower() != "basic" or not encoded.strip():
        return None

    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None

    if ":" not in decoded:
        return None
    identifier, secret = decoded.split(":", 1)
    if not identifier or not secret:
        return None
    return Credential(identifier=identifier, secret=secret)


class Authenticator:
    """Base class for credential authenticators.

    Implementations are configured once at startup and shared by all
    requests, so they must not keep per-request state.
    """

    name = "base"

    async def authenticate(self, credential: Credential) -> AuthorizationDecision:
        """Decide whether the credential may use the LFS server."""
        raise NotImplementedError


from lfshost.auth.dictionary import DictionaryAuthenticator  # noqa: E402
from lfshost.auth.github import GitHubAuthenticator  # noqa: E402
from lfshost.auth.bitbucket import BitBucketAuthenticator  # noqa: E402

__all__ = [
    "UNAUTHORIZED",
    "extract_credential",
    "Authenticator",
    "DictionaryAuthenticator",
    "GitHubAuthenticator",
    "BitBucketAuthenticator",
]
