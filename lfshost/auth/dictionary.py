"""Authenticate against a static table of users."""

import hmac
import logging
from typing import Dict

from lfshost.auth import UNAUTHORIZED, Authenticator
from lfshost.core import AuthorizationDecision, ConfigurationError, Credential

logger = logging.getLogger("auth")


class DictionaryAuthenticator(Authenticator):
    """Allow exactly the (identifier, secret) pairs in a fixed mapping."""

    name = "dictionary"

    def __init__(self, users: Dict[str, str]):
        if not users:
            raise ConfigurationError("At least one user is required")
        self._users = {
            str(identifier).encode("utf-8"): str(secret).encode("utf-8")
            for identifier, secret in users.items()
        }

    async def authenticate(self, credential: Credential) -> AuthorizationDecision:
        """Check the credential against every entry in constant time.

        Every entry is compared so the time taken does not reveal whether
        the identifier exists.
        """
        identifier = credential.identifier.encode("utf-8")
        secret = credential.secret.encode("utf-8")
        matched = False
        for known_identifier, known_secret in self._users.items():
            identifier_ok = hmac.compare_digest(identifier, known_identifier)
            secret_ok = hmac.compare_digest(secret, known_secret)
            if identifier_ok and secret_ok:
                matched = True

        if matched:
            return AuthorizationDecision.allow()
        logger.info("Dictionary auth: credential rejected")
        return AuthorizationDecision.deny(UNAUTHORIZED)
