"""Shared behaviour for authenticators that ask an identity provider."""

import logging
from typing import Any, Optional

import httpx

from lfshost.auth import UNAUTHORIZED, Authenticator
from lfshost.core import AuthorizationDecision, ConfigurationError, Credential

logger = logging.getLogger("auth")

DEFAULT_PROVIDER_TIMEOUT = 10.0


class RepositoryAccessAuthenticator(Authenticator):
    """Allow a credential if the provider grants it access to one repository.

    The credential is forwarded to the provider as Basic Auth and the
    repository resource is fetched. Any transport error, timeout, non-200
    status or unexpected body is a denial.
    """

    def __init__(
        self,
        owner: str,
        repository: str,
        api_url: str,
        timeout: float = DEFAULT_PROVIDER_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not owner or not repository:
            raise ConfigurationError(
                f"{type(self).__name__} requires both an owner and a repository"
            )
        self.owner = owner
        self.repository = repository
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def repository_url(self) -> str:
        """Return the provider URL describing the configured repository."""
        raise NotImplementedError

    def is_allowed(self, body: Any) -> bool:
        """Check the decoded repository resource for sufficient access."""
        raise NotImplementedError

    async def authenticate(self, credential: Credential) -> AuthorizationDecision:
        """Ask the identity provider whether the credential can read the repository."""
        url = self.repository_url()
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.get(
                    url,
                    auth=(credential.identifier, credential.secret),
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            logger.warning(f"{self.name} auth: provider request failed: {type(e).__name__}")
            return AuthorizationDecision.deny(UNAUTHORIZED)

        if response.status_code != 200:
            logger.info(
                f"{self.name} auth: provider answered {response.status_code} "
                f"for {self.owner}/{self.repository}"
            )
            return AuthorizationDecision.deny(UNAUTHORIZED)

        try:
            body = response.json()
        except ValueError:
            logger.warning(f"{self.name} auth: provider returned a non-JSON body")
            return AuthorizationDecision.deny(UNAUTHORIZED)

        if not self.is_allowed(body):
            logger.info(
                f"{self.name} auth: insufficient access to {self.owner}/{self.repository}"
            )
            return AuthorizationDecision.deny(UNAUTHORIZED)
        return AuthorizationDecision.allow()
