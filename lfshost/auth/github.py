"""Authenticate against a GitHub repository."""

from typing import Any, Optional

import httpx

from lfshost.auth.remote import DEFAULT_PROVIDER_TIMEOUT, RepositoryAccessAuthenticator

GITHUB_API_URL = "https://api.github.com"


class GitHubAuthenticator(RepositoryAccessAuthenticator):
    """Allow users with at least pull access to {organisation}/{repository}.

    The password can be the account password or a personal access token.
    """

    name = "github"

    def __init__(
        self,
        organisation: str,
        repository: str,
        api_url: str = GITHUB_API_URL,
        timeout: float = DEFAULT_PROVIDER_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(organisation, repository, api_url, timeout, transport)

    def repository_url(self) -> str:
        return f"{self.api_url}/repos/{self.owner}/{self.repository}"

    def is_allowed(self, body: Any) -> bool:
        if not isinstance(body, dict):
            return False
        permissions = body.get("permissions")
        if not isinstance(permissions, dict):
            return False
        return permissions.get("pull") is True
