"""Authenticate against a BitBucket repository."""

from typing import Any, Optional

import httpx

from lfshost.auth.remote import DEFAULT_PROVIDER_TIMEOUT, RepositoryAccessAuthenticator

BITBUCKET_API_URL = "https://api.bitbucket.org"


class BitBucketAuthenticator(RepositoryAccessAuthenticator):
    """Allow users who can see {workspace}/{repository}.

    BitBucket only returns a private repository to users with read access,
    so a lookup that returns the repository is enough. The password is
    usually an app password.
    """

    name = "bitbucket"

    def __init__(
        self,
        workspace: str,
        repository: str,
        api_url: str = BITBUCKET_API_URL,
        timeout: float = DEFAULT_PROVIDER_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(workspace, repository, api_url, timeout, transport)

    def repository_url(self) -> str:
        return f"{self.api_url}/2.0/repositories/{self.owner}/{self.repository}"

    def is_allowed(self, body: Any) -> bool:
        return isinstance(body, dict) and body.get("type") == "repository"
