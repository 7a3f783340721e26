"""Provide common pytest fixtures."""

import asyncio

import httpx
import pytest
import pytest_asyncio

from lfshost.core import AuthorizationDecision, ObjectMetadata, StorageError
from lfshost.auth import Authenticator
from lfshost.lfs import BatchProcessor
from lfshost.server import create_lfs_application
from lfshost.storage import BlobAdapter, TransferAction, expiry_from_now, method_for

from . import BASIC_PASSWORD, BASIC_USER, basic_auth


class FakeAuthenticator(Authenticator):
    """Authenticator allowing one fixed credential and recording every call."""

    name = "fake"

    def __init__(self, username=BASIC_USER, password=BASIC_PASSWORD, delay=0):
        self.username = username
        self.password = password
        self.delay = delay
        self.calls = []

    async def authenticate(self, credential):
        self.calls.append(credential)
        if self.delay:
            await asyncio.sleep(self.delay)
        if (credential.identifier, credential.secret) == (self.username, self.password):
            return AuthorizationDecision.allow()
        return AuthorizationDecision.deny("Unauthorized")


class FakeStorage(BlobAdapter):
    """In-memory storage adapter recording every call.

    `objects` maps storage keys to stored sizes. Keys listed in `broken`
    raise StorageError on `exists`; keys in `slow` never answer in time and
    keys in `delays` answer after that many seconds. `completed` lists the
    keys whose lookups have finished, in the order they finished.
    """

    name = "fake"

    def __init__(self, objects=None, broken=(), slow=(), unsignable=(), delays=None):
        self.objects = dict(objects or {})
        self.broken = set(broken)
        self.slow = set(slow)
        self.unsignable = set(unsignable)
        self.delays = dict(delays or {})
        self.exists_calls = []
        self.url_calls = []
        self.completed = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def exists(self, key):
        self.exists_calls.append(key)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(key, 0))
            if key in self.slow:
                await asyncio.sleep(60)
            if key in self.broken:
                raise StorageError("backend unreachable")
            self.completed.append(key)
            if key not in self.objects:
                return None
            return ObjectMetadata(size=self.objects[key])
        finally:
            self.in_flight -= 1

    async def url_for(self, key, operation, size, expires_in=900):
        self.url_calls.append((key, operation, size))
        if key in self.unsignable:
            raise StorageError("signing failed")
        return TransferAction(
            href=f"https://storage.example.com/{key}?signature=fake",
            method=method_for(operation),
            header={"Content-Type": "application/octet-stream"} if operation.value == "upload" else None,
            expires_in=expires_in,
            expires_at=expiry_from_now(expires_in),
        )


@pytest.fixture
def authenticator():
    """A fake authenticator accepting the test user."""
    return FakeAuthenticator()


@pytest.fixture
def storage():
    """An empty in-memory storage adapter."""
    return FakeStorage()


@pytest.fixture
def processor(authenticator, storage):
    """A batch processor wired to the fakes."""
    return BatchProcessor(authenticator, storage, expires_in=900, timeout=0.5)


@pytest.fixture
def auth_header():
    """A valid Authorization header for the fake authenticator."""
    return basic_auth(BASIC_USER, BASIC_PASSWORD)


@pytest_asyncio.fixture
async def client(processor):
    """An HTTP client talking to the LFS application in process."""
    app = create_lfs_application(processor)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
