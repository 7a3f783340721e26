"""Git LFS (Large File Storage) Batch API implementation.

This module implements the Git LFS Batch API specification for handing
out presigned storage URLs for large file uploads and downloads.

Git LFS Protocol:
1. Client sends Batch API request to {base}/objects/batch
2. Server authenticates the request once, then checks every object in storage
3. Server responds with presigned URLs for upload/download
4. Client uploads/downloads directly to storage (no bytes pass through here)
5. Optionally, client calls the verify endpoint after upload

Reference: https://github.com/git-lfs/git-lfs/blob/main/docs/api/batch.md
"""

import asyncio
import logging
import os
import sys
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field, ValidationError

from lfshost.auth import UNAUTHORIZED, Authenticator, extract_credential
from lfshost.core import (
    AuthorizationDecision,
    ObjectValidationError,
    StorageError,
    TransferOperation,
)
from lfshost.core.metrics import (
    LFS_AUTH_DECISIONS_TOTAL,
    LFS_BATCH_DURATION_SECONDS,
    LFS_BATCH_OBJECTS_TOTAL,
    LFS_BATCH_REQUESTS_TOTAL,
)
from lfshost.core.oid import storage_key, validate_object
from lfshost.storage import DEFAULT_EXPIRES_IN, BlobAdapter, TransferAction

LOGLEVEL = os.environ.get("LFS_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("lfs")
logger.setLevel(LOGLEVEL)

# Git LFS content types
LFS_CONTENT_TYPE = "application/vnd.git-lfs+json"

LFS_AUTHENTICATE_HEADERS = {
    "WWW-Authenticate": 'Basic realm="Git LFS"',
    "LFS-Authenticate": 'Basic realm="Git LFS"',
}

# Default timeout for each call to the authenticator or storage backend
DEFAULT_TIMEOUT = 10.0

# Default number of storage calls in flight for one batch request
DEFAULT_MAX_CONCURRENCY = 16


class LFSObjectRequest(BaseModel):
    """A single object in an LFS batch request.

    The oid and size are checked per object so that one bad entry does not
    fail the whole batch.
    """

    oid: str = Field(..., description="The object ID (SHA-256 hash)")
    size: Any = Field(..., description="Size in bytes, checked per object")


class LFSRef(BaseModel):
    """Git reference information."""

    name: str = Field(..., description="Fully-qualified Git ref (e.g., refs/heads/main)")


class LFSBatchRequest(BaseModel):
    """Git LFS Batch API request body."""

    operation: Literal["download", "upload"] = Field(
        ..., description="Either 'download' or 'upload'"
    )
    objects: List[LFSObjectRequest] = Field(
        ..., min_length=1, description="List of objects"
    )
    transfers: Optional[List[str]] = Field(
        default=["basic"], description="Transfer adapters (default: basic)"
    )
    ref: Optional[LFSRef] = Field(default=None, description="Git ref context")
    hash_algo: Optional[str] = Field(
        default="sha256", description="Hash algorithm (default: sha256)"
    )


class LFSAction(BaseModel):
    """An action (upload/download/verify) for an LFS object."""

    href: str = Field(..., description="URL for the action")
    method: Optional[str] = Field(default=None, description="HTTP verb for href")
    header: Optional[Dict[str, str]] = Field(
        default=None, description="HTTP headers to include"
    )
    expires_in: Optional[int] = Field(
        default=None, description="Seconds until URL expires"
    )
    expires_at: Optional[datetime] = Field(
        default=None, description="When the URL expires"
    )

    @classmethod
    def from_transfer(cls, action: TransferAction) -> "LFSAction":
        return cls(
            href=action.href,
            method=action.method,
            header=action.header,
            expires_in=action.expires_in,
            expires_at=action.expires_at,
        )


class LFSObjectError(BaseModel):
    """An error scoped to one object of a batch."""

    code: int
    message: str


class LFSObjectResponse(BaseModel):
    """Response for a single LFS object in batch response."""

    oid: str
    size: Any
    authenticated: Optional[bool] = None
    actions: Optional[Dict[str, LFSAction]] = None
    error: Optional[LFSObjectError] = None


class LFSBatchResponse(BaseModel):
    """Git LFS Batch API response body."""

    transfer: str = "basic"
    objects: List[LFSObjectResponse]
    hash_algo: str = "sha256"


class LFSVerifyRequest(BaseModel):
    """Git LFS verify request body."""

    oid: str = Field(..., description="Object ID to verify")
    size: Any = Field(..., description="Expected size in bytes")


def lfs_error_response(
    status_code: int, message: str, headers: Optional[Dict[str, str]] = None
) -> JSONResponse:
    """Return a whole-request error in the Git LFS error format."""
    return JSONResponse(
        status_code=status_code,
        content={"message": message},
        headers=headers,
        media_type=LFS_CONTENT_TYPE,
    )


def describe_validation_error(error: ValidationError) -> str:
    """Summarize a pydantic validation error for an LFS error message."""
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        messages.append(f"{location}: {item.get('msg')}" if location else item.get("msg"))
    return "; ".join(messages)


class BatchProcessor:
    """Process Git LFS batch requests.

    The processor holds no per-request state. For each request the
    authenticator is consulted exactly once, before any storage call;
    objects are then looked up in storage concurrently and the response
    keeps the order of the request.
    """

    def __init__(
        self,
        authenticator: Authenticator,
        storage: BlobAdapter,
        expires_in: int = DEFAULT_EXPIRES_IN,
        key_prefix: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ):
        """Initialize the processor.

        Args:
            authenticator: The configured credential authenticator
            storage: The configured storage adapter
            expires_in: Lifetime of signed URLs in seconds
            key_prefix: Prefix of every storage key
            timeout: Upper bound in seconds for each external call
            max_concurrency: Storage calls in flight for one batch request
        """
        self.authenticator = authenticator
        self.storage = storage
        self.expires_in = expires_in
        self.key_prefix = key_prefix
        self.timeout = timeout
        self.max_concurrency = max(1, max_concurrency)

    async def authorize(self, authorization: Optional[str]) -> AuthorizationDecision:
        """Authenticate a request from its Authorization header.

        A missing or malformed credential is denied without asking the
        authenticator. Authenticator failures and timeouts are denials.
        """
        credential = extract_credential(authorization)
        if credential is None:
            decision = AuthorizationDecision.deny(UNAUTHORIZED)
        else:
            try:
                decision = await asyncio.wait_for(
                    self.authenticator.authenticate(credential), self.timeout
                )
            except asyncio.TimeoutError:
                logger.warning(f"{self.authenticator.name} auth timed out")
                decision = AuthorizationDecision.deny(UNAUTHORIZED)
            except Exception as e:
                logger.error(
                    f"{self.authenticator.name} auth failed: {type(e).__name__}",
                    exc_info=True,
                )
                decision = AuthorizationDecision.deny(UNAUTHORIZED)

        LFS_AUTH_DECISIONS_TOTAL.labels(
            authenticator=self.authenticator.name,
            decision="allow" if decision.allowed else "deny",
        ).inc()
        return decision

    async def _call(self, coro):
        return await asyncio.wait_for(coro, self.timeout)

    async def process(
        self,
        request: LFSBatchRequest,
        verify_href: Optional[str] = None,
        authorization: Optional[str] = None,
    ) -> LFSBatchResponse:
        """Handle an authenticated Git LFS Batch API request.

        Args:
            request: The batch request
            verify_href: URL of the verify endpoint, added to upload actions
            authorization: Authorization header to include in verify actions

        Returns:
            LFSBatchResponse with one entry per requested object, in order
        """
        operation = TransferOperation(request.operation)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def process_one(obj: LFSObjectRequest) -> LFSObjectResponse:
            async with semaphore:
                return await self._process_object(
                    operation, obj, verify_href, authorization
                )

        with LFS_BATCH_DURATION_SECONDS.labels(operation=operation.value).time():
            objects = await asyncio.gather(
                *(process_one(obj) for obj in request.objects)
            )

        return LFSBatchResponse(transfer="basic", objects=list(objects))

    async def _process_object(
        self,
        operation: TransferOperation,
        obj: LFSObjectRequest,
        verify_href: Optional[str],
        authorization: Optional[str],
    ) -> LFSObjectResponse:
        try:
            response, result = await self._resolve_object(
                operation, obj, verify_href, authorization
            )
        except Exception as e:
            logger.error(f"Error handling LFS object {obj.oid}: {e}", exc_info=True)
            response = self._error(obj, 503, "storage backend unavailable")
            result = "unavailable"

        LFS_BATCH_OBJECTS_TOTAL.labels(operation=operation.value, result=result).inc()
        return response

    async def _resolve_object(
        self,
        operation: TransferOperation,
        obj: LFSObjectRequest,
        verify_href: Optional[str],
        authorization: Optional[str],
    ):
        try:
            descriptor = validate_object(obj.oid, obj.size)
        except ObjectValidationError as e:
            return self._error(obj, 422, str(e)), "invalid"

        key = storage_key(descriptor.oid, self.key_prefix)

        try:
            metadata = await self._call(self.storage.exists(key))
        except (StorageError, asyncio.TimeoutError) as e:
            logger.warning(f"LFS object {descriptor.oid}: existence unknown: {e!r}")
            return self._error(obj, 503, "storage backend unavailable"), "unavailable"

        if operation == TransferOperation.download:
            if metadata is None:
                return self._error(obj, 404, "object not found"), "not_found"
            if metadata.size != descriptor.size:
                return self._error(obj, 422, "size mismatch"), "size_mismatch"
        elif metadata is not None:
            if metadata.size != descriptor.size:
                # Refuse to replace a stored object with different content
                return self._error(obj, 422, "size mismatch"), "size_mismatch"
            logger.info(f"LFS object {descriptor.oid} already exists, skipping upload")
            return LFSObjectResponse(oid=obj.oid, size=obj.size), "present"

        try:
            action = await self._call(
                self.storage.url_for(key, operation, descriptor.size, self.expires_in)
            )
        except (StorageError, asyncio.TimeoutError) as e:
            logger.warning(f"LFS object {descriptor.oid}: URL signing failed: {e!r}")
            return self._error(obj, 503, "storage backend unavailable"), "unavailable"

        actions = {operation.value: LFSAction.from_transfer(action)}
        if operation == TransferOperation.upload and verify_href:
            actions["verify"] = LFSAction(
                href=verify_href,
                method="POST",
                header={"Authorization": authorization} if authorization else None,
                expires_in=action.expires_in,
                expires_at=action.expires_at,
            )

        return (
            LFSObjectResponse(
                oid=obj.oid, size=obj.size, authenticated=True, actions=actions
            ),
            "action",
        )

    @staticmethod
    def _error(obj: LFSObjectRequest, code: int, message: str) -> LFSObjectResponse:
        return LFSObjectResponse(
            oid=obj.oid,
            size=obj.size,
            error=LFSObjectError(code=code, message=message),
        )

    async def verify(self, oid: Any, size: Any) -> Optional[LFSObjectError]:
        """Check that an uploaded object is stored with the declared size.

        Returns:
            None if the object is stored correctly, an LFSObjectError otherwise
        """
        try:
            descriptor = validate_object(oid, size)
        except ObjectValidationError as e:
            return LFSObjectError(code=422, message=str(e))

        try:
            metadata = await self._call(
                self.storage.exists(storage_key(descriptor.oid, self.key_prefix))
            )
        except (StorageError, asyncio.TimeoutError) as e:
            logger.warning(f"LFS verify {descriptor.oid}: existence unknown: {e!r}")
            return LFSObjectError(code=503, message="storage backend unavailable")

        if metadata is None:
            return LFSObjectError(code=404, message="object not found")
        if metadata.size != descriptor.size:
            return LFSObjectError(code=422, message="size mismatch")
        return None


def create_lfs_router(processor: BatchProcessor) -> APIRouter:
    """Create a FastAPI router for Git LFS endpoints.

    Args:
        processor: The batch processor serving the endpoints

    Returns:
        FastAPI router with Git LFS endpoints
    """
    router = APIRouter()

    async def lfs_auth_required(
        request: Request,
        authorization: Optional[str] = Header(None),
    ) -> AuthorizationDecision:
        """Require an allowed credential for LFS operations.

        Git LFS uses the same Basic Auth as Git itself.
        """
        logger.debug(f"LFS auth request: method={request.method}, path={request.url.path}")
        decision = await processor.authorize(authorization)
        if not decision.allowed:
            raise HTTPException(
                status_code=401,
                detail=decision.reason or UNAUTHORIZED,
                headers=LFS_AUTHENTICATE_HEADERS,
            )
        return decision

    async def read_body(request: Request, model):
        try:
            body = await request.json()
        except ValueError as e:
            logger.warning(f"LFS: failed to parse request body: {e}")
            raise HTTPException(status_code=422, detail="Invalid request body: not JSON")
        if not isinstance(body, dict):
            raise HTTPException(status_code=422, detail="Invalid request body: not an object")
        try:
            return model(**body)
        except ValidationError as e:
            raise HTTPException(
                status_code=422,
                detail=f"Invalid request body: {describe_validation_error(e)}",
            )

    @router.post("/objects/batch")
    async def lfs_batch(
        request: Request,
        authorization: Optional[str] = Header(None),
    ):
        """Git LFS Batch API endpoint.

        This is the main entry point for Git LFS operations.
        """
        try:
            await lfs_auth_required(request, authorization)
        except HTTPException:
            LFS_BATCH_REQUESTS_TOTAL.labels(
                operation="unknown", outcome="unauthorized"
            ).inc()
            raise

        # Validate content type
        content_type = request.headers.get("content-type", "")
        if LFS_CONTENT_TYPE not in content_type:
            # Be lenient - some clients don't set the correct content type
            logger.warning(f"LFS batch: invalid content-type: {content_type}")

        try:
            batch_request = await read_body(request, LFSBatchRequest)
            if (batch_request.hash_algo or "sha256") != "sha256":
                raise HTTPException(
                    status_code=409,
                    detail=f"Unsupported hash algorithm: {batch_request.hash_algo}",
                )
            if batch_request.transfers and "basic" not in batch_request.transfers:
                raise HTTPException(
                    status_code=422,
                    detail="Only the basic transfer adapter is supported",
                )
        except HTTPException:
            LFS_BATCH_REQUESTS_TOTAL.labels(
                operation="unknown", outcome="malformed"
            ).inc()
            raise

        logger.info(
            f"LFS batch: operation={batch_request.operation}, "
            f"objects={len(batch_request.objects)}"
        )

        # Build verify URL
        verify_href = str(request.url).rsplit("/objects/batch", 1)[0] + "/objects/verify"

        response = await processor.process(
            batch_request,
            verify_href=verify_href,
            authorization=authorization,
        )
        LFS_BATCH_REQUESTS_TOTAL.labels(
            operation=batch_request.operation, outcome="ok"
        ).inc()

        return JSONResponse(
            content=response.model_dump(mode="json", exclude_none=True),
            media_type=LFS_CONTENT_TYPE,
        )

    @router.post("/objects/verify")
    async def lfs_verify(
        request: Request,
        decision: AuthorizationDecision = Depends(lfs_auth_required),
    ):
        """Git LFS verify endpoint.

        Called by the client after a successful upload to confirm the object exists.
        """
        verify_request = await read_body(request, LFSVerifyRequest)
        logger.info(f"LFS verify: oid={verify_request.oid}")

        error = await processor.verify(verify_request.oid, verify_request.size)
        if error is not None:
            raise HTTPException(status_code=error.code, detail=error.message)

        return Response(status_code=200, media_type=LFS_CONTENT_TYPE)

    return router
