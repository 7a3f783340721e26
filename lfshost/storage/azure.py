"""Azure blob container storage for LFS objects."""

import logging
from contextlib import asynccontextmanager
from typing import Callable, Dict, Optional
from urllib.parse import quote

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.storage.blob import BlobSasPermissions, generate_blob_sas
from azure.storage.blob.aio import BlobServiceClient

from lfshost.core import (
    ConfigurationError,
    ObjectMetadata,
    StorageError,
    TransferOperation,
)
from lfshost.storage import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_EXPIRES_IN,
    DEFAULT_READ_TIMEOUT,
    BlobAdapter,
    TransferAction,
    expiry_from_now,
    method_for,
)

logger = logging.getLogger("storage")


def parse_connection_string(connection_string: str) -> Dict[str, str]:
    """Split an Azure storage connection string into its settings."""
    settings = {}
    for part in (connection_string or "").split(";"):
        if not part.strip():
            continue
        name, sep, value = part.partition("=")
        if not sep:
            raise ConfigurationError("Malformed Azure connection string")
        settings[name.strip()] = value.strip()
    return settings


def blob_endpoint(settings: Dict[str, str]) -> Optional[str]:
    """Return the blob service URL described by connection string settings."""
    if settings.get("BlobEndpoint"):
        return settings["BlobEndpoint"].rstrip("/")
    if not settings.get("AccountName"):
        return None
    protocol = settings.get("DefaultEndpointsProtocol", "https")
    suffix = settings.get("EndpointSuffix", "core.windows.net")
    return f"{protocol}://{settings['AccountName']}.blob.{suffix}"


def create_blob_service_factory(
    connection_string: str,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    read_timeout: float = DEFAULT_READ_TIMEOUT,
) -> Callable:
    """Create a factory returning an async context manager for a service client."""

    @asynccontextmanager
    async def blob_service_factory():
        async with BlobServiceClient.from_connection_string(
            connection_string,
            connection_timeout=connect_timeout,
            read_timeout=read_timeout,
        ) as client:
            yield client

    return blob_service_factory


class AzureBlobAdapter(BlobAdapter):
    """Store LFS objects in an Azure blob container and hand out SAS URLs."""

    name = "azure"

    def __init__(
        self,
        blob_service_factory: Callable,
        container: str,
        account_name: str,
        account_key: str,
        account_url: Optional[str] = None,
    ):
        """Initialize the adapter.

        Args:
            blob_service_factory: Factory function that returns an async context
                                  manager for a BlobServiceClient
            container: Blob container name
            account_name: Storage account name used to sign SAS tokens
            account_key: Storage account key used to sign SAS tokens
            account_url: Blob service URL, defaults to the public Azure endpoint
                         of the account
        """
        if not container:
            raise ConfigurationError("An Azure container name is required")
        if not account_name or not account_key:
            raise ConfigurationError(
                "The Azure connection string must contain AccountName and AccountKey"
            )
        self.blob_service_factory = blob_service_factory
        self.container = container
        self.account_name = account_name
        self._account_key = account_key
        self.account_url = (
            account_url or f"https://{account_name}.blob.core.windows.net"
        ).rstrip("/")

    @classmethod
    def from_connection_string(
        cls,
        connection_string: str,
        container: str,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
    ) -> "AzureBlobAdapter":
        """Create an adapter from an Azure storage connection string."""
        settings = parse_connection_string(connection_string)
        return cls(
            create_blob_service_factory(connection_string, connect_timeout, read_timeout),
            container,
            settings.get("AccountName"),
            settings.get("AccountKey"),
            blob_endpoint(settings),
        )

    def blob_url(self, key: str) -> str:
        """Return the unsigned URL of a blob."""
        return f"{self.account_url}/{quote(self.container)}/{quote(key)}"

    async def exists(self, key: str) -> Optional[ObjectMetadata]:
        """Check if a blob exists and return its size."""
        async with self.blob_service_factory() as service:
            blob = service.get_blob_client(container=self.container, blob=key)
            try:
                properties = await blob.get_blob_properties()
            except ResourceNotFoundError:
                return None
            except AzureError as e:
                raise StorageError(
                    f"Azure get_blob_properties failed: {type(e).__name__}"
                ) from e

        etag = properties.etag.strip('"') if properties.etag else None
        return ObjectMetadata(size=properties.size, etag=etag)

    async def url_for(
        self,
        key: str,
        operation: TransferOperation,
        size: int,
        expires_in: int = DEFAULT_EXPIRES_IN,
    ) -> TransferAction:
        """Generate a SAS URL for uploading or downloading one blob."""
        if operation == TransferOperation.upload:
            permission = BlobSasPermissions(create=True, write=True)
            header = {"x-ms-blob-type": "BlockBlob"}
        else:
            permission = BlobSasPermissions(read=True)
            header = None

        expires_at = expiry_from_now(expires_in)
        try:
            sas_token = generate_blob_sas(
                account_name=self.account_name,
                container_name=self.container,
                blob_name=key,
                account_key=self._account_key,
                permission=permission,
                expiry=expires_at,
            )
        except (AzureError, ValueError) as e:
            raise StorageError(f"Azure SAS signing failed: {type(e).__name__}") from e

        href = f"{self.blob_url(key)}?{sas_token}"

        return TransferAction(
            href=href,
            method=method_for(operation),
            header=header,
            expires_in=expires_in,
            expires_at=expires_at,
        )
