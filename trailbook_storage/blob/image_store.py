"""Azure Blob Storage image store for authenticated users."""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Any

import aiofiles
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.storage.blob import ContentSettings
from azure.storage.blob.aio import BlobServiceClient

from ..config import CosmosAuthMethod, StorageConfig, get_credential
from ..exceptions import (
    AuthenticationError,
    PermissionDeniedError,
    StorageConnectionError,
    StorageIOError,
    TransientStorageError,
)
from ..models import ImageMetadata, UploadProgress
from ..repositories.base import ProgressCallback, RemoteImageStore
from ..resilience import RETRYABLE_STATUS_CODES

logger = logging.getLogger(__name__)

_SERVICE_ERRORS = (HttpResponseError, ServiceRequestError, ServiceResponseError)


def image_storage_path(
    hike_id: str,
    image_id: str,
    extension: str = "jpg",
    observation_id: str | None = None,
) -> str:
    """
    Object key for an image.

    Hike images:        hikes/<hike_id>/images/<image_id>.<ext>
    Observation images: hikes/<hike_id>/observations/<observation_id>/images/<image_id>.<ext>
    """
    ext = extension.lstrip(".") or "jpg"
    if observation_id:
        return f"hikes/{hike_id}/observations/{observation_id}/images/{image_id}.{ext}"
    return f"hikes/{hike_id}/images/{image_id}.{ext}"


def _translate_blob_error(error: Exception, operation: str, storage_path: str) -> Exception:
    if isinstance(error, ClientAuthenticationError):
        return AuthenticationError(operation, str(error))
    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return TransientStorageError(operation, error)
    if isinstance(error, HttpResponseError):
        status = error.status_code
        if status == 403:
            return PermissionDeniedError("unknown", storage_path, str(error))
        if status in RETRYABLE_STATUS_CODES:
            return TransientStorageError(operation, error, status_code=status)
    return StorageIOError(operation, storage_path, error)


class BlobImageStore(RemoteImageStore):
    """
    Azure Blob Storage implementation of the remote image store.

    Blobs are stored under the keys produced by ``image_storage_path``
    in a single container.
    """

    def __init__(self, client: BlobServiceClient, container: str, credential: Any = None):
        """
        Args:
            client: Async blob service client
            container: Container name
            credential: Credential to close with the store, if it owns one
        """
        self.client = client
        self.container = container
        self._credential = credential
        self._container_ready = False

    @classmethod
    def from_config(cls, config: StorageConfig) -> BlobImageStore:
        """Build a store from a connection string or an account URL plus credential."""
        if config.blob_connection_string:
            client = BlobServiceClient.from_connection_string(config.blob_connection_string)
            return cls(client, config.blob_container)
        if config.blob_account_url:
            if config.cosmos_auth_method is CosmosAuthMethod.KEY:
                raise AuthenticationError(
                    config.blob_account_url,
                    "key authentication needs blob_connection_string",
                )
            credential = get_credential(config)
            client = BlobServiceClient(config.blob_account_url, credential=credential)
            return cls(client, config.blob_container, credential=credential)
        raise StorageConnectionError(
            "blob", ValueError("blob_connection_string or blob_account_url is required")
        )

    async def _ensure_container(self) -> None:
        if self._container_ready:
            return
        try:
            await self.client.create_container(self.container)
            logger.info(f"Created blob container {self.container}")
        except ResourceExistsError:
            pass
        except _SERVICE_ERRORS as e:
            raise _translate_blob_error(e, "create_container", self.container) from e
        self._container_ready = True

    async def upload(
        self,
        local_path: Path,
        storage_path: str,
        content_type: str = "image/jpeg",
        uploaded_by: str = "",
        on_progress: ProgressCallback | None = None,
    ) -> ImageMetadata:
        """Upload a local file.

        Progress is forwarded as ``UploadProgress`` events; the last event
        always has ``is_complete=True``.
        """
        image_id = Path(storage_path).stem or str(uuid.uuid4())

        try:
            async with aiofiles.open(local_path, "rb") as f:
                data = await f.read()
        except OSError as e:
            raise StorageIOError("read_image", str(local_path), e) from e

        total = len(data)

        async def progress_hook(current: int, total_bytes: int | None) -> None:
            if on_progress is not None:
                on_progress(UploadProgress(image_id, current, total_bytes or total))

        await self._ensure_container()
        blob_client = self.client.get_blob_client(container=self.container, blob=storage_path)
        try:
            await blob_client.upload_blob(
                data,
                length=total,
                overwrite=True,
                content_settings=ContentSettings(content_type=content_type),
                progress_hook=progress_hook,
            )
        except _SERVICE_ERRORS as e:
            raise _translate_blob_error(e, "upload_image", storage_path) from e

        url = blob_client.url
        if on_progress is not None:
            on_progress(
                UploadProgress(
                    image_id,
                    total,
                    total,
                    is_complete=True,
                    download_url=url,
                    storage_path=storage_path,
                )
            )

        logger.debug(f"Uploaded {local_path} to {storage_path} ({total} bytes)")
        return ImageMetadata(
            id=image_id,
            url=url,
            storage_path=storage_path,
            content_type=content_type,
            size=total,
            uploaded_by=uploaded_by,
        )

    async def delete(self, storage_path: str) -> None:
        """Delete a blob. A missing blob is a success."""
        blob_client = self.client.get_blob_client(container=self.container, blob=storage_path)
        try:
            await blob_client.delete_blob()
        except ResourceNotFoundError:
            return
        except _SERVICE_ERRORS as e:
            raise _translate_blob_error(e, "delete_image", storage_path) from e

    async def get_download_url(self, storage_path: str) -> str:
        return self.client.get_blob_client(container=self.container, blob=storage_path).url

    async def close(self) -> None:
        await self.client.close()
        if self._credential is not None and hasattr(self._credential, "close"):
            await self._credential.close()
            self._credential = None
