"""
Tests for the Blob Storage image store.

The blob service client is mocked; uploads are fed from real files.
"""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
)

from trailbook_storage.blob import BlobImageStore, image_storage_path
from trailbook_storage.blob.image_store import _translate_blob_error
from trailbook_storage.config import CosmosAuthMethod, StorageConfig
from trailbook_storage.exceptions import (
    AuthenticationError,
    PermissionDeniedError,
    StorageConnectionError,
    StorageIOError,
    TransientStorageError,
)

from conftest import write_image

BLOB_URL = "https://acct.blob.core.windows.net/trailbook-images/hikes/h1/images/i1.jpg"


def http_error(status: int) -> HttpResponseError:
    error = HttpResponseError(message=f"status {status}")
    error.status_code = status
    return error


@pytest.fixture
def blob_client() -> MagicMock:
    client = MagicMock()
    client.url = BLOB_URL

    async def upload_blob(data, length, overwrite, content_settings, progress_hook):
        await progress_hook(length // 2, length)
        await progress_hook(length, length)

    client.upload_blob = AsyncMock(side_effect=upload_blob)
    client.delete_blob = AsyncMock()
    return client


@pytest.fixture
def service_client(blob_client) -> MagicMock:
    client = MagicMock()
    client.create_container = AsyncMock()
    client.get_blob_client.return_value = blob_client
    client.close = AsyncMock()
    return client


@pytest.fixture
def store(service_client) -> BlobImageStore:
    return BlobImageStore(service_client, "trailbook-images")


class TestStoragePath:
    def test_hike_image(self):
        assert image_storage_path("h1", "i1", ".png") == "hikes/h1/images/i1.png"

    def test_observation_image(self):
        assert (
            image_storage_path("h1", "i1", observation_id="o1")
            == "hikes/h1/observations/o1/images/i1.jpg"
        )

    def test_blank_extension(self):
        assert image_storage_path("h1", "i1", "") == "hikes/h1/images/i1.jpg"


class TestErrorTranslation:
    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (ClientAuthenticationError("expired"), AuthenticationError),
            (ServiceRequestError("dns"), TransientStorageError),
            (http_error(403), PermissionDeniedError),
            (http_error(503), TransientStorageError),
            (http_error(502), TransientStorageError),
            (http_error(408), TransientStorageError),
            (http_error(400), StorageIOError),
        ],
    )
    def test_mapping(self, error, expected):
        assert isinstance(_translate_blob_error(error, "upload_image", "p"), expected)


class TestFromConfig:
    def test_nothing_configured(self, tmp_path):
        with pytest.raises(StorageConnectionError):
            BlobImageStore.from_config(StorageConfig(data_dir=tmp_path))

    def test_key_auth_needs_connection_string(self, tmp_path):
        config = StorageConfig(
            data_dir=tmp_path,
            blob_account_url="https://acct.blob.core.windows.net",
            cosmos_auth_method=CosmosAuthMethod.KEY,
            cosmos_key="k",
        )
        with pytest.raises(AuthenticationError):
            BlobImageStore.from_config(config)

    @pytest.mark.asyncio
    async def test_connection_string(self, tmp_path):
        config = StorageConfig(
            data_dir=tmp_path,
            blob_connection_string=(
                "DefaultEndpointsProtocol=https;AccountName=acct;"
                "AccountKey=a2V5;EndpointSuffix=core.windows.net"
            ),
            blob_container="photos",
        )

        store = BlobImageStore.from_config(config)

        assert store.container == "photos"
        await store.close()


class TestUpload:
    @pytest.mark.asyncio
    async def test_upload_reports_progress(self, store, service_client, tmp_path):
        image = Path(write_image(tmp_path, "cover.jpg", size=64))
        events = []

        metadata = await store.upload(
            image, "hikes/h1/images/i1.jpg", uploaded_by="u1", on_progress=events.append
        )

        assert metadata.url == BLOB_URL
        assert metadata.size == 64
        assert metadata.id == "i1"
        assert metadata.uploaded_by == "u1"
        assert [e.fraction for e in events] == [0.5, 1.0, 1.0]
        assert events[-1].is_complete
        assert events[-1].download_url == BLOB_URL
        service_client.create_container.assert_awaited_once_with("trailbook-images")

    @pytest.mark.asyncio
    async def test_existing_container_is_fine(self, store, service_client, tmp_path):
        service_client.create_container.side_effect = ResourceExistsError("exists")
        image = Path(write_image(tmp_path, "cover.jpg"))

        await store.upload(image, "p.jpg")
        await store.upload(image, "q.jpg")

        service_client.create_container.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_service_failure_is_translated(self, store, blob_client, tmp_path):
        blob_client.upload_blob.side_effect = http_error(503)
        image = Path(write_image(tmp_path, "cover.jpg"))

        with pytest.raises(TransientStorageError):
            await store.upload(image, "p.jpg")

    @pytest.mark.asyncio
    async def test_missing_local_file(self, store, tmp_path):
        with pytest.raises(StorageIOError):
            await store.upload(tmp_path / "nope.jpg", "p.jpg")


class TestDelete:
    @pytest.mark.asyncio
    async def test_missing_blob_is_success(self, store, blob_client):
        blob_client.delete_blob.side_effect = ResourceNotFoundError("gone")
        await store.delete("p.jpg")

    @pytest.mark.asyncio
    async def test_download_url(self, store):
        assert await store.get_download_url("p.jpg") == BLOB_URL

    @pytest.mark.asyncio
    async def test_close(self, store, service_client):
        await store.close()
        service_client.close.assert_awaited_once()
