"""
Tests for the Cosmos DB repositories.

The connection is mocked; these tests cover document mapping, ownership
checks, error translation and retry wiring without a Cosmos account.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from azure.cosmos.exceptions import CosmosHttpResponseError

from trailbook_storage.config import StorageConfig
from trailbook_storage.cosmos import (
    CosmosConnection,
    CosmosHikeRepository,
    CosmosObservationRepository,
    translate_cosmos_error,
)
from trailbook_storage.cosmos.client import HIKES_CONTAINER, OBSERVATIONS_CONTAINER
from trailbook_storage.exceptions import (
    AuthenticationError,
    MalformedRecordError,
    PermissionDeniedError,
    RecordNotFoundError,
    StorageConnectionError,
    StorageIOError,
    TransientStorageError,
)
from trailbook_storage.models import AccessControl, HikeFilter
from trailbook_storage.repositories import StorageBackend
from trailbook_storage.resilience import RetryPolicy
from trailbook_storage.result import LOADING, Error, Success

from conftest import make_hike, make_observation

OWNER = "user-1"


@pytest.fixture
def connection() -> MagicMock:
    conn = MagicMock(spec=CosmosConnection)
    conn.upsert_item = AsyncMock(side_effect=lambda container, item, kind="record": dict(item, _ts=1))
    conn.read_item = AsyncMock(return_value=None)
    conn.delete_item = AsyncMock(return_value=True)
    conn.query_items = AsyncMock(return_value=[])
    return conn


@pytest.fixture
def hikes(connection) -> CosmosHikeRepository:
    return CosmosHikeRepository(connection, poll_interval=0.01, retry_policy=None)


@pytest.fixture
def observations(connection) -> CosmosObservationRepository:
    return CosmosObservationRepository(connection, poll_interval=0.01, retry_policy=None)


class TestTranslateCosmosError:
    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            (404, RecordNotFoundError),
            (401, AuthenticationError),
            (403, PermissionDeniedError),
            (408, TransientStorageError),
            (429, TransientStorageError),
            (449, TransientStorageError),
            (503, TransientStorageError),
            (400, StorageIOError),
        ],
    )
    def test_status_mapping(self, status, expected):
        error = CosmosHttpResponseError(status_code=status, message="boom")
        assert isinstance(translate_cosmos_error(error, "read_hike", "hike", "h1"), expected)

    def test_transient_keeps_status(self):
        error = CosmosHttpResponseError(status_code=429, message="throttled")
        translated = translate_cosmos_error(error, "query_hike")
        assert translated.status_code == 429


class TestCosmosConnection:
    def test_requires_endpoint(self, tmp_path):
        with pytest.raises(StorageConnectionError):
            CosmosConnection(StorageConfig(data_dir=tmp_path))


class TestCosmosHikeRepository:
    def test_backend(self, hikes):
        assert hikes.backend is StorageBackend.REMOTE

    @pytest.mark.asyncio
    async def test_create_strips_system_fields(self, hikes, connection):
        hike = make_hike(OWNER, "Cloud hike")

        result = await hikes.create_hike(hike)

        assert result == Success(hike)
        container, document = connection.upsert_item.await_args.args
        assert container == HIKES_CONTAINER
        assert document["id"] == hike.id

    @pytest.mark.asyncio
    async def test_get_missing(self, hikes):
        assert await hikes.get_hike("absent") == Success(None)

    @pytest.mark.asyncio
    async def test_malformed_document(self, hikes, connection):
        connection.read_item.return_value = {"id": "h1", "length_km": "far"}

        result = await hikes.get_hike("h1")

        assert isinstance(result, Error)
        assert isinstance(result.cause, MalformedRecordError)

    @pytest.mark.asyncio
    async def test_delete_requires_owner(self, hikes, connection):
        connection.read_item.return_value = make_hike("someone", "Theirs").to_dict()

        result = await hikes.delete_hike("h1", OWNER)

        assert isinstance(result.cause, PermissionDeniedError)
        connection.delete_item.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delete_removes_observations_first(self, hikes, connection):
        hike = make_hike(OWNER, "Mine")
        connection.read_item.return_value = hike.to_dict()
        connection.query_items.return_value = [{"id": "o1"}, {"id": "o2"}]

        assert await hikes.delete_hike(hike.id, OWNER) == Success(None)

        deleted = [call.args[:2] for call in connection.delete_item.await_args_list]
        assert deleted == [
            (OBSERVATIONS_CONTAINER, "o1"),
            (OBSERVATIONS_CONTAINER, "o2"),
            (HIKES_CONTAINER, hike.id),
        ]

    @pytest.mark.asyncio
    async def test_delete_missing(self, hikes):
        result = await hikes.delete_hike("absent", OWNER)
        assert isinstance(result.cause, RecordNotFoundError)

    @pytest.mark.asyncio
    async def test_share_and_revoke(self, hikes, connection):
        hike = make_hike(OWNER, "Shared")
        connection.read_item.return_value = hike.to_dict()

        assert await hikes.share_hike(hike.id, "friend") == Success(None)
        shared = connection.upsert_item.await_args.args[1]
        assert shared["access_control"]["shared_users"] == ["friend"]

        connection.read_item.return_value = shared
        assert await hikes.revoke_access(hike.id, "friend") == Success(None)
        assert connection.upsert_item.await_args.args[1]["access_control"]["shared_users"] == []

    @pytest.mark.asyncio
    async def test_blank_search_skips_query(self, hikes, connection):
        assert await hikes.search_hikes("  ", OWNER) == Success([])
        connection.query_items.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_search_passes_parameters(self, hikes, connection):
        hike = make_hike(OWNER, "Glen")
        connection.query_items.return_value = [hike.to_dict()]

        assert await hikes.search_hikes(" gl ", OWNER) == Success([hike])
        parameters = connection.query_items.await_args.kwargs["parameters"]
        assert {"name": "@query", "value": "gl"} in parameters

    @pytest.mark.asyncio
    async def test_filter_in_memory(self, hikes, connection):
        short = make_hike(OWNER, "Short", length_km=2.0)
        shared = make_hike("other", "Long", length_km=20.0, access_control=AccessControl([], [OWNER]))
        connection.query_items.return_value = [short.to_dict(), shared.to_dict()]

        result = await hikes.filter_hikes(OWNER, HikeFilter(min_length=10.0))

        assert result == Success([shared])

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self, connection):
        repo = CosmosHikeRepository(
            connection,
            retry_policy=RetryPolicy(max_retries=3, initial_delay=0.0, jitter_factor=0.0),
        )
        hike = make_hike(OWNER, "Eventually")
        connection.read_item.side_effect = [
            TransientStorageError("read_hike", status_code=503),
            hike.to_dict(),
        ]

        assert await repo.get_hike(hike.id) == Success(hike)
        assert connection.read_item.await_count == 2

    @pytest.mark.asyncio
    async def test_single_attempt_without_policy(self, hikes, connection):
        connection.read_item.side_effect = TransientStorageError("read_hike", status_code=503)

        result = await hikes.get_hike("h1")

        assert isinstance(result.cause, TransientStorageError)
        assert connection.read_item.await_count == 1

    @pytest.mark.asyncio
    async def test_watch_hike_polls(self, hikes, connection):
        hike = make_hike(OWNER, "Polled")
        connection.read_item.return_value = hike.to_dict()

        async with hikes.watch_hike(hike.id) as live:
            assert await live.first() is LOADING
            assert await asyncio.wait_for(live.first(), timeout=2) == Success(hike)


class TestCosmosObservationRepository:
    @pytest.mark.asyncio
    async def test_list_uses_hike_partition(self, observations, connection):
        note = make_observation("h1", "Deer")
        connection.query_items.return_value = [note.to_dict()]

        assert await observations.get_observations_for_hike("h1") == Success([note])
        assert connection.query_items.await_args.kwargs["partition_key"] == "h1"

    @pytest.mark.asyncio
    async def test_update_bumps_updated_at(self, observations, connection):
        note = make_observation("h1", "Deer")

        updated = (await observations.update_observation(note)).get_or_throw()

        assert updated.updated_at > note.created_at
        assert connection.upsert_item.await_args.args[0] == OBSERVATIONS_CONTAINER

    @pytest.mark.asyncio
    async def test_create_many(self, observations, connection):
        notes = [make_observation("h1", f"n{i}") for i in range(3)]

        assert await observations.create_observations(notes) == Success(notes)
        assert connection.upsert_item.await_count == 3

    @pytest.mark.asyncio
    async def test_delete(self, observations, connection):
        assert await observations.delete_observation("h1", "o1") == Success(None)
        connection.delete_item.assert_awaited_once_with(
            OBSERVATIONS_CONTAINER, "o1", "h1", kind="observation"
        )
