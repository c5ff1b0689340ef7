"""
Cosmos DB access for hikes and observations.

``CosmosConnection`` connects on first use, creates the database and its
two containers if they are missing, and turns ``CosmosHttpResponseError``
into the storage exception taxonomy. It makes exactly one attempt per
call; retrying is up to the repositories.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from azure.cosmos import PartitionKey
from azure.cosmos.aio import ContainerProxy, CosmosClient, DatabaseProxy
from azure.cosmos.exceptions import CosmosHttpResponseError

from ..config import StorageConfig, get_credential
from ..exceptions import (
    AuthenticationError,
    PermissionDeniedError,
    RecordNotFoundError,
    StorageConnectionError,
    StorageIOError,
    TransientStorageError,
)
from ..resilience import RETRYABLE_STATUS_CODES

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Container names
HIKES_CONTAINER = "hikes"
OBSERVATIONS_CONTAINER = "observations"

# Partition key paths
HIKES_PARTITION_KEY = "/id"
OBSERVATIONS_PARTITION_KEY = "/hike_id"


def translate_cosmos_error(
    error: CosmosHttpResponseError,
    operation: str,
    kind: str = "record",
    record_id: str = "",
    user_id: str = "",
) -> Exception:
    """Map a Cosmos failure onto the storage exception taxonomy."""
    status = error.status_code
    if status == 404:
        return RecordNotFoundError(kind, record_id)
    if status == 401:
        return AuthenticationError(operation, str(error))
    if status == 403:
        return PermissionDeniedError(user_id or "unknown", f"{kind}/{record_id}", str(error))
    if status in RETRYABLE_STATUS_CODES:
        return TransientStorageError(operation, error, status_code=status)
    return StorageIOError(operation, cause=error)


class CosmosConnection:
    """Wrapper for the Azure Cosmos DB async client.

    Container partition keys:
    - hikes: /id
    - observations: /hike_id
    """

    def __init__(self, config: StorageConfig):
        """Initialize the Cosmos DB connection wrapper.

        Args:
            config: Storage configuration with the Cosmos endpoint and auth method
        """
        if not config.cosmos_endpoint:
            raise StorageConnectionError("cosmos", ValueError("Cosmos endpoint is required"))

        self.config = config
        self._credential: Any = None
        self._client: CosmosClient | None = None
        self._database: DatabaseProxy | None = None
        self._containers: dict[str, ContainerProxy] = {}
        self._initialized = False

    @property
    def endpoint(self) -> str:
        return self.config.cosmos_endpoint or ""

    async def initialize(self) -> None:
        """Connect and ensure the database and containers exist."""
        if self._initialized:
            return

        self._credential = get_credential(self.config)

        try:
            client = CosmosClient(self.endpoint, credential=self._credential)
            self._client = client

            self._database = await client.create_database_if_not_exists(
                id=self.config.cosmos_database
            )

            await self._ensure_container(HIKES_CONTAINER, HIKES_PARTITION_KEY)
            await self._ensure_container(OBSERVATIONS_CONTAINER, OBSERVATIONS_PARTITION_KEY)

            self._initialized = True
            logger.info(f"Cosmos DB connection initialized: {self.config.cosmos_database}")

        except CosmosHttpResponseError as e:
            await self.close()
            if e.status_code in (401, 403):
                raise AuthenticationError(self.endpoint, str(e)) from e
            raise StorageConnectionError(self.endpoint, e) from e
        except Exception as e:
            await self.close()
            raise StorageConnectionError(self.endpoint, e) from e

    async def _ensure_container(self, name: str, partition_key_path: str) -> None:
        """Create (or open) a container and cache its proxy."""
        if self._database is None:
            raise StorageIOError("ensure_container", cause=RuntimeError("no database handle"))

        container = await self._database.create_container_if_not_exists(
            id=name,
            partition_key=PartitionKey(path=partition_key_path),
        )
        self._containers[name] = container

    async def close(self) -> None:
        """Release the client and credential. The next call reconnects."""
        if self._client:
            await self._client.close()
        if self._credential is not None and hasattr(self._credential, "close"):
            await self._credential.close()
        self._client = None
        self._credential = None
        self._database = None
        self._containers = {}
        self._initialized = False

    async def __aenter__(self) -> CosmosConnection:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def container(self, name: str) -> ContainerProxy:
        """Get a container proxy, connecting on first use."""
        await self.initialize()
        try:
            return self._containers[name]
        except KeyError as e:
            raise StorageIOError("get_container", name, cause=e) from e

    # =========================================================================
    # Item Operations
    # =========================================================================

    async def _execute(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        kind: str,
        record_id: str = "",
    ) -> T:
        """Run a container call, translating Cosmos failures."""
        try:
            return await call()
        except CosmosHttpResponseError as e:
            raise translate_cosmos_error(e, operation, kind, record_id) from e

    async def upsert_item(
        self, container_name: str, item: dict[str, Any], kind: str = "record"
    ) -> dict[str, Any]:
        """Create or replace an item keyed by its ``id``."""
        container = await self.container(container_name)
        return await self._execute(
            f"upsert_{kind}",
            lambda: container.upsert_item(body=item),
            kind,
            item.get("id", ""),
        )

    async def read_item(
        self,
        container_name: str,
        item_id: str,
        partition_key: str,
        kind: str = "record",
    ) -> dict[str, Any] | None:
        """Read an item. Returns None if not found."""
        container = await self.container(container_name)
        try:
            return await self._execute(
                f"read_{kind}",
                lambda: container.read_item(item=item_id, partition_key=partition_key),
                kind,
                item_id,
            )
        except RecordNotFoundError:
            return None

    async def delete_item(
        self,
        container_name: str,
        item_id: str,
        partition_key: str,
        kind: str = "record",
    ) -> bool:
        """Delete an item. Returns False if it did not exist."""
        container = await self.container(container_name)

        try:
            await self._execute(
                f"delete_{kind}",
                lambda: container.delete_item(item=item_id, partition_key=partition_key),
                kind,
                item_id,
            )
            return True
        except RecordNotFoundError:
            return False

    async def query_items(
        self,
        container_name: str,
        query: str,
        parameters: list[dict[str, Any]] | None = None,
        partition_key: str | None = None,
        kind: str = "record",
    ) -> list[dict[str, Any]]:
        """Run a parameterized SQL query and collect every page.

        Passing ``partition_key`` keeps the query inside one partition;
        without it the query fans out across partitions.
        """
        container = await self.container(container_name)

        async def run() -> list[dict[str, Any]]:
            scope: dict[str, Any] = {}
            if partition_key is not None:
                scope["partition_key"] = partition_key
            pages = container.query_items(query=query, parameters=parameters or [], **scope)
            return [item async for item in pages]

        return await self._execute(f"query_{kind}", run, kind)
