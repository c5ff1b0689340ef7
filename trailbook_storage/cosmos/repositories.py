"""
Authenticated-mode repositories backed by Cosmos DB.

Hike documents live in the ``hikes`` container (partitioned by ``/id``),
observation documents in ``observations`` (partitioned by ``/hike_id``).
Cosmos has no push listeners on this path, so live reads poll at the
configured interval; closing the subscription stops the poller.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any, TypeVar

from ..config import DEFAULT_POLL_INTERVAL
from ..exceptions import MalformedRecordError, PermissionDeniedError, RecordNotFoundError
from ..models import Hike, HikeFilter, Observation
from ..repositories.base import HikeRepository, ObservationRepository, StorageBackend
from ..resilience import DEFAULT_RETRY_POLICY, RetryPolicy, retry_with_backoff
from ..result import Result, Success, safe_call
from ..streams import Subscription, live_results
from .client import HIKES_CONTAINER, OBSERVATIONS_CONTAINER, CosmosConnection

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ACCESS_CLAUSE = (
    "(c.owner_id = @user_id"
    " OR ARRAY_CONTAINS(c.access_control.invited_users, @user_id)"
    " OR ARRAY_CONTAINS(c.access_control.shared_users, @user_id))"
)


def _hike_from_document(doc: dict[str, Any]) -> Hike:
    try:
        return Hike.from_dict(doc)
    except (TypeError, ValueError, AttributeError) as e:
        raise MalformedRecordError("hike", str(doc.get("id", "")), str(e)) from e


def _observation_from_document(doc: dict[str, Any]) -> Observation:
    try:
        return Observation.from_dict(doc)
    except (TypeError, ValueError, AttributeError) as e:
        raise MalformedRecordError("observation", str(doc.get("id", "")), str(e)) from e


def _strip_system_fields(doc: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in doc.items() if not key.startswith("_")}


class _CosmosRepository:
    """Shared plumbing: retry, Result wrapping and polling streams."""

    def __init__(
        self,
        connection: CosmosConnection,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        retry_policy: RetryPolicy | None = DEFAULT_RETRY_POLICY,
    ):
        """
        Args:
            connection: Shared Cosmos connection
            poll_interval: Seconds between live-query refreshes
            retry_policy: Policy for each operation; None makes a single attempt
        """
        self.connection = connection
        self.poll_interval = poll_interval
        self.retry_policy = retry_policy

    @property
    def backend(self) -> StorageBackend:
        return StorageBackend.REMOTE

    async def _run(self, operation: str, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        if self.retry_policy is None:
            return await fn(*args)
        return await retry_with_backoff(fn, *args, policy=self.retry_policy, operation=operation)

    async def _call(self, operation: str, fn: Callable[..., Awaitable[T]], *args: Any) -> Result[T]:
        return await safe_call(self._run, operation, fn, *args)

    def _poll(self, operation: str, fetch: Callable[[], Awaitable[T]]) -> Subscription[Result[T]]:
        return live_results(lambda: self._run(operation, fetch), poll_interval=self.poll_interval)


class CosmosHikeRepository(_CosmosRepository, HikeRepository):
    """Hikes stored in Cosmos DB, with sharing through ``access_control``."""

    # =========================================================================
    # Queries
    # =========================================================================

    async def _query_hikes(self, where: str, parameters: list[dict[str, Any]]) -> list[Hike]:
        docs = await self.connection.query_items(
            HIKES_CONTAINER,
            f"SELECT * FROM c WHERE {where} ORDER BY c.date DESC",
            parameters=parameters,
            kind="hike",
        )
        return [_hike_from_document(doc) for doc in docs]

    async def _accessible_hikes(self, user_id: str) -> list[Hike]:
        return await self._query_hikes(_ACCESS_CLAUSE, [{"name": "@user_id", "value": user_id}])

    async def _owned_hikes(self, user_id: str) -> list[Hike]:
        return await self._query_hikes(
            "c.owner_id = @user_id", [{"name": "@user_id", "value": user_id}]
        )

    async def _shared_hikes(self, user_id: str) -> list[Hike]:
        return await self._query_hikes(
            f"c.owner_id != @user_id AND {_ACCESS_CLAUSE}",
            [{"name": "@user_id", "value": user_id}],
        )

    async def _read_hike(self, hike_id: str) -> Hike | None:
        doc = await self.connection.read_item(HIKES_CONTAINER, hike_id, hike_id, kind="hike")
        return _hike_from_document(doc) if doc is not None else None

    async def _require_hike(self, hike_id: str) -> Hike:
        hike = await self._read_hike(hike_id)
        if hike is None:
            raise RecordNotFoundError("hike", hike_id)
        return hike

    async def _write_hike(self, hike: Hike) -> Hike:
        doc = await self.connection.upsert_item(HIKES_CONTAINER, hike.to_dict(), kind="hike")
        return _hike_from_document(_strip_system_fields(doc)) if doc else hike

    # =========================================================================
    # Live reads
    # =========================================================================

    def watch_all_hikes(self, user_id: str) -> Subscription[Result[list[Hike]]]:
        return self._poll("watch_all_hikes", lambda: self._accessible_hikes(user_id))

    def watch_hike(self, hike_id: str) -> Subscription[Result[Hike | None]]:
        return self._poll("watch_hike", lambda: self._read_hike(hike_id))

    def watch_my_hikes(self, user_id: str) -> Subscription[Result[list[Hike]]]:
        return self._poll("watch_my_hikes", lambda: self._owned_hikes(user_id))

    def watch_shared_hikes(self, user_id: str) -> Subscription[Result[list[Hike]]]:
        return self._poll("watch_shared_hikes", lambda: self._shared_hikes(user_id))

    # =========================================================================
    # Operations
    # =========================================================================

    async def get_hike(self, hike_id: str) -> Result[Hike | None]:
        return await self._call("get_hike", self._read_hike, hike_id)

    async def create_hike(self, hike: Hike) -> Result[Hike]:
        return await self._call("create_hike", self._write_hike, hike)

    async def update_hike(self, hike: Hike) -> Result[Hike]:
        return await self._call(
            "update_hike", self._write_hike, replace(hike, updated_at=datetime.now(UTC))
        )

    async def delete_hike(self, hike_id: str, user_id: str) -> Result[None]:
        return await self._call("delete_hike", self._delete_hike, hike_id, user_id)

    async def _delete_hike(self, hike_id: str, user_id: str) -> None:
        hike = await self._require_hike(hike_id)
        if not hike.can_edit(user_id):
            raise PermissionDeniedError(user_id, f"hike/{hike_id}", "only the owner can delete a hike")

        docs = await self.connection.query_items(
            OBSERVATIONS_CONTAINER,
            "SELECT c.id FROM c WHERE c.hike_id = @hike_id",
            parameters=[{"name": "@hike_id", "value": hike_id}],
            partition_key=hike_id,
            kind="observation",
        )
        for doc in docs:
            await self.connection.delete_item(
                OBSERVATIONS_CONTAINER, doc["id"], hike_id, kind="observation"
            )
        await self.connection.delete_item(HIKES_CONTAINER, hike_id, hike_id, kind="hike")
        logger.info(f"Deleted hike {hike_id} with {len(docs)} observations")

    async def share_hike(self, hike_id: str, user_id: str) -> Result[None]:
        return await self._call("share_hike", self._update_access, hike_id, user_id, True)

    async def revoke_access(self, hike_id: str, user_id: str) -> Result[None]:
        return await self._call("revoke_access", self._update_access, hike_id, user_id, False)

    async def _update_access(self, hike_id: str, user_id: str, grant: bool) -> None:
        hike = await self._require_hike(hike_id)
        if grant:
            access = hike.access_control.add_shared_user(user_id)
        else:
            access = hike.access_control.remove_user(user_id)
        await self._write_hike(
            replace(hike, access_control=access, updated_at=datetime.now(UTC))
        )

    async def search_hikes(self, query: str, user_id: str) -> Result[list[Hike]]:
        if not query.strip():
            return Success([])
        return await self._call(
            "search_hikes",
            self._query_hikes,
            f"STARTSWITH(c.name, @query, true) AND {_ACCESS_CLAUSE}",
            [
                {"name": "@query", "value": query.strip()},
                {"name": "@user_id", "value": user_id},
            ],
        )

    async def filter_hikes(self, user_id: str, criteria: HikeFilter) -> Result[list[Hike]]:
        return await self._call("filter_hikes", self._filter_hikes, user_id, criteria)

    async def _filter_hikes(self, user_id: str, criteria: HikeFilter) -> list[Hike]:
        # Criteria are applied in memory over the accessible set
        return [hike for hike in await self._accessible_hikes(user_id) if criteria.matches(hike)]


class CosmosObservationRepository(_CosmosRepository, ObservationRepository):
    """Observations stored in Cosmos DB, partitioned by hike."""

    async def _list(self, hike_id: str) -> list[Observation]:
        docs = await self.connection.query_items(
            OBSERVATIONS_CONTAINER,
            "SELECT * FROM c WHERE c.hike_id = @hike_id ORDER BY c.timestamp DESC",
            parameters=[{"name": "@hike_id", "value": hike_id}],
            partition_key=hike_id,
            kind="observation",
        )
        return [_observation_from_document(doc) for doc in docs]

    async def _read(self, hike_id: str, observation_id: str) -> Observation | None:
        doc = await self.connection.read_item(
            OBSERVATIONS_CONTAINER, observation_id, hike_id, kind="observation"
        )
        return _observation_from_document(doc) if doc is not None else None

    async def _write(self, observation: Observation) -> Observation:
        doc = await self.connection.upsert_item(
            OBSERVATIONS_CONTAINER, observation.to_dict(), kind="observation"
        )
        return _observation_from_document(_strip_system_fields(doc)) if doc else observation

    def watch_observations_for_hike(
        self, hike_id: str
    ) -> Subscription[Result[list[Observation]]]:
        return self._poll("watch_observations", lambda: self._list(hike_id))

    def watch_observation(
        self, hike_id: str, observation_id: str
    ) -> Subscription[Result[Observation | None]]:
        return self._poll("watch_observation", lambda: self._read(hike_id, observation_id))

    async def get_observations_for_hike(self, hike_id: str) -> Result[list[Observation]]:
        return await self._call("get_observations", self._list, hike_id)

    async def create_observation(self, observation: Observation) -> Result[Observation]:
        return await self._call("create_observation", self._write, observation)

    async def update_observation(self, observation: Observation) -> Result[Observation]:
        return await self._call(
            "update_observation",
            self._write,
            replace(observation, updated_at=datetime.now(UTC)),
        )

    async def delete_observation(self, hike_id: str, observation_id: str) -> Result[None]:
        return await self._call("delete_observation", self._delete, hike_id, observation_id)

    async def _delete(self, hike_id: str, observation_id: str) -> None:
        # Absent observations count as deleted
        await self.connection.delete_item(
            OBSERVATIONS_CONTAINER, observation_id, hike_id, kind="observation"
        )

    async def create_observations(
        self, observations: list[Observation]
    ) -> Result[list[Observation]]:
        return await self._call("create_observations", self._write_all, observations)

    async def _write_all(self, observations: list[Observation]) -> list[Observation]:
        return [await self._write(observation) for observation in observations]
