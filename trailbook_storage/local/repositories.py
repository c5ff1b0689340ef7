"""
Guest-mode repositories over the local database and image store.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import UTC, datetime

from ..exceptions import FeatureUnavailableError, PermissionDeniedError, RecordNotFoundError
from ..models import Hike, HikeFilter, Observation
from ..repositories.base import HikeRepository, ObservationRepository, StorageBackend
from ..result import Result, Success, safe_call
from ..streams import Subscription, live_results
from .database import LocalDatabase
from .image_store import LocalImageStore

logger = logging.getLogger(__name__)


def hike_image_directory(hike_id: str) -> str:
    return f"hikes/{hike_id}"


def observation_image_directory(observation_id: str) -> str:
    return f"observations/{observation_id}"


class LocalHikeRepository(HikeRepository):
    """Hikes stored on the device. Guest mode has no sharing."""

    def __init__(self, database: LocalDatabase, images: LocalImageStore):
        self.database = database
        self.images = images

    @property
    def backend(self) -> StorageBackend:
        return StorageBackend.LOCAL

    def _watch(self, fetch) -> Subscription:
        return live_results(fetch, changes=self.database.subscribe_changes())

    def watch_all_hikes(self, user_id: str) -> Subscription[Result[list[Hike]]]:
        # Local hikes are only ever owned by the guest
        return self._watch(lambda: self.database.list_hikes(user_id))

    def watch_hike(self, hike_id: str) -> Subscription[Result[Hike | None]]:
        return self._watch(lambda: self.database.get_hike(hike_id))

    def watch_my_hikes(self, user_id: str) -> Subscription[Result[list[Hike]]]:
        return self._watch(lambda: self.database.list_hikes(user_id))

    def watch_shared_hikes(self, user_id: str) -> Subscription[Result[list[Hike]]]:
        subscription: Subscription[Result[list[Hike]]] = Subscription()
        subscription.push(Success([]))
        subscription.end()
        return subscription

    async def get_hike(self, hike_id: str) -> Result[Hike | None]:
        return await safe_call(self.database.get_hike, hike_id)

    async def create_hike(self, hike: Hike) -> Result[Hike]:
        return await safe_call(self.database.upsert_hike, hike)

    async def update_hike(self, hike: Hike) -> Result[Hike]:
        return await safe_call(self._update_hike, hike)

    async def _update_hike(self, hike: Hike) -> Hike:
        if await self.database.get_hike(hike.id) is None:
            raise RecordNotFoundError("hike", hike.id)
        return await self.database.upsert_hike(replace(hike, updated_at=datetime.now(UTC)))

    async def delete_hike(self, hike_id: str, user_id: str) -> Result[None]:
        return await safe_call(self._delete_hike, hike_id, user_id)

    async def _delete_hike(self, hike_id: str, user_id: str) -> None:
        hike = await self.database.get_hike(hike_id)
        if hike is None:
            return
        if not hike.can_edit(user_id):
            raise PermissionDeniedError(user_id, f"hike/{hike_id}", "only the owner can delete a hike")

        for observation in await self.database.list_observations(hike_id):
            for path in observation.image_urls:
                await self.images.delete_image(path)
        for path in hike.image_references():
            await self.images.delete_image(path)
        await self.images.delete_directory(hike_image_directory(hike_id))

        # Observations go with the hike through the foreign-key cascade
        await self.database.delete_hike(hike_id)
        logger.info(f"Deleted local hike {hike_id}")

    async def share_hike(self, hike_id: str, user_id: str) -> Result[None]:
        return await safe_call(self._unavailable, "share_hike", "Sign up to share hikes with others")

    async def revoke_access(self, hike_id: str, user_id: str) -> Result[None]:
        return await safe_call(self._unavailable, "revoke_access", "Sign up to manage hike access")

    @staticmethod
    async def _unavailable(feature: str, reason: str) -> None:
        raise FeatureUnavailableError(feature, reason)

    async def search_hikes(self, query: str, user_id: str) -> Result[list[Hike]]:
        if not query.strip():
            return Success([])
        return await safe_call(self.database.search_hikes, user_id, query.strip())

    async def filter_hikes(self, user_id: str, criteria: HikeFilter) -> Result[list[Hike]]:
        return await safe_call(self.database.filter_hikes, user_id, criteria)


class LocalObservationRepository(ObservationRepository):
    """Observations stored on the device."""

    def __init__(self, database: LocalDatabase, images: LocalImageStore):
        self.database = database
        self.images = images

    @property
    def backend(self) -> StorageBackend:
        return StorageBackend.LOCAL

    def watch_observations_for_hike(
        self, hike_id: str
    ) -> Subscription[Result[list[Observation]]]:
        return live_results(
            lambda: self.database.list_observations(hike_id),
            changes=self.database.subscribe_changes(),
        )

    def watch_observation(
        self, hike_id: str, observation_id: str
    ) -> Subscription[Result[Observation | None]]:
        return live_results(
            lambda: self.database.get_observation(observation_id),
            changes=self.database.subscribe_changes(),
        )

    async def get_observations_for_hike(self, hike_id: str) -> Result[list[Observation]]:
        return await safe_call(self.database.list_observations, hike_id)

    async def create_observation(self, observation: Observation) -> Result[Observation]:
        return await safe_call(self.database.upsert_observation, observation)

    async def update_observation(self, observation: Observation) -> Result[Observation]:
        return await safe_call(self._update_observation, observation)

    async def _update_observation(self, observation: Observation) -> Observation:
        if await self.database.get_observation(observation.id) is None:
            raise RecordNotFoundError("observation", observation.id)
        return await self.database.upsert_observation(
            replace(observation, updated_at=datetime.now(UTC))
        )

    async def delete_observation(self, hike_id: str, observation_id: str) -> Result[None]:
        return await safe_call(self._delete_observation, observation_id)

    async def _delete_observation(self, observation_id: str) -> None:
        observation = await self.database.get_observation(observation_id)
        if observation is None:
            return
        for path in observation.image_urls:
            await self.images.delete_image(path)
        await self.images.delete_directory(observation_image_directory(observation_id))
        await self.database.delete_observation(observation_id)

    async def create_observations(
        self, observations: list[Observation]
    ) -> Result[list[Observation]]:
        return await safe_call(self.database.upsert_observations, observations)
