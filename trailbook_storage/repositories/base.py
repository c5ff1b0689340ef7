"""
Abstract base classes for entity-family repositories.

Every entity family (hikes, observations) has a local implementation
(guest mode, on-device) and a remote implementation (authenticated mode,
Cosmos DB + Blob Storage). All operations return a ``Result``; live reads
return a ``Subscription`` of ``Result`` values that stays open until the
consumer closes it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from pathlib import Path

from ..models import Hike, HikeFilter, ImageMetadata, Observation, UploadProgress
from ..result import Result
from ..streams import Subscription

ProgressCallback = Callable[[UploadProgress], None]


class EntityFamily(Enum):
    """Class of domain record with independent local and remote repositories."""

    HIKE = "hike"
    OBSERVATION = "observation"


class StorageBackend(Enum):
    """Where a repository keeps its data."""

    LOCAL = "local"
    REMOTE = "remote"


class HikeRepository(ABC):
    """Contract shared by the local and remote hike repositories."""

    @property
    @abstractmethod
    def backend(self) -> StorageBackend:
        pass

    @abstractmethod
    def watch_all_hikes(self, user_id: str) -> Subscription[Result[list[Hike]]]:
        """Hikes the user owns or has been granted access to."""
        pass

    @abstractmethod
    def watch_hike(self, hike_id: str) -> Subscription[Result[Hike | None]]:
        pass

    @abstractmethod
    def watch_my_hikes(self, user_id: str) -> Subscription[Result[list[Hike]]]:
        pass

    @abstractmethod
    def watch_shared_hikes(self, user_id: str) -> Subscription[Result[list[Hike]]]:
        """Hikes owned by someone else and shared with the user."""
        pass

    @abstractmethod
    async def get_hike(self, hike_id: str) -> Result[Hike | None]:
        pass

    @abstractmethod
    async def create_hike(self, hike: Hike) -> Result[Hike]:
        """Create (or replace) the hike keyed by ``hike.id``."""
        pass

    @abstractmethod
    async def update_hike(self, hike: Hike) -> Result[Hike]:
        pass

    @abstractmethod
    async def delete_hike(self, hike_id: str, user_id: str) -> Result[None]:
        """Delete a hike and its observations. Only the owner may delete."""
        pass

    @abstractmethod
    async def share_hike(self, hike_id: str, user_id: str) -> Result[None]:
        pass

    @abstractmethod
    async def revoke_access(self, hike_id: str, user_id: str) -> Result[None]:
        pass

    @abstractmethod
    async def search_hikes(self, query: str, user_id: str) -> Result[list[Hike]]:
        """Name prefix search. A blank query yields an empty list."""
        pass

    @abstractmethod
    async def filter_hikes(self, user_id: str, criteria: HikeFilter) -> Result[list[Hike]]:
        pass


class ObservationRepository(ABC):
    """Contract shared by the local and remote observation repositories."""

    @property
    @abstractmethod
    def backend(self) -> StorageBackend:
        pass

    @abstractmethod
    def watch_observations_for_hike(
        self, hike_id: str
    ) -> Subscription[Result[list[Observation]]]:
        """Observations of a hike, newest first."""
        pass

    @abstractmethod
    def watch_observation(
        self, hike_id: str, observation_id: str
    ) -> Subscription[Result[Observation | None]]:
        pass

    @abstractmethod
    async def get_observations_for_hike(self, hike_id: str) -> Result[list[Observation]]:
        pass

    @abstractmethod
    async def create_observation(self, observation: Observation) -> Result[Observation]:
        """Create (or replace) the observation keyed by ``observation.id``."""
        pass

    @abstractmethod
    async def update_observation(self, observation: Observation) -> Result[Observation]:
        pass

    @abstractmethod
    async def delete_observation(self, hike_id: str, observation_id: str) -> Result[None]:
        pass

    @abstractmethod
    async def create_observations(
        self, observations: list[Observation]
    ) -> Result[list[Observation]]:
        pass


class RemoteImageStore(ABC):
    """Object store for image assets of authenticated users."""

    @abstractmethod
    async def upload(
        self,
        local_path: Path,
        storage_path: str,
        content_type: str = "image/jpeg",
        uploaded_by: str = "",
        on_progress: ProgressCallback | None = None,
    ) -> ImageMetadata:
        """Upload a file, reporting byte progress through ``on_progress``.

        Raises:
            StorageIOError: If the local file cannot be read
            TransientStorageError: On retryable service failures
        """
        pass

    @abstractmethod
    async def delete(self, storage_path: str) -> None:
        """Delete an object. Deleting an absent object succeeds."""
        pass

    @abstractmethod
    async def get_download_url(self, storage_path: str) -> str:
        pass

    async def close(self) -> None:  # noqa: B027
        """Release network resources."""
