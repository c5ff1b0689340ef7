"""
Shared test configuration and fixtures.

Local stores are real (SQLite and files under ``tmp_path``). Remote stores
are in-memory fakes implementing the repository contracts, so migration
and repository selection can be tested without Azure resources.
"""

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from trailbook_storage.exceptions import PermissionDeniedError
from trailbook_storage.local import LocalDatabase, LocalImageStore
from trailbook_storage.models import Hike, HikeFilter, ImageMetadata, Observation, UploadProgress
from trailbook_storage.repositories import (
    HikeRepository,
    ObservationRepository,
    RemoteImageStore,
    StorageBackend,
)
from trailbook_storage.resilience import RetryPolicy
from trailbook_storage.result import Error, Success
from trailbook_storage.streams import Subscription, live_results

logger = logging.getLogger(__name__)

BASE_TIME = datetime(2024, 6, 1, 8, 0, tzinfo=UTC)


class InMemoryHikeRepository(HikeRepository):
    """Remote hike repository kept in a dict.

    Hikes whose id is in ``fail_ids`` are rejected with ``failure``.
    """

    def __init__(self) -> None:
        self.hikes: dict[str, Hike] = {}
        self.fail_ids: set[str] = set()
        self.failure: Exception = PermissionDeniedError("remote", "hikes", "rejected")
        self.create_calls: list[str] = []
        self.update_calls: list[str] = []

    @property
    def backend(self) -> StorageBackend:
        return StorageBackend.REMOTE

    def _visible(self, user_id: str) -> list[Hike]:
        return [hike for hike in self.hikes.values() if hike.has_read_access(user_id)]

    def watch_all_hikes(self, user_id: str) -> Subscription:
        async def fetch() -> list[Hike]:
            return self._visible(user_id)

        return live_results(fetch, poll_interval=0.01)

    def watch_hike(self, hike_id: str) -> Subscription:
        async def fetch() -> Hike | None:
            return self.hikes.get(hike_id)

        return live_results(fetch, poll_interval=0.01)

    def watch_my_hikes(self, user_id: str) -> Subscription:
        async def fetch() -> list[Hike]:
            return [hike for hike in self.hikes.values() if hike.owner_id == user_id]

        return live_results(fetch, poll_interval=0.01)

    def watch_shared_hikes(self, user_id: str) -> Subscription:
        async def fetch() -> list[Hike]:
            return [hike for hike in self._visible(user_id) if hike.owner_id != user_id]

        return live_results(fetch, poll_interval=0.01)

    async def get_hike(self, hike_id: str):
        return Success(self.hikes.get(hike_id))

    async def create_hike(self, hike: Hike):
        self.create_calls.append(hike.id)
        if hike.id in self.fail_ids:
            return Error(self.failure)
        self.hikes[hike.id] = hike
        return Success(hike)

    async def update_hike(self, hike: Hike):
        self.update_calls.append(hike.id)
        if hike.id in self.fail_ids:
            return Error(self.failure)
        self.hikes[hike.id] = hike
        return Success(hike)

    async def delete_hike(self, hike_id: str, user_id: str):
        self.hikes.pop(hike_id, None)
        return Success(None)

    async def share_hike(self, hike_id: str, user_id: str):
        return Success(None)

    async def revoke_access(self, hike_id: str, user_id: str):
        return Success(None)

    async def search_hikes(self, query: str, user_id: str):
        return Success(
            [h for h in self._visible(user_id) if h.name.lower().startswith(query.lower())]
        )

    async def filter_hikes(self, user_id: str, criteria: HikeFilter):
        return Success([h for h in self._visible(user_id) if criteria.matches(h)])


class InMemoryObservationRepository(ObservationRepository):
    """Remote observation repository kept in a dict."""

    def __init__(self) -> None:
        self.observations: dict[str, Observation] = {}
        self.fail_ids: set[str] = set()
        self.failure: Exception = PermissionDeniedError("remote", "observations", "rejected")
        self.create_calls: list[str] = []

    @property
    def backend(self) -> StorageBackend:
        return StorageBackend.REMOTE

    def watch_observations_for_hike(self, hike_id: str) -> Subscription:
        async def fetch() -> list[Observation]:
            return [o for o in self.observations.values() if o.hike_id == hike_id]

        return live_results(fetch, poll_interval=0.01)

    def watch_observation(self, hike_id: str, observation_id: str) -> Subscription:
        async def fetch() -> Observation | None:
            return self.observations.get(observation_id)

        return live_results(fetch, poll_interval=0.01)

    async def get_observations_for_hike(self, hike_id: str):
        return Success([o for o in self.observations.values() if o.hike_id == hike_id])

    async def create_observation(self, observation: Observation):
        self.create_calls.append(observation.id)
        if observation.id in self.fail_ids:
            return Error(self.failure)
        self.observations[observation.id] = observation
        return Success(observation)

    async def update_observation(self, observation: Observation):
        if observation.id in self.fail_ids:
            return Error(self.failure)
        self.observations[observation.id] = observation
        return Success(observation)

    async def delete_observation(self, hike_id: str, observation_id: str):
        self.observations.pop(observation_id, None)
        return Success(None)

    async def create_observations(self, observations: list[Observation]):
        for observation in observations:
            self.observations[observation.id] = observation
        return Success(observations)


class InMemoryImageStore(RemoteImageStore):
    """Remote image store that records uploads and reports progress in two steps.

    ``failures`` maps a local file name to exceptions raised by successive
    upload attempts. ``block`` makes uploads wait until it is set.
    """

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.attempts: list[str] = []
        self.block: asyncio.Event | None = None
        self.cancelled = False

    async def upload(
        self,
        local_path: Path,
        storage_path: str,
        content_type: str = "image/jpeg",
        uploaded_by: str = "",
        on_progress=None,
    ) -> ImageMetadata:
        self.attempts.append(local_path.name)
        pending = self.failures.get(local_path.name)
        if pending:
            raise pending.pop(0)

        data = local_path.read_bytes()
        total = len(data)
        image_id = Path(storage_path).stem
        if on_progress is not None:
            on_progress(UploadProgress(image_id, total // 2, total))

        if self.block is not None:
            try:
                await self.block.wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise

        self.blobs[storage_path] = data
        url = f"https://blob.example.test/{storage_path}"
        if on_progress is not None:
            on_progress(UploadProgress(image_id, total, total, is_complete=True, download_url=url))
        return ImageMetadata(
            id=image_id,
            url=url,
            storage_path=storage_path,
            content_type=content_type,
            size=total,
            uploaded_by=uploaded_by,
        )

    async def delete(self, storage_path: str) -> None:
        self.blobs.pop(storage_path, None)

    async def get_download_url(self, storage_path: str) -> str:
        return f"https://blob.example.test/{storage_path}"


def make_hike(owner_id: str, name: str, minutes: int = 0, **kwargs) -> Hike:
    """Hike created ``minutes`` after the shared base time."""
    created = BASE_TIME + timedelta(minutes=minutes)
    return Hike(name=name, owner_id=owner_id, date=created, created_at=created, **kwargs)


def make_observation(hike_id: str, text: str, minutes: int = 0, **kwargs) -> Observation:
    created = BASE_TIME + timedelta(minutes=minutes)
    return Observation(hike_id=hike_id, text=text, timestamp=created, created_at=created, **kwargs)


def write_image(directory: Path, name: str, size: int = 32) -> str:
    """Create an image file of ``size`` bytes and return its absolute path."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_bytes(b"\xff" * size)
    return str(path.resolve())


@pytest.fixture
async def database(tmp_path: Path):
    """Real SQLite database in a temporary directory."""
    db = await LocalDatabase.create(tmp_path / "trailbook.db")
    yield db
    await db.close()


@pytest.fixture
async def image_store(tmp_path: Path) -> LocalImageStore:
    store = LocalImageStore(tmp_path / "images")
    await store.ensure_root()
    return store


@pytest.fixture
def remote_hikes() -> InMemoryHikeRepository:
    return InMemoryHikeRepository()


@pytest.fixture
def remote_observations() -> InMemoryObservationRepository:
    return InMemoryObservationRepository()


@pytest.fixture
def remote_images() -> InMemoryImageStore:
    return InMemoryImageStore()


@pytest.fixture
def no_sleep() -> AsyncMock:
    """Stand-in for asyncio.sleep that returns immediately and records delays."""
    return AsyncMock(return_value=None)


@pytest.fixture
def fast_policy() -> RetryPolicy:
    return RetryPolicy(max_retries=3, initial_delay=0.01, max_delay=0.05, jitter_factor=0.0)
