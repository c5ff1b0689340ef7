"""
Repository selection by authentication state.

``Authenticated`` routes to the remote (cloud) repositories; every other
state, including values this module does not recognise, routes to the
local repositories. Resolution never fails.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from ..identity.state import AuthStateHolder
from ..identity.types import Authenticated, AuthenticationState, Guest, Unauthenticated
from .base import EntityFamily, HikeRepository, ObservationRepository, StorageBackend

logger = logging.getLogger(__name__)

Repository = HikeRepository | ObservationRepository


@dataclass(frozen=True)
class RepositorySet:
    """Repositories for both families resolved from one state snapshot."""

    hikes: HikeRepository
    observations: ObservationRepository
    backend: StorageBackend
    state: AuthenticationState


def backend_for(state: AuthenticationState) -> StorageBackend:
    """Classify an authentication state."""
    match state:
        case Authenticated():
            return StorageBackend.REMOTE
        case Guest() | Unauthenticated():
            return StorageBackend.LOCAL
        case _:
            logger.warning(f"Unknown authentication state {state!r}, using local storage")
            return StorageBackend.LOCAL


class RepositoryProvider:
    """Strategy selector mapping the current state to a repository per family.

    Callers that need hikes and observations from the same backend must
    use ``resolve_all``: two separate ``resolve`` calls may straddle a
    state change.
    """

    def __init__(
        self,
        auth_state: AuthStateHolder,
        local_hikes: HikeRepository,
        remote_hikes: HikeRepository,
        local_observations: ObservationRepository,
        remote_observations: ObservationRepository,
    ):
        self._auth_state = auth_state
        self._hikes = {
            StorageBackend.LOCAL: local_hikes,
            StorageBackend.REMOTE: remote_hikes,
        }
        self._observations = {
            StorageBackend.LOCAL: local_observations,
            StorageBackend.REMOTE: remote_observations,
        }
        self._lock = asyncio.Lock()

    def _select(self, family: EntityFamily, backend: StorageBackend) -> Repository:
        if family is EntityFamily.OBSERVATION:
            return self._observations[backend]
        return self._hikes[backend]

    async def resolve(self, family: EntityFamily) -> Repository:
        """Resolve one family inside the resolution critical section."""
        async with self._lock:
            backend = backend_for(self._auth_state.current)
            repository = self._select(family, backend)
        logger.debug(f"Resolved {family.value} repository: {backend.value}")
        return repository

    def resolve_sync(self, family: EntityFamily) -> Repository:
        """Resolve without suspending, for contexts that cannot await."""
        return self._select(family, backend_for(self._auth_state.current))

    async def resolve_all(self) -> RepositorySet:
        """Resolve both families from a single state snapshot."""
        async with self._lock:
            state = self._auth_state.current
            backend = backend_for(state)
            repositories = RepositorySet(
                hikes=self._hikes[backend],
                observations=self._observations[backend],
                backend=backend,
                state=state,
            )
        logger.debug(f"Resolved repository set: {backend.value}")
        return repositories

    async def get_hike_repository(self) -> HikeRepository:
        return self._hikes[backend_for(await self._current_state())]

    async def get_observation_repository(self) -> ObservationRepository:
        return self._observations[backend_for(await self._current_state())]

    def get_hike_repository_sync(self) -> HikeRepository:
        return self._hikes[backend_for(self._auth_state.current)]

    def get_observation_repository_sync(self) -> ObservationRepository:
        return self._observations[backend_for(self._auth_state.current)]

    async def _current_state(self) -> AuthenticationState:
        async with self._lock:
            return self._auth_state.current
