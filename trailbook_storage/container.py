"""
Composition root.

``StorageContainer`` wires every collaborator explicitly from a
``StorageConfig``: the local stores, the remote stores, the auth state,
the repository provider and the migration service. It also owns the
account lifecycle (restore, guest, sign in/out, register) because each
of those steps moves the auth state and the persisted guest identity
together.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from .blob.image_store import BlobImageStore
from .config import StorageConfig
from .cosmos.client import CosmosConnection
from .cosmos.repositories import CosmosHikeRepository, CosmosObservationRepository
from .exceptions import StorageConnectionError
from .identity.guest_store import AuthMode, GuestIdentityStore
from .identity.state import AuthStateHolder
from .identity.types import (
    UNAUTHENTICATED,
    Authenticated,
    AuthenticationState,
    Guest,
    User,
)
from .local.database import LocalDatabase
from .local.image_store import LocalImageStore
from .local.repositories import LocalHikeRepository, LocalObservationRepository
from .migration.service import MigrationService
from .migration.types import Complete, MigrationFailed, MigrationProgress
from .repositories.base import HikeRepository, ObservationRepository, RemoteImageStore
from .repositories.provider import RepositoryProvider
from .resilience import AGGRESSIVE_RETRY_POLICY, RetryPolicy
from .result import Error, Success

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteStores:
    """Cloud-side collaborators.

    ``migration_hikes`` / ``migration_observations`` are the repositories
    the migration pipeline writes through. They should make a single
    attempt per call since the pipeline applies its own retry policy;
    when omitted, ``hikes`` / ``observations`` are used.
    """

    hikes: HikeRepository
    observations: ObservationRepository
    images: RemoteImageStore
    migration_hikes: HikeRepository | None = None
    migration_observations: ObservationRepository | None = None
    connection: CosmosConnection | None = None

    @classmethod
    def from_config(cls, config: StorageConfig) -> RemoteStores:
        """Cosmos DB repositories and a Blob image store for ``config``."""
        connection = CosmosConnection(config)
        images = BlobImageStore.from_config(config)
        return cls(
            hikes=CosmosHikeRepository(connection, config.poll_interval),
            observations=CosmosObservationRepository(connection, config.poll_interval),
            images=images,
            migration_hikes=CosmosHikeRepository(
                connection, config.poll_interval, retry_policy=None
            ),
            migration_observations=CosmosObservationRepository(
                connection, config.poll_interval, retry_policy=None
            ),
            connection=connection,
        )

    async def close(self) -> None:
        await self.images.close()
        if self.connection is not None:
            await self.connection.close()


class StorageContainer:
    """Every storage collaborator, built once and passed explicitly."""

    def __init__(
        self,
        config: StorageConfig,
        database: LocalDatabase,
        images: LocalImageStore,
        guest_store: GuestIdentityStore,
        remote: RemoteStores,
        auth_state: AuthStateHolder | None = None,
        migration_policy: RetryPolicy = AGGRESSIVE_RETRY_POLICY,
        owns_remote: bool = True,
    ):
        """
        Args:
            config: Storage configuration
            database: Open local database
            images: Local image store
            guest_store: Persisted guest identity
            remote: Cloud repositories and image store
            auth_state: Auth state holder (a fresh one if omitted)
            migration_policy: Retry policy for migration writes and uploads
            owns_remote: Whether ``close()`` should close ``remote``
        """
        self.config = config
        self.database = database
        self.images = images
        self.guest_store = guest_store
        self.remote = remote
        self.auth_state = auth_state or AuthStateHolder()
        self._owns_remote = owns_remote

        self.local_hikes = LocalHikeRepository(database, images)
        self.local_observations = LocalObservationRepository(database, images)
        self.provider = RepositoryProvider(
            self.auth_state,
            local_hikes=self.local_hikes,
            remote_hikes=remote.hikes,
            local_observations=self.local_observations,
            remote_observations=remote.observations,
        )
        self.migration = MigrationService(
            database,
            images,
            remote.migration_hikes or remote.hikes,
            remote.migration_observations or remote.observations,
            remote.images,
            retry_policy=migration_policy,
        )

    @classmethod
    async def create(
        cls,
        config: StorageConfig | None = None,
        remote: RemoteStores | None = None,
    ) -> StorageContainer:
        """Open the local stores and build the remote ones.

        Args:
            config: Storage configuration (read from the environment if omitted)
            remote: Pre-built remote stores; the container will not close them

        Raises:
            StorageConnectionError: If remote storage is neither configured nor supplied
        """
        config = config or StorageConfig.from_environment()

        owns_remote = remote is None
        if remote is None:
            if not config.remote_enabled:
                raise StorageConnectionError(
                    "remote", ValueError("cosmos_endpoint and blob storage must be configured")
                )
            remote = RemoteStores.from_config(config)

        try:
            database = await LocalDatabase.create(config.database_path)
        except Exception:
            if owns_remote:
                await remote.close()
            raise

        images = LocalImageStore(config.images_dir)
        try:
            await images.ensure_root()
        except Exception:
            await database.close()
            if owns_remote:
                await remote.close()
            raise

        logger.info(f"Storage container ready at {config.data_dir}")
        return cls(
            config,
            database,
            images,
            GuestIdentityStore(config.guest_state_path),
            remote,
            owns_remote=owns_remote,
        )

    async def close(self) -> None:
        self.auth_state.close()
        await self.database.close()
        if self._owns_remote:
            await self.remote.close()

    async def __aenter__(self) -> StorageContainer:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # =========================================================================
    # Account lifecycle
    # =========================================================================

    @property
    def state(self) -> AuthenticationState:
        return self.auth_state.current

    def restore_session(self, current_user: User | None = None) -> AuthenticationState:
        """Restore the auth state persisted by the last run.

        Args:
            current_user: The signed-in account, if the identity provider has one
        """
        state: AuthenticationState = UNAUTHENTICATED
        match self.guest_store.get_last_auth_mode():
            case AuthMode.GUEST:
                guest_id = self.guest_store.get_guest_id()
                if guest_id:
                    state = Guest(guest_id)
            case AuthMode.AUTHENTICATED:
                if current_user is not None and current_user.is_active:
                    state = Authenticated(current_user)
            case _:
                pass

        self.auth_state.set(state)
        return state

    def continue_as_guest(self) -> Guest:
        guest = Guest(self.guest_store.get_or_create_guest_id())
        self.guest_store.set_last_auth_mode(AuthMode.GUEST)
        self.guest_store.set_onboarding_complete()
        self.auth_state.set(guest)
        return guest

    def sign_in(self, user: User) -> Authenticated:
        state = Authenticated(user)
        self.guest_store.set_last_auth_mode(AuthMode.AUTHENTICATED)
        self.auth_state.set(state)
        return state

    def sign_out(self) -> None:
        self.guest_store.set_last_auth_mode(AuthMode.NONE)
        self.auth_state.set(UNAUTHENTICATED)

    def register(self, user: User) -> AsyncIterator[MigrationProgress]:
        """Switch to a newly registered account and migrate any guest data.

        The auth state changes immediately. The returned iterator streams
        the migration, if one is needed, and is empty otherwise. After a
        fully successful migration local copies are cleaned up and the
        guest id is cleared.
        """
        guest_id = self.guest_store.get_guest_id()
        if guest_id:
            self.guest_store.mark_as_former_guest()
        self.sign_in(user)
        return self._migrate_registered_guest(guest_id, user.uid)

    async def _migrate_registered_guest(
        self, guest_id: str | None, user_id: str
    ) -> AsyncIterator[MigrationProgress]:
        if not guest_id:
            return

        match await self.migration.check_migration_needed(guest_id):
            case Success(value=stats) if not stats.has_work:
                self.guest_store.clear_guest_id()
                return
            case Error(message=message):
                logger.warning(f"Could not check guest data for migration: {message}")
                yield MigrationFailed(message, retryable=True)
                return
            case _:
                pass

        async for progress in self.migration.migrate_guest_data(guest_id, user_id):
            if isinstance(progress, Complete) and progress.result.is_successful:
                await self._finish_migration(guest_id)
            yield progress

    async def _finish_migration(self, guest_id: str) -> None:
        match await self.migration.cleanup_after_migration(guest_id):
            case Error(message=message):
                # Guest id stays so cleanup can run again
                logger.warning(f"Cleanup after migration failed: {message}")
            case _:
                self.guest_store.clear_guest_id()
