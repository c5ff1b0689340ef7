"""
Trailbook Storage

Data layer for the Trailbook hiking journal.

Provides:
- Guest mode storage on device (SQLite records, local image files)
- Authenticated storage in the cloud (Cosmos DB records, Blob Storage images)
- Repository selection that follows the authentication state
- Guest-to-account migration with progress events and retry/backoff

Usage:

    >>> from trailbook_storage import StorageConfig, StorageContainer, EntityFamily
    >>> async with await StorageContainer.create(StorageConfig.from_environment()) as storage:
    ...     storage.continue_as_guest()
    ...     repos = await storage.provider.resolve_all()
    ...     await repos.hikes.create_hike(hike)
    ...
    ...     # Registering migrates the guest's data
    ...     async for progress in storage.register(user):
    ...         print(progress.to_dict())
"""

from .config import CosmosAuthMethod, StorageConfig, get_credential
from .container import RemoteStores, StorageContainer
from .exceptions import (
    AuthenticationError,
    FeatureUnavailableError,
    MalformedRecordError,
    MigrationError,
    PermissionDeniedError,
    RecordNotFoundError,
    ResultNotReadyError,
    StorageConnectionError,
    StorageIOError,
    TrailbookStorageError,
    TransientStorageError,
    ValidationError,
)
from .identity import (
    UNAUTHENTICATED,
    Authenticated,
    AuthenticationState,
    AuthMode,
    AuthStateHolder,
    Guest,
    GuestIdentityStore,
    Unauthenticated,
    User,
)
from .logging_utils import (
    StorageLoggerAdapter,
    StructuredJsonFormatter,
    configure_structured_logging,
    get_storage_logger,
)
from .migration import (
    Complete,
    Initializing,
    MigratingHikes,
    MigratingObservations,
    MigrationFailed,
    MigrationProgress,
    MigrationResult,
    MigrationService,
    MigrationStats,
    UploadingImages,
)
from .models import (
    AccessControl,
    Difficulty,
    GeoPoint,
    Hike,
    HikeFilter,
    ImageMetadata,
    Location,
    Observation,
    UploadProgress,
)
from .repositories import (
    EntityFamily,
    HikeRepository,
    ObservationRepository,
    RemoteImageStore,
    RepositoryProvider,
    RepositorySet,
    StorageBackend,
)
from .resilience import (
    AGGRESSIVE_RETRY_POLICY,
    DEFAULT_RETRY_POLICY,
    RetryPolicy,
    retry_result,
    retry_with_backoff,
)
from .result import LOADING, Error, Loading, Result, Success, safe_call
from .streams import Channel, Subscription, live_results

__all__ = [
    # Container
    "StorageContainer",
    "RemoteStores",
    # Configuration
    "StorageConfig",
    "CosmosAuthMethod",
    "get_credential",
    # Result
    "Result",
    "Success",
    "Error",
    "Loading",
    "LOADING",
    "safe_call",
    # Retry
    "RetryPolicy",
    "DEFAULT_RETRY_POLICY",
    "AGGRESSIVE_RETRY_POLICY",
    "retry_with_backoff",
    "retry_result",
    # Streams
    "Subscription",
    "Channel",
    "live_results",
    # Identity
    "AuthenticationState",
    "Unauthenticated",
    "Guest",
    "Authenticated",
    "UNAUTHENTICATED",
    "User",
    "AuthStateHolder",
    "GuestIdentityStore",
    "AuthMode",
    # Models
    "Hike",
    "Observation",
    "Location",
    "GeoPoint",
    "Difficulty",
    "AccessControl",
    "HikeFilter",
    "ImageMetadata",
    "UploadProgress",
    # Repositories
    "EntityFamily",
    "StorageBackend",
    "HikeRepository",
    "ObservationRepository",
    "RemoteImageStore",
    "RepositoryProvider",
    "RepositorySet",
    # Migration
    "MigrationService",
    "MigrationStats",
    "MigrationProgress",
    "MigrationResult",
    "Initializing",
    "MigratingHikes",
    "MigratingObservations",
    "UploadingImages",
    "Complete",
    "MigrationFailed",
    # Logging
    "StructuredJsonFormatter",
    "StorageLoggerAdapter",
    "configure_structured_logging",
    "get_storage_logger",
    # Exceptions
    "TrailbookStorageError",
    "ValidationError",
    "StorageIOError",
    "TransientStorageError",
    "StorageConnectionError",
    "AuthenticationError",
    "PermissionDeniedError",
    "RecordNotFoundError",
    "MalformedRecordError",
    "FeatureUnavailableError",
    "ResultNotReadyError",
    "MigrationError",
]

__version__ = "0.1.0"
