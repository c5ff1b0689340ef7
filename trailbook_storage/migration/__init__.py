"""
Guest data migration.

Moves a guest's on-device records and images into the cloud stores
when the guest registers an account.
"""

from .service import MigrationService, is_local_reference
from .types import (
    Complete,
    Initializing,
    MigratingHikes,
    MigratingObservations,
    MigrationFailed,
    MigrationProgress,
    MigrationResult,
    MigrationStats,
    UploadingImages,
    is_terminal,
)

__all__ = [
    "Complete",
    "Initializing",
    "MigratingHikes",
    "MigratingObservations",
    "MigrationFailed",
    "MigrationProgress",
    "MigrationResult",
    "MigrationService",
    "MigrationStats",
    "UploadingImages",
    "is_local_reference",
    "is_terminal",
]
