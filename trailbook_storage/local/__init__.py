"""
On-device storage for guest mode.

Provides:
- LocalDatabase: SQLite records with sync markers and a migrated-asset ledger
- LocalImageStore: image files under the data directory
- LocalHikeRepository / LocalObservationRepository: repository contracts
"""

from .database import LocalDatabase, MigratedAsset
from .image_store import DEFAULT_SYNCED_IMAGE_RETENTION, LocalImageStore
from .repositories import (
    LocalHikeRepository,
    LocalObservationRepository,
    hike_image_directory,
    observation_image_directory,
)

__all__ = [
    "DEFAULT_SYNCED_IMAGE_RETENTION",
    "LocalDatabase",
    "LocalHikeRepository",
    "LocalImageStore",
    "LocalObservationRepository",
    "MigratedAsset",
    "hike_image_directory",
    "observation_image_directory",
]
