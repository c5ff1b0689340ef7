"""
Entity-family repository contracts and backend selection.
"""

from .base import (
    EntityFamily,
    HikeRepository,
    ObservationRepository,
    ProgressCallback,
    RemoteImageStore,
    StorageBackend,
)
from .provider import RepositoryProvider, RepositorySet, backend_for

__all__ = [
    "EntityFamily",
    "HikeRepository",
    "ObservationRepository",
    "ProgressCallback",
    "RemoteImageStore",
    "RepositoryProvider",
    "RepositorySet",
    "StorageBackend",
    "backend_for",
]
