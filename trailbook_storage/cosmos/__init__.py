"""
Cosmos DB document store for authenticated users.
"""

from .client import (
    HIKES_CONTAINER,
    OBSERVATIONS_CONTAINER,
    CosmosConnection,
    translate_cosmos_error,
)
from .repositories import CosmosHikeRepository, CosmosObservationRepository

__all__ = [
    "HIKES_CONTAINER",
    "OBSERVATIONS_CONTAINER",
    "CosmosConnection",
    "CosmosHikeRepository",
    "CosmosObservationRepository",
    "translate_cosmos_error",
]
