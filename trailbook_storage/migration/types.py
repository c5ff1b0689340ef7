"""
Migration value types.

All types are immutable snapshots: the pipeline creates them and hands
them to the caller, it never mutates them after emission.
"""

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class MigrationStats:
    """What a guest has to migrate, computed before the pipeline starts."""

    total_hikes: int = 0
    total_observations: int = 0
    total_images: int = 0
    estimated_size_bytes: int = 0

    @property
    def is_empty(self) -> bool:
        return self.total_hikes == 0 and self.total_observations == 0

    @property
    def has_work(self) -> bool:
        """Whether a run would write anything, counting images left over from an interrupted run."""
        return not self.is_empty or self.total_images > 0

    @property
    def estimated_size_mb(self) -> float:
        return self.estimated_size_bytes / (1024 * 1024)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_hikes": self.total_hikes,
            "total_observations": self.total_observations,
            "total_images": self.total_images,
            "estimated_size_bytes": self.estimated_size_bytes,
        }


@dataclass(frozen=True)
class MigrationResult:
    """Aggregate outcome of one migration run."""

    migrated_hikes: int = 0
    migrated_observations: int = 0
    uploaded_images: int = 0
    failed_items: int = 0
    errors: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_successful(self) -> bool:
        return self.failed_items == 0

    @property
    def has_partial_success(self) -> bool:
        return self.failed_items > 0 and (self.migrated_hikes > 0 or self.migrated_observations > 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "migrated_hikes": self.migrated_hikes,
            "migrated_observations": self.migrated_observations,
            "uploaded_images": self.uploaded_images,
            "failed_items": self.failed_items,
            "errors": list(self.errors),
            "is_successful": self.is_successful,
            "has_partial_success": self.has_partial_success,
        }


# =============================================================================
# Progress events
# =============================================================================


@dataclass(frozen=True)
class Initializing:
    stats: MigrationStats

    def to_dict(self) -> dict[str, Any]:
        return {"stage": "initializing", "stats": self.stats.to_dict()}


@dataclass(frozen=True)
class MigratingHikes:
    current: int
    total: int
    hike_name: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": "migrating_hikes",
            "current": self.current,
            "total": self.total,
            "hike_name": self.hike_name,
        }


@dataclass(frozen=True)
class MigratingObservations:
    current: int
    total: int
    hike_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": "migrating_observations",
            "current": self.current,
            "total": self.total,
            "hike_id": self.hike_id,
        }


@dataclass(frozen=True)
class UploadingImages:
    """``fraction`` is the byte progress of the current asset, not of the batch."""

    current: int
    total: int
    fraction: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": "uploading_images",
            "current": self.current,
            "total": self.total,
            "fraction": self.fraction,
        }


@dataclass(frozen=True)
class Complete:
    result: MigrationResult

    def to_dict(self) -> dict[str, Any]:
        return {"stage": "complete", "result": self.result.to_dict()}


@dataclass(frozen=True)
class MigrationFailed:
    """Pipeline-fatal error. ``retryable`` permits re-running the whole pipeline."""

    message: str
    retryable: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"stage": "error", "message": self.message, "retryable": self.retryable}


MigrationProgress = Union[
    Initializing,
    MigratingHikes,
    MigratingObservations,
    UploadingImages,
    Complete,
    MigrationFailed,
]


def is_terminal(progress: MigrationProgress) -> bool:
    return isinstance(progress, (Complete, MigrationFailed))
