"""
Guest-to-account migration.

Copies a guest's local hikes, observations and images into the remote
stores when the guest registers. The pipeline is a single forward pass:

    Initializing -> MigratingHikes -> MigratingObservations -> UploadingImages -> Complete

with ``MigrationFailed`` reachable from any stage. Individual record
failures are tallied and never abort the run; failures outside the
per-record loops end it.

A run that stops after records were synced but before their images were
attached is picked up by the next run: synced records whose local images
are not in the ledger go straight to the upload stage.

Local records are never rewritten: they keep their guest owner and local
image paths, and are only flagged ``synced``. The migrated-asset ledger
records which local files now live remotely so cleanup can remove
exactly those.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from ..blob.image_store import image_storage_path
from ..exceptions import MalformedRecordError, MigrationError, ValidationError
from ..local.database import LocalDatabase
from ..local.image_store import LocalImageStore
from ..logging_utils import StorageLoggerAdapter
from ..models import Hike, ImageMetadata, Observation, UploadProgress
from ..repositories.base import HikeRepository, ObservationRepository, RemoteImageStore
from ..resilience import DEFAULT_RETRY_POLICY, RetryPolicy, Sleep, retry_result, retry_with_backoff
from ..result import Error, Result, Success, safe_call
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
)

logger = logging.getLogger(__name__)

_REMOTE_PREFIXES = ("http://", "https://")


def is_local_reference(ref: str) -> bool:
    """True when an image reference is a local file path rather than a URL."""
    return bool(ref) and not ref.startswith(_REMOTE_PREFIXES)


def _local_refs(refs: list[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for ref in refs:
        if is_local_reference(ref) and ref not in seen:
            seen.add(ref)
            result.append(ref)
    return result


def _record_local_refs(record: Hike | Observation) -> list[str]:
    if isinstance(record, Hike):
        return _local_refs(record.image_references())
    return _local_refs(record.image_urls)


def _find_by_id(items: list[Observation], record_id: str | None) -> Observation | None:
    return next((item for item in items if item.id == record_id), None)


def _describe(record: Hike | Observation) -> str:
    if isinstance(record, Hike):
        return f"hike '{record.name}'"
    return f"observation {record.id}"


def _without_local_hike_refs(hike: Hike, new_owner: str, migrated: dict[str, str]) -> Hike:
    """Remote-ready copy: migrated paths become their URLs, other local paths are dropped."""
    return replace(
        hike,
        owner_id=new_owner,
        cover_image_url=_swap(hike.cover_image_url, migrated),
        image_urls=[url for ref in hike.image_urls if (url := _swap(ref, migrated))],
    )


def _without_local_observation_refs(
    observation: Observation, migrated: dict[str, str]
) -> Observation:
    return replace(
        observation,
        image_urls=[url for ref in observation.image_urls if (url := _swap(ref, migrated))],
    )


def _content_type(path: str) -> str:
    guessed, _ = mimetypes.guess_type(path)
    return guessed or "image/jpeg"


def _is_retryable_failure(error: Exception) -> bool:
    if isinstance(error, MigrationError):
        return error.retryable
    return not isinstance(error, (ValidationError, MalformedRecordError))


def _require_id(name: str, value: str) -> None:
    if not value or not value.strip():
        raise ValidationError(name, "must not be blank", value)


# =============================================================================
# Run state
# =============================================================================


@dataclass
class _Snapshot:
    """What is local now. Migration works on this and never re-reads."""

    hikes: list[Hike]
    # Parent hike id -> unsynced observations, in creation order
    observations: dict[str, list[Observation]]
    # Hikes already synced by an earlier run; their observations may still be pending
    synced_hike_ids: set[str]
    # Synced records with local images that never made it into the ledger,
    # paired with those (still existing) image paths
    resumed: list[tuple[Hike | Observation, list[str]]] = field(default_factory=list)
    # Ledger: local path -> remote URL of images already migrated
    migrated_urls: dict[str, str] = field(default_factory=dict)

    @property
    def observation_count(self) -> int:
        return sum(len(items) for items in self.observations.values())

    def pending_refs(self, record: Hike | Observation) -> list[str]:
        """Local image paths of ``record`` that are not migrated yet."""
        return [ref for ref in _record_local_refs(record) if ref not in self.migrated_urls]


@dataclass
class _Tally:
    migrated_hikes: int = 0
    migrated_observations: int = 0
    uploaded_images: int = 0
    failed_items: int = 0
    errors: list[str] = field(default_factory=list)

    def fail(self, message: str, count: int = 1) -> None:
        self.failed_items += count
        self.errors.append(message)

    def freeze(self) -> MigrationResult:
        return MigrationResult(
            migrated_hikes=self.migrated_hikes,
            migrated_observations=self.migrated_observations,
            uploaded_images=self.uploaded_images,
            failed_items=self.failed_items,
            errors=tuple(self.errors),
        )


@dataclass
class _ImageTarget:
    """A migrated record whose local images still need uploading."""

    source: Hike | Observation
    remote: Hike | Observation
    hike_id: str
    local_refs: list[str]
    observation_id: str | None = None
    # local path -> uploaded metadata
    uploaded: dict[str, ImageMetadata] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return _describe(self.source)


@dataclass
class _UploadOutcome:
    metadata: ImageMetadata | None = None
    error: Exception | None = None


# =============================================================================
# Service
# =============================================================================


class MigrationService:
    """Moves a guest's local data into the remote stores.

    Remote writes go through ``retry_policy``; the remote repositories
    handed in here should not retry on their own.
    """

    def __init__(
        self,
        local_db: LocalDatabase,
        local_images: LocalImageStore,
        remote_hikes: HikeRepository,
        remote_observations: ObservationRepository,
        remote_images: RemoteImageStore,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: Sleep = asyncio.sleep,
    ):
        """
        Args:
            local_db: Guest record store
            local_images: Guest image files
            remote_hikes: Destination for hikes
            remote_observations: Destination for observations
            remote_images: Destination for image files
            retry_policy: Policy for every remote write and upload
            sleep: Awaitable sleep used between retries (injectable for tests)
        """
        self.local_db = local_db
        self.local_images = local_images
        self.remote_hikes = remote_hikes
        self.remote_observations = remote_observations
        self.remote_images = remote_images
        self.retry_policy = retry_policy
        self.sleep = sleep

    # =========================================================================
    # Stats
    # =========================================================================

    async def check_migration_needed(self, guest_id: str) -> Result[MigrationStats]:
        """Count what a guest would migrate. Read-only."""
        try:
            _require_id("guest_id", guest_id)
        except ValidationError as e:
            return Error(e)
        return await safe_call(self._stats_for, guest_id)

    async def _stats_for(self, guest_id: str) -> MigrationStats:
        return await self._compute_stats(await self._take_snapshot(guest_id))

    async def _take_snapshot(self, guest_id: str) -> _Snapshot:
        hikes = await self.local_db.get_unsynced_hikes(guest_id)
        synced = await self.local_db.get_synced_hikes(guest_id)
        observations: dict[str, list[Observation]] = {}
        for hike in [*hikes, *synced]:
            pending = await self.local_db.get_unsynced_observations(hike.id)
            if pending:
                observations[hike.id] = pending

        snapshot = _Snapshot(
            hikes=hikes,
            observations=observations,
            synced_hike_ids={hike.id for hike in synced},
            migrated_urls={
                asset.local_path: asset.remote_url
                for asset in await self.local_db.get_migrated_assets(guest_id)
            },
        )

        # An interrupted run can leave records synced before their images
        for hike in synced:
            records: list[Hike | Observation] = [hike]
            records.extend(await self.local_db.get_synced_observations(hike.id))
            for record in records:
                # A missing file was already reported by the run that synced the record
                refs = [
                    ref
                    for ref in snapshot.pending_refs(record)
                    if await self.local_images.image_exists(ref)
                ]
                if refs:
                    snapshot.resumed.append((record, refs))
        return snapshot

    async def _compute_stats(self, snapshot: _Snapshot) -> MigrationStats:
        refs: list[str] = []
        for hike in snapshot.hikes:
            refs.extend(snapshot.pending_refs(hike))
        for items in snapshot.observations.values():
            for observation in items:
                refs.extend(snapshot.pending_refs(observation))
        for _, pending in snapshot.resumed:
            refs.extend(pending)

        size = 0
        for path in await self.local_images.prepare_for_upload(refs):
            size += await self.local_images.file_size(path)

        return MigrationStats(
            total_hikes=len(snapshot.hikes),
            total_observations=snapshot.observation_count,
            total_images=len(refs),
            estimated_size_bytes=size,
        )

    # =========================================================================
    # Pipeline
    # =========================================================================

    def migrate_guest_data(
        self, guest_id: str, new_user_id: str
    ) -> AsyncIterator[MigrationProgress]:
        """Start migrating a guest's data to ``new_user_id``.

        Blank ids raise ``ValidationError`` here, before any I/O. The
        returned iterator ends after ``Complete`` or ``MigrationFailed``;
        closing it early cancels any in-flight upload.
        """
        _require_id("guest_id", guest_id)
        _require_id("new_user_id", new_user_id)
        return self._run(guest_id, new_user_id)

    async def _run(self, guest_id: str, new_user_id: str) -> AsyncIterator[MigrationProgress]:
        log = StorageLoggerAdapter(logger, {"guest_id": guest_id, "user_id": new_user_id})
        tally = _Tally()

        try:
            snapshot = await self._take_snapshot(guest_id)
            stats = await self._compute_stats(snapshot)
            log.info(
                f"Migration starting: {stats.total_hikes} hikes, "
                f"{stats.total_observations} observations, {stats.total_images} images"
            )
            yield Initializing(stats)

            if not stats.has_work:
                log.info("Nothing to migrate")
                yield Complete(tally.freeze())
                return

            targets: list[_ImageTarget] = []
            migrated_hike_ids = set(snapshot.synced_hike_ids)

            async for event in self._migrate_hikes(
                snapshot, new_user_id, tally, targets, migrated_hike_ids, log
            ):
                yield event

            async for event in self._migrate_observations(
                snapshot, migrated_hike_ids, tally, targets, log
            ):
                yield event

            await self._resume_image_targets(snapshot, tally, targets, log)

            async with aclosing(
                self._upload_images(
                    guest_id, new_user_id, snapshot.migrated_urls, tally, targets, log
                )
            ) as uploads:
                async for event in uploads:
                    yield event

            result = tally.freeze()
            log.info(
                f"Migration complete: {result.migrated_hikes} hikes, "
                f"{result.migrated_observations} observations, "
                f"{result.uploaded_images} images, {result.failed_items} failed"
            )
            yield Complete(result)

        except Exception as e:
            retryable = _is_retryable_failure(e)
            log.error(f"Migration aborted: {e}", exc_info=True)
            yield MigrationFailed(str(e) or type(e).__name__, retryable=retryable)

    async def _migrate_hikes(
        self,
        snapshot: _Snapshot,
        new_user_id: str,
        tally: _Tally,
        targets: list[_ImageTarget],
        migrated_hike_ids: set[str],
        log: StorageLoggerAdapter,
    ) -> AsyncIterator[MigrationProgress]:
        total = len(snapshot.hikes)
        log.info(f"Migrating {total} hikes")

        for index, hike in enumerate(snapshot.hikes, start=1):
            remote = _without_local_hike_refs(hike, new_user_id, snapshot.migrated_urls)
            result = await retry_result(
                self.remote_hikes.create_hike,
                remote,
                policy=self.retry_policy,
                operation="migrate_hike",
                sleep=self.sleep,
            )
            match result:
                case Success(value=created):
                    await self.local_db.mark_hike_synced(hike.id)
                    migrated_hike_ids.add(hike.id)
                    tally.migrated_hikes += 1
                    refs = snapshot.pending_refs(hike)
                    if refs:
                        targets.append(_ImageTarget(hike, created, hike.id, refs))
                case Error(message=message):
                    log.warning(f"Hike {hike.id} failed to migrate: {message}")
                    tally.fail(f"Failed to migrate hike '{hike.name}': {message}")
                    self._skip_dependents(snapshot, hike, tally)
                case _:
                    tally.fail(f"Failed to migrate hike '{hike.name}': no result")
                    self._skip_dependents(snapshot, hike, tally)

            yield MigratingHikes(current=index, total=total, hike_name=hike.name)

    def _skip_dependents(self, snapshot: _Snapshot, hike: Hike, tally: _Tally) -> None:
        """Count a failed hike's observations and images as failed."""
        observations = snapshot.observations.get(hike.id, [])
        if observations:
            tally.fail(
                f"Skipped {len(observations)} observations of hike '{hike.name}': hike not migrated",
                count=len(observations),
            )
        images = len(snapshot.pending_refs(hike)) + sum(
            len(snapshot.pending_refs(observation)) for observation in observations
        )
        if images:
            tally.fail(
                f"Skipped {images} images of hike '{hike.name}': hike not migrated", count=images
            )

    async def _migrate_observations(
        self,
        snapshot: _Snapshot,
        migrated_hike_ids: set[str],
        tally: _Tally,
        targets: list[_ImageTarget],
        log: StorageLoggerAdapter,
    ) -> AsyncIterator[MigrationProgress]:
        pending = [
            observation
            for hike_id, items in snapshot.observations.items()
            if hike_id in migrated_hike_ids
            for observation in items
        ]
        pending.sort(key=lambda observation: observation.created_at)
        total = len(pending)
        log.info(f"Migrating {total} observations")

        for index, observation in enumerate(pending, start=1):
            result = await retry_result(
                self.remote_observations.create_observation,
                _without_local_observation_refs(observation, snapshot.migrated_urls),
                policy=self.retry_policy,
                operation="migrate_observation",
                sleep=self.sleep,
            )
            refs = snapshot.pending_refs(observation)
            match result:
                case Success(value=created):
                    await self.local_db.mark_observation_synced(observation.id)
                    tally.migrated_observations += 1
                    if refs:
                        targets.append(
                            _ImageTarget(
                                observation,
                                created,
                                observation.hike_id,
                                refs,
                                observation_id=observation.id,
                            )
                        )
                case _:
                    message = result.message if isinstance(result, Error) else "no result"
                    log.warning(f"Observation {observation.id} failed to migrate: {message}")
                    tally.fail(f"Failed to migrate observation {observation.id}: {message}")
                    if refs:
                        tally.fail(
                            f"Skipped {len(refs)} images of observation {observation.id}: "
                            "observation not migrated",
                            count=len(refs),
                        )

            yield MigratingObservations(current=index, total=total, hike_id=observation.hike_id)

    async def _resume_image_targets(
        self,
        snapshot: _Snapshot,
        tally: _Tally,
        targets: list[_ImageTarget],
        log: StorageLoggerAdapter,
    ) -> None:
        """Queue images of records an earlier run synced but never finished.

        The remote copy is fetched so its image fields can be rewritten;
        if it cannot be read the pending images count as failures.
        """
        for record, refs in snapshot.resumed:
            result: Result[Any]
            if isinstance(record, Hike):
                hike_id, observation_id = record.id, None
                result = await retry_result(
                    self.remote_hikes.get_hike,
                    record.id,
                    policy=self.retry_policy,
                    operation="read_migrated_hike",
                    sleep=self.sleep,
                )
            else:
                hike_id, observation_id = record.hike_id, record.id
                listed = await retry_result(
                    self.remote_observations.get_observations_for_hike,
                    record.hike_id,
                    policy=self.retry_policy,
                    operation="read_migrated_observation",
                    sleep=self.sleep,
                )
                result = listed.map(lambda items: _find_by_id(items, observation_id))

            match result:
                case Success(value=remote) if remote is not None:
                    log.info(f"Resuming {len(refs)} images of {_describe(record)}")
                    targets.append(_ImageTarget(record, remote, hike_id, refs, observation_id))
                case _:
                    message = (
                        result.message if isinstance(result, Error) else "remote copy not found"
                    )
                    log.warning(f"Cannot resume images of {_describe(record)}: {message}")
                    tally.fail(
                        f"Skipped {len(refs)} images of {_describe(record)}: {message}",
                        count=len(refs),
                    )

    async def _upload_images(
        self,
        guest_id: str,
        new_user_id: str,
        migrated_urls: dict[str, str],
        tally: _Tally,
        targets: list[_ImageTarget],
        log: StorageLoggerAdapter,
    ) -> AsyncIterator[MigrationProgress]:
        total = sum(len(target.local_refs) for target in targets)
        if total:
            log.info(f"Uploading {total} images")
        current = 0

        for target in targets:
            for local_path in target.local_refs:
                current += 1
                if not await self.local_images.image_exists(local_path):
                    log.warning(f"Image missing for {target.label}: {local_path}")
                    tally.fail(f"Image not found for {target.label}: {local_path}")
                    continue

                outcome = _UploadOutcome()
                async with aclosing(
                    self._upload_one(target, local_path, new_user_id, current, total, outcome)
                ) as events:
                    async for event in events:
                        yield event

                if outcome.metadata is not None:
                    target.uploaded[local_path] = outcome.metadata
                    tally.uploaded_images += 1
                else:
                    message = str(outcome.error) if outcome.error else "upload failed"
                    log.warning(f"Upload of {local_path} failed: {message}")
                    tally.fail(f"Failed to upload image for {target.label}: {message}")

            if target.uploaded:
                await self._point_record_at_uploads(target, guest_id, migrated_urls, tally, log)

    async def _upload_one(
        self,
        target: _ImageTarget,
        local_path: str,
        uploaded_by: str,
        current: int,
        total: int,
        outcome: _UploadOutcome,
    ) -> AsyncIterator[UploadingImages]:
        """Upload one asset, yielding its byte progress.

        The SDK reports progress through a callback; a queue turns those
        callbacks into events on this iterator. At least one event with
        fraction 1.0 is emitted for a successful upload.
        """
        storage_path = image_storage_path(
            target.hike_id,
            uuid.uuid4().hex,
            Path(local_path).suffix or "jpg",
            observation_id=target.observation_id,
        )
        queue: asyncio.Queue[UploadProgress | None] = asyncio.Queue()
        on_progress: Callable[[UploadProgress], None] = queue.put_nowait

        task = asyncio.create_task(
            retry_with_backoff(
                self.remote_images.upload,
                Path(local_path),
                storage_path,
                _content_type(local_path),
                uploaded_by,
                on_progress,
                policy=self.retry_policy,
                operation="upload_image",
                sleep=self.sleep,
            )
        )
        task.add_done_callback(lambda _: queue.put_nowait(None))

        last_fraction: float | None = None
        try:
            while (progress := await queue.get()) is not None:
                fraction = progress.fraction
                if fraction != last_fraction:
                    last_fraction = fraction
                    yield UploadingImages(current=current, total=total, fraction=fraction)
        finally:
            if not task.done():
                task.cancel()

        if task.cancelled():
            raise MigrationError("Image upload was cancelled", retryable=True)
        error = task.exception()
        if error is not None:
            outcome.error = error if isinstance(error, Exception) else RuntimeError(str(error))
            return
        outcome.metadata = task.result()
        if last_fraction != 1.0:
            yield UploadingImages(current=current, total=total, fraction=1.0)

    async def _point_record_at_uploads(
        self,
        target: _ImageTarget,
        guest_id: str,
        migrated_urls: dict[str, str],
        tally: _Tally,
        log: StorageLoggerAdapter,
    ) -> None:
        """Swap local paths for remote URLs on the remote copy, then record the assets.

        Paths migrated by an earlier run resolve through ``migrated_urls``.
        """
        urls = {path: metadata.url for path, metadata in target.uploaded.items()}
        known = {**migrated_urls, **urls}
        source, remote = target.source, target.remote

        result: Result[Any]
        if isinstance(source, Hike) and isinstance(remote, Hike):
            result = await retry_result(
                self.remote_hikes.update_hike,
                _with_remote_hike_urls(remote, source, known),
                policy=self.retry_policy,
                operation="update_migrated_hike",
                sleep=self.sleep,
            )
        elif isinstance(source, Observation) and isinstance(remote, Observation):
            result = await retry_result(
                self.remote_observations.update_observation,
                _with_remote_observation_urls(remote, source, known),
                policy=self.retry_policy,
                operation="update_migrated_observation",
                sleep=self.sleep,
            )
        else:
            raise MigrationError(f"Mismatched record types for {target.label}", retryable=False)

        if not isinstance(result, Success):
            message = result.message if isinstance(result, Error) else "no result"
            log.warning(f"Could not attach images to {target.label}: {message}")
            tally.fail(f"Failed to attach images to {target.label}: {message}")
            return

        for local_path, url in urls.items():
            await self.local_db.record_migrated_asset(local_path, url, guest_id)

    # =========================================================================
    # Cleanup
    # =========================================================================

    async def cleanup_after_migration(self, guest_id: str) -> Result[None]:
        """Delete local data that now lives remotely.

        Only migrated assets, synced observations and synced hikes left
        with nothing unmigrated are removed. Safe to call repeatedly.
        """
        try:
            _require_id("guest_id", guest_id)
        except ValidationError as e:
            return Error(e)
        return await safe_call(self._cleanup, guest_id)

    async def _cleanup(self, guest_id: str) -> None:
        log = StorageLoggerAdapter(logger, {"guest_id": guest_id})

        assets = await self.local_db.get_migrated_assets(guest_id)
        for asset in assets:
            (await self.local_images.delete_image(asset.local_path)).get_or_throw()
            await self.local_db.forget_migrated_asset(asset.local_path)

        removed_observations = 0
        removed_hikes = 0
        for hike in await self.local_db.get_synced_hikes(guest_id):
            for observation in await self.local_db.get_synced_observations(hike.id):
                if await self._has_local_images(observation.image_urls):
                    continue
                if await self.local_db.delete_observation(observation.id):
                    removed_observations += 1

            if await self.local_db.count_observations(hike.id) > 0:
                continue
            if await self._has_local_images(hike.image_references()):
                continue
            if await self.local_db.delete_hike(hike.id):
                removed_hikes += 1

        log.info(
            f"Cleanup removed {len(assets)} images, {removed_observations} observations "
            f"and {removed_hikes} hikes"
        )

    async def _has_local_images(self, refs: list[str]) -> bool:
        """True if any referenced local file still exists (i.e. was not migrated)."""
        return bool(await self.local_images.prepare_for_upload(_local_refs(refs)))


def _swap(ref: str, urls: dict[str, str]) -> str:
    """Remote URL for a reference; local paths that were not uploaded map to ''."""
    if not is_local_reference(ref):
        return ref
    return urls.get(ref, "")


def _merged_urls(source_refs: list[str], remote_urls: list[str], urls: dict[str, str]) -> list[str]:
    """Source order first, then URLs only the remote copy has."""
    merged = [url for ref in source_refs if (url := _swap(ref, urls))]
    return merged + [url for url in remote_urls if url not in merged]


def _with_remote_hike_urls(remote: Hike, source: Hike, urls: dict[str, str]) -> Hike:
    cover = _swap(source.cover_image_url, urls) or remote.cover_image_url
    images = _merged_urls(source.image_urls, remote.image_urls, urls)
    return replace(remote, cover_image_url=cover, image_urls=images)


def _with_remote_observation_urls(
    remote: Observation, source: Observation, urls: dict[str, str]
) -> Observation:
    return replace(remote, image_urls=_merged_urls(source.image_urls, remote.image_urls, urls))
