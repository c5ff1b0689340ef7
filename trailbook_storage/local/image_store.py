"""
On-device image files for guest mode.

Images are copied under ``<images_dir>/<target_directory>/`` (for example
``hikes/<hike_id>``) and referenced from records by absolute path.
"""

from __future__ import annotations

import logging
import os
import shutil
import time
import uuid
from collections.abc import Iterable
from datetime import timedelta
from pathlib import Path

import aiofiles
import aiofiles.os

from ..exceptions import StorageIOError, ValidationError
from ..result import Result, safe_call

logger = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 64 * 1024
DEFAULT_SYNCED_IMAGE_RETENTION = timedelta(days=30)


def _directory_size(directory: Path) -> int:
    total = 0
    for root, _dirs, files in os.walk(directory):
        for name in files:
            try:
                total += os.path.getsize(os.path.join(root, name))
            except OSError:
                # File vanished between listing and stat
                continue
    return total


_rmtree = aiofiles.os.wrap(shutil.rmtree)
_directory_size_async = aiofiles.os.wrap(_directory_size)


class LocalImageStore:
    """Image file storage under a single root directory."""

    def __init__(self, images_dir: Path):
        self.images_dir = Path(images_dir)

    def _resolve_directory(self, target_directory: str) -> Path:
        relative = Path(target_directory)
        if relative.is_absolute() or ".." in relative.parts:
            raise ValidationError(
                "target_directory", "must be a relative path inside the image store", target_directory
            )
        return self.images_dir / relative

    async def ensure_root(self) -> None:
        try:
            await aiofiles.os.makedirs(self.images_dir, exist_ok=True)
        except OSError as e:
            raise StorageIOError("create_directory", str(self.images_dir), e) from e

    async def save_image(self, source: Path | str, target_directory: str) -> Result[str]:
        """Copy ``source`` into the store.

        Returns:
            Absolute path of the stored copy
        """
        return await safe_call(self._save_image, Path(source), target_directory)

    async def _save_image(self, source: Path, target_directory: str) -> str:
        target_dir = self._resolve_directory(target_directory)
        suffix = source.suffix or ".jpg"
        target = target_dir / f"{int(time.time() * 1000)}_{uuid.uuid4()}{suffix}"

        try:
            await aiofiles.os.makedirs(target_dir, exist_ok=True)
            async with aiofiles.open(source, "rb") as src, aiofiles.open(target, "wb") as dst:
                while chunk := await src.read(COPY_CHUNK_SIZE):
                    await dst.write(chunk)
        except OSError as e:
            try:
                await aiofiles.os.remove(target)
            except OSError:
                pass
            raise StorageIOError("save_image", str(source), e) from e

        logger.debug(f"Saved image {source} -> {target}")
        return str(target.resolve())

    async def delete_image(self, path: Path | str) -> Result[None]:
        """Delete one image. A missing file is a success."""
        return await safe_call(self._delete_image, Path(path))

    async def _delete_image(self, path: Path) -> None:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageIOError("delete_image", str(path), e) from e

    async def image_exists(self, path: Path | str) -> bool:
        return await aiofiles.os.path.isfile(path)

    async def file_size(self, path: Path | str) -> int:
        """Size in bytes, 0 for a missing file."""
        try:
            return (await aiofiles.os.stat(path)).st_size
        except FileNotFoundError:
            return 0

    async def get_total_storage_used(self) -> int:
        """Bytes used by every file under the store root."""
        if not await aiofiles.os.path.isdir(self.images_dir):
            return 0
        return await _directory_size_async(self.images_dir)

    async def delete_directory(self, target_directory: str) -> Result[None]:
        """Recursively delete ``<images_dir>/<target_directory>``. Missing is a success."""
        return await safe_call(self._delete_directory, target_directory)

    async def _delete_directory(self, target_directory: str) -> None:
        target_dir = self._resolve_directory(target_directory)
        if not await aiofiles.os.path.isdir(target_dir):
            return
        try:
            await _rmtree(target_dir)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageIOError("delete_directory", str(target_dir), e) from e

    async def prepare_for_upload(self, paths: Iterable[str]) -> list[Path]:
        """Turn stored references into uploadable files, dropping missing ones."""
        prepared: list[Path] = []
        for path in paths:
            if path and await aiofiles.os.path.isfile(path):
                prepared.append(Path(path))
            else:
                logger.debug(f"Skipping missing image {path}")
        return prepared

    async def cleanup_old_synced_images(
        self,
        synced_paths: Iterable[str],
        max_age: timedelta = DEFAULT_SYNCED_IMAGE_RETENTION,
    ) -> Result[int]:
        """Delete synced images last modified more than ``max_age`` ago.

        Only files listed in ``synced_paths`` are candidates; anything else
        in the store is left alone.

        Returns:
            Number of files deleted
        """
        return await safe_call(self._cleanup_old_synced_images, list(synced_paths), max_age)

    async def _cleanup_old_synced_images(self, synced_paths: list[str], max_age: timedelta) -> int:
        cutoff = time.time() - max_age.total_seconds()
        deleted = 0
        for path in synced_paths:
            try:
                stat = await aiofiles.os.stat(path)
            except FileNotFoundError:
                continue
            if stat.st_mtime >= cutoff:
                continue
            try:
                await aiofiles.os.remove(path)
                deleted += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                raise StorageIOError("cleanup_old_synced_images", path, e) from e
        if deleted:
            logger.info(f"Removed {deleted} synced images older than {max_age.days} days")
        return deleted
