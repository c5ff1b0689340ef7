"""
Azure Blob Storage for image assets of authenticated users.
"""

from .image_store import BlobImageStore, image_storage_path

__all__ = ["BlobImageStore", "image_storage_path"]
