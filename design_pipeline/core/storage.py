"""
Storage Abstraction Layer - The Bridge Pattern

Holds uploaded inputs and pipeline stage outputs behind a small async
interface. LocalStorage is the only backend.
"""

import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from datetime import datetime

from design_pipeline.core.exceptions import DesignPipelineError


class StorageError(DesignPipelineError):
    """Raised when storage operations fail."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


class IStorage(ABC):
    """Interface for storage operations - The Bridge"""

    @abstractmethod
    async def upload(
        self,
        file_data: bytes,
        filename: str,
        folder: str = "uploads",
        content_type: str = "image/png"
    ) -> str:
        """
        Store a file and return its unique storage key.

        Args:
            file_data: Raw bytes of the file
            filename: Original filename (only the extension is kept)
            folder: Subfolder/container prefix
            content_type: MIME type of the file

        Returns:
            Storage key usable with read(), delete() and exists()
        """

    @abstractmethod
    async def read(self, storage_key: str) -> bytes:
        """Return the stored bytes. Raises StorageError if the key is unknown."""

    @abstractmethod
    async def delete(self, storage_key: str) -> bool:
        """Delete a file. Returns True if something was deleted."""

    @abstractmethod
    async def exists(self, storage_key: str) -> bool:
        """Check if a file exists in storage."""


class LocalStorage(IStorage):
    """Local filesystem storage implementation."""

    def __init__(self, base_path: str = "./data/storage"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_unique_filename(self, filename: str) -> str:
        """Generate a unique filename with timestamp and UUID prefix."""
        ext = Path(filename).suffix
        unique_id = uuid.uuid4().hex[:12]
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return f"{timestamp}_{unique_id}{ext}"

    def _resolve(self, storage_key: str) -> Path:
        path = (self.base_path / storage_key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise StorageError(f"Invalid storage key: {storage_key}")
        return path

    async def upload(
        self,
        file_data: bytes,
        filename: str,
        folder: str = "uploads",
        content_type: str = "image/png"
    ) -> str:
        folder_path = self.base_path / folder
        folder_path.mkdir(parents=True, exist_ok=True)

        unique_filename = self._get_unique_filename(filename)
        with open(folder_path / unique_filename, "wb") as f:
            f.write(file_data)

        return f"{folder}/{unique_filename}"

    async def read(self, storage_key: str) -> bytes:
        file_path = self._resolve(storage_key)
        try:
            with open(file_path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise StorageError(f"File not found: {storage_key}")

    async def delete(self, storage_key: str) -> bool:
        file_path = self._resolve(storage_key)
        if file_path.exists():
            file_path.unlink()
            return True
        return False

    async def exists(self, storage_key: str) -> bool:
        return self._resolve(storage_key).exists()
