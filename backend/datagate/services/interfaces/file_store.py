"""
File Store Interface (IFileStore)

Contract for the blob store holding files referenced by file-bearing
entity fields. The gateway only ever deletes: uploads happen elsewhere and
arrive as URLs in payloads.
"""

from abc import ABC, abstractmethod
from typing import Optional


class IFileStore(ABC):
    """Abstract interface for blob-store cleanup."""

    @abstractmethod
    def extract_key(self, url: Optional[str]) -> Optional[str]:
        """
        Derive the storage key from a stored file URL.

        Returns:
            The key, or None if the URL does not belong to this store
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """
        Delete the object stored under ``key``.

        Raises:
            OSError: The store could not delete the object
        """
        pass
