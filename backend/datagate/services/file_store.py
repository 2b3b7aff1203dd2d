"""
File store implementations.

- LocalFileStore: files under a directory, served from a public base URL
- NullFileStore: no storage configured; every URL is treated as foreign
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from datagate.services.interfaces.file_store import IFileStore

logger = logging.getLogger(__name__)


class LocalFileStore(IFileStore):
    """
    Files stored on the local filesystem.

    A URL maps to a key by stripping ``public_base_url``; other absolute
    URLs fall back to their path component.

    Example:
        store = LocalFileStore("./data/uploads", "http://localhost:8000/files")
        store.extract_key("http://localhost:8000/files/products/a.png")
        # -> "products/a.png"
    """

    def __init__(self, root: str, public_base_url: str = "/files"):
        self.root = Path(root).resolve()
        self.public_base_url = public_base_url.rstrip("/")

    def extract_key(self, url: Optional[str]) -> Optional[str]:
        if not url:
            return None

        prefix = f"{self.public_base_url}/"
        if url.startswith(prefix):
            key = url[len(prefix):]
        else:
            parsed = urlparse(url)
            if not parsed.path:
                return None
            key = parsed.path.lstrip("/")
            base_path = urlparse(self.public_base_url).path.strip("/")
            if base_path and key.startswith(base_path + "/"):
                key = key[len(base_path) + 1:]

        return key or None

    def _path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise PermissionError(f"Key escapes storage root: {key}")
        return path

    async def delete(self, key: str) -> None:
        path = self._path_for(key)
        await asyncio.to_thread(path.unlink, missing_ok=True)
        logger.info("File deleted", extra={"key": key})


class NullFileStore(IFileStore):
    """File store used when no storage is configured."""

    def extract_key(self, url: Optional[str]) -> Optional[str]:
        return None

    async def delete(self, key: str) -> None:
        logger.debug("No file store configured, skipping delete", extra={"key": key})
