"""
Blob Store
==========

Binary storage for uploaded files, addressed by an opaque id generated at
upload time (never a content hash: two uploads of the same bytes get two ids).
The store knows nothing about matters or templates; referential integrity is
the caller's job.

- LocalStorage: synchronous filesystem backend (put/get/exists/delete/list_keys)
- BlobStore: async facade used by the rest of the app. `get` on a missing or
  unreadable id returns None and never raises.
"""

import asyncio
import hashlib
import logging
import os
import re
import uuid
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import List, Optional

from .editing import now_ms
from .schemas import AttachedFile

logger = logging.getLogger(__name__)

# Blob ids become file names and archive entry names
_SAFE_KEY = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def is_valid_key(key: str) -> bool:
    return bool(key) and bool(_SAFE_KEY.match(key)) and ".." not in key


def new_blob_id() -> str:
    return uuid.uuid4().hex


@dataclass
class StorageMeta:
    """What was written"""
    key: str
    size_bytes: int
    sha256: str
    content_type: Optional[str] = None


class LocalStorage:
    """Filesystem backend: one file per key under base_path"""

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def generate_key() -> str:
        return new_blob_id()

    def _path(self, key: str) -> Path:
        if not is_valid_key(key):
            raise ValueError(f"Invalid blob key: {key!r}")
        return self.base_path / key

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> StorageMeta:
        path = self._path(key)
        tmp = path.with_name(f".{key}.tmp")
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
        return StorageMeta(
            key=key,
            size_bytes=len(data),
            sha256=hashlib.sha256(data).hexdigest(),
            content_type=content_type,
        )

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.is_file():
            return None
        with open(path, "rb") as f:
            return f.read()

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.is_file():
            return False
        path.unlink()
        return True

    def list_keys(self) -> List[str]:
        return sorted(
            p.name for p in self.base_path.iterdir()
            if p.is_file() and not p.name.startswith(".")
        )


class BlobStore:
    """
    Async blob store over a synchronous backend.

    Each call is a suspension point: the backend runs in the loop's default
    executor, so callers can fan out many requests and join on them with
    asyncio.gather.
    """

    def __init__(self, backend: LocalStorage):
        self.backend = backend

    @classmethod
    def from_settings(cls, settings=None) -> "BlobStore":
        from .config import get_settings
        settings = settings or get_settings()
        return cls(LocalStorage(settings.resolved_blob_dir()))

    async def _run(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        if kwargs:
            return await loop.run_in_executor(None, partial(func, *args, **kwargs))
        return await loop.run_in_executor(None, func, *args)

    async def put(self, blob_id: str, data: bytes, content_type: Optional[str] = None) -> StorageMeta:
        return await self._run(self.backend.put, blob_id, data, content_type)

    async def get(self, blob_id: str) -> Optional[bytes]:
        """Blob bytes, or None when missing or unreadable"""
        if not is_valid_key(blob_id):
            logger.warning(f"Rejected invalid blob id: {blob_id!r}")
            return None
        try:
            return await self._run(self.backend.get, blob_id)
        except OSError as e:
            logger.warning(f"Blob {blob_id} unreadable: {e}")
            return None

    async def exists(self, blob_id: str) -> bool:
        if not is_valid_key(blob_id):
            return False
        return await self._run(self.backend.exists, blob_id)

    async def delete(self, blob_id: str) -> bool:
        if not is_valid_key(blob_id):
            return False
        return await self._run(self.backend.delete, blob_id)

    async def keys(self) -> List[str]:
        return await self._run(self.backend.list_keys)

    async def upload(self, data: bytes, name: str, content_type: Optional[str] = None) -> AttachedFile:
        """Store new bytes under a fresh id and describe them for a material"""
        blob_id = new_blob_id()
        meta = await self.put(blob_id, data, content_type)
        logger.info(f"Stored blob {blob_id} ({meta.size_bytes} bytes) for {name!r}")
        return AttachedFile(
            id=blob_id,
            name=name,
            type=content_type or "application/octet-stream",
            size=meta.size_bytes,
            uploaded_at=now_ms(),
        )
