"""
In-memory Blob Store — local / degraded operation and tests.

Objects live in a process-scoped dict guarded by a lock; the store is lost
on restart, so resume only works within one process lifetime.
"""

from __future__ import annotations

import threading
from typing import AsyncIterator, BinaryIO

from app.storage.base import STREAM_CHUNK_BYTES, BlobStore


class InMemoryBlobStore(BlobStore):

    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}
        self._content_types: dict[str, str] = {}
        self._lock = threading.Lock()

    async def put(self, key: str, data: bytes, content_type: str | None = None) -> None:
        with self._lock:
            self._objects[key] = bytes(data)
            self._content_types[key] = content_type or "application/octet-stream"

    async def put_file(self, key: str, fileobj: BinaryIO, content_type: str | None = None) -> None:
        parts = []
        while True:
            chunk = fileobj.read(STREAM_CHUNK_BYTES)
            if not chunk:
                break
            parts.append(chunk)
        await self.put(key, b"".join(parts), content_type)

    async def get(self, key: str) -> bytes:
        with self._lock:
            try:
                return self._objects[key]
            except KeyError:
                raise FileNotFoundError(f"Object not found: {key}") from None

    async def iter_chunks(self, key: str, chunk_size: int = STREAM_CHUNK_BYTES) -> AsyncIterator[bytes]:
        data = await self.get(key)
        for offset in range(0, len(data), chunk_size):
            yield data[offset:offset + chunk_size]

    async def list(self, prefix: str) -> list[str]:
        with self._lock:
            return sorted(k for k in self._objects if k.startswith(prefix))

    async def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._objects

    async def signed_download_url(self, key: str, ttl: int) -> str:
        if not await self.exists(key):
            raise FileNotFoundError(f"Object not found: {key}")
        return f"memory://{key}?expires_in={ttl}"

    def content_type(self, key: str) -> str | None:
        return self._content_types.get(key)
