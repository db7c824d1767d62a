"""
Blob Store — Abstract Base

The pipeline treats storage as an opaque key → bytes / JSON store. Every
backend (S3, in-memory) implements this interface; orchestration code only
speaks this protocol.

Contract:
  - Keys are hierarchical strings (see app/storage/keys.py).
  - get() / iter_chunks() raise FileNotFoundError for a missing key.
  - put_file() streams from a file object; callers never need to hold a
    whole archive in memory.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, BinaryIO

JSON_CONTENT_TYPE = "application/json"
STREAM_CHUNK_BYTES = 1024 * 1024


class BlobStore(ABC):

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str | None = None) -> None:
        """Store bytes at key, replacing any previous object."""

    @abstractmethod
    async def put_file(self, key: str, fileobj: BinaryIO, content_type: str | None = None) -> None:
        """Store the remaining contents of a readable binary file object."""

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Return the object's bytes."""

    @abstractmethod
    def iter_chunks(self, key: str, chunk_size: int = STREAM_CHUNK_BYTES) -> AsyncIterator[bytes]:
        """Yield the object's bytes in chunks."""

    @abstractmethod
    async def list(self, prefix: str) -> list[str]:
        """Return all keys starting with prefix, sorted."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    async def signed_download_url(self, key: str, ttl: int) -> str:
        """Time-limited GET URL for direct client download."""

    # ------------------------------------------------------------------
    # JSON helpers
    # ------------------------------------------------------------------

    async def get_json(self, key: str) -> Any:
        return json.loads(await self.get(key))

    async def put_json(self, key: str, payload: Any) -> None:
        body = json.dumps(payload, indent=2, default=str).encode("utf-8")
        await self.put(key, body, JSON_CONTENT_TYPE)
