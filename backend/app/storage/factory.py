"""
Blob Store Factory

Selects the backend (s3 | memory) from config. The rest of the app only
calls get_blob_store() and never touches the concrete classes directly.
"""

from __future__ import annotations

from app.core.config import settings
from app.storage.base import BlobStore


def get_blob_store() -> BlobStore:
    backend = settings.storage_backend.lower()

    if backend == "s3":
        from app.storage.s3 import S3BlobStore
        return S3BlobStore.from_settings()

    if backend == "memory":
        from app.storage.memory import InMemoryBlobStore
        return InMemoryBlobStore()

    raise ValueError(
        f"Unknown storage backend: '{backend}'. "
        f"Valid options: 's3', 'memory'"
    )
