"""ArtifactStore Protocol + AccessReference.

Backends:
    s3_store.py    — S3ArtifactStore (boto3; any S3-compatible object store)
    local_store.py — LocalArtifactStore (filesystem + nginx secure_link URLs)
    factory.py     — create_artifact_store() — backend selection from config

Contract:
    put(name, data) -> store_key
        Write-once. Retries transient failures with exponential backoff and
        raises StorageUnavailable once the attempts are exhausted.
    sign(store_key, ttl_s) -> AccessReference
        Raises KeyNotFound when nothing was put under store_key.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class AccessReference:
    """Time-limited, read-only pointer to a stored artifact.

    Usable by a third party (the relay) without store credentials.
    """

    store_key: str
    url: str
    expires_at: datetime

    def remaining_s(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (self.expires_at - now).total_seconds()

    @property
    def expired(self) -> bool:
        return self.remaining_s() <= 0


@runtime_checkable
class ArtifactStore(Protocol):
    """Pluggable artifact store interface."""

    backend_name: str

    async def put(self, name: str, data: bytes) -> str:
        """Persist ``data`` under a key derived from ``name``; return the key."""
        ...

    async def sign(self, store_key: str, ttl_s: int) -> AccessReference:
        """Mint a read-only access reference valid for ``ttl_s`` seconds."""
        ...

    async def close(self) -> None:
        """Release client resources."""
        ...
