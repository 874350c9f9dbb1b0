"""Artifact store factory — backend selection from ``store.backend``.

  s3    → S3ArtifactStore (AWS S3 or any S3-compatible endpoint)
  local → LocalArtifactStore (filesystem + nginx secure_link URLs)

Backend modules are imported lazily so that boto3 is only loaded when the
s3 backend is actually selected.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from scanrelay.errors import ConfigError
from scanrelay.store.protocol import ArtifactStore
from scanrelay.utils.logger import get_logger

if TYPE_CHECKING:
    from scanrelay.config import StoreConfig

logger = get_logger(__name__)


def create_artifact_store(store_config: "StoreConfig") -> ArtifactStore:
    """Build the configured ArtifactStore.

    Raises:
        ConfigError: unknown backend, or a backend missing required settings.
    """
    if store_config.backend == "s3":
        return _create_s3_store(store_config)
    if store_config.backend == "local":
        return _create_local_store(store_config)
    raise ConfigError(f"unknown store backend {store_config.backend!r}")


def _create_s3_store(store_config: "StoreConfig") -> ArtifactStore:
    from scanrelay.store.s3_store import S3ArtifactStore

    if not store_config.bucket:
        raise ConfigError("store.bucket is required for the s3 backend")
    store = S3ArtifactStore(
        bucket=store_config.bucket,
        prefix=store_config.prefix,
        endpoint=store_config.endpoint,
        region=store_config.region,
        access_key=store_config.access_key,
        secret_key=store_config.secret_key,
        force_path_style=store_config.force_path_style,
        max_attempts=store_config.max_attempts,
        backoff_base_s=store_config.backoff_base_s,
        backoff_cap_s=store_config.backoff_cap_s,
    )
    logger.info(
        "artifact_store_selected",
        backend=store.backend_name,
        bucket=store_config.bucket,
        endpoint=store_config.endpoint or "aws",
    )
    return store


def _create_local_store(store_config: "StoreConfig") -> ArtifactStore:
    from scanrelay.store.local_store import LocalArtifactStore

    store = LocalArtifactStore(
        root=store_config.root,
        public_base_url=store_config.public_base_url,
        signing_key=store_config.signing_key,
        prefix=store_config.prefix,
        max_attempts=store_config.max_attempts,
        backoff_base_s=store_config.backoff_base_s,
        backoff_cap_s=store_config.backoff_cap_s,
    )
    logger.info("artifact_store_selected", backend=store.backend_name, root=store_config.root)
    return store
