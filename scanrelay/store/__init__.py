"""Artifact store package.

    from scanrelay.store import ArtifactStore, AccessReference, create_artifact_store

Layout:
    protocol.py    — ArtifactStore Protocol + AccessReference
    s3_store.py    — S3ArtifactStore (boto3)
    local_store.py — LocalArtifactStore (filesystem, nginx secure_link)
    factory.py     — create_artifact_store()
"""

from scanrelay.store.factory import create_artifact_store
from scanrelay.store.protocol import AccessReference, ArtifactStore

__all__ = [
    "AccessReference",
    "ArtifactStore",
    "create_artifact_store",
]
