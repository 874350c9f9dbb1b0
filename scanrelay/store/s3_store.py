"""S3ArtifactStore — boto3-backed artifact store.

Works against AWS S3 and S3-compatible stores (MinIO, Ceph RGW) through
``endpoint_url`` + path-style addressing.

boto3 is synchronous; every client call runs in the default executor so the
per-report delivery coroutines stay concurrent.

Keys: ``<prefix>/<name>``. The caller includes the run id in ``name`` so
keys are unique per pipeline run.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from scanrelay.constants import (
    STORE_BACKOFF_BASE_S,
    STORE_BACKOFF_CAP_S,
    STORE_PUT_MAX_ATTEMPTS,
)
from scanrelay.errors import KeyExists, KeyNotFound, StorageUnavailable
from scanrelay.store.protocol import AccessReference
from scanrelay.utils.logger import get_logger
from scanrelay.utils.retry import async_retrying

logger = get_logger(__name__)

_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


def _status_of(exc: ClientError) -> int:
    return int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0)


def _is_transient(exc: BaseException) -> bool:
    """Connection/timeouts and 5xx/throttling responses are worth retrying."""
    if isinstance(exc, ClientError):
        status = _status_of(exc)
        return status >= 500 or status in (408, 429)
    return isinstance(exc, BotoCoreError)


class S3ArtifactStore:
    backend_name = "s3"

    def __init__(
        self,
        *,
        bucket: str,
        prefix: str = "",
        endpoint: str = "",
        region: str = "",
        access_key: str = "",
        secret_key: str = "",
        force_path_style: bool = False,
        max_attempts: int = STORE_PUT_MAX_ATTEMPTS,
        backoff_base_s: float = STORE_BACKOFF_BASE_S,
        backoff_cap_s: float = STORE_BACKOFF_CAP_S,
        client: Optional[Any] = None,
    ) -> None:
        self._bucket = bucket
        self._prefix = prefix.strip("/")
        self._max_attempts = max_attempts
        self._backoff_base_s = backoff_base_s
        self._backoff_cap_s = backoff_cap_s
        if client is not None:
            self._client = client
        else:
            session = boto3.session.Session(
                aws_access_key_id=access_key or None,
                aws_secret_access_key=secret_key or None,
                region_name=region or None,
            )
            self._client = session.client(
                "s3",
                endpoint_url=endpoint or None,
                config=BotoConfig(
                    s3={"addressing_style": "path" if force_path_style else "auto"},
                    signature_version="s3v4",
                    retries={"max_attempts": 1, "mode": "standard"},
                ),
            )

    # ── Protocol ──────────────────────────────────────────────────────────────

    async def put(self, name: str, data: bytes) -> str:
        key = self._key_for(name)

        retrying = async_retrying(
            operation="store.put",
            max_attempts=self._max_attempts,
            base=self._backoff_base_s,
            cap=self._backoff_cap_s,
            retry_on=_is_transient,
            store_key=key,
        )
        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    # Only the first attempt checks write-once: a retry after a
                    # lost response would otherwise see its own object.
                    if attempts == 1 and await self._exists(key):
                        raise KeyExists(key)
                    await self._call(
                        self._client.put_object,
                        Bucket=self._bucket,
                        Key=key,
                        Body=data,
                        ContentLength=len(data),
                    )
        except (BotoCoreError, ClientError) as exc:
            logger.error(
                "store_put_failed",
                backend=self.backend_name,
                store_key=key,
                attempts=attempts,
                error=str(exc),
            )
            raise StorageUnavailable(
                f"s3 put of {key!r} failed after {attempts} attempt(s): {exc}",
                attempts=attempts,
            ) from exc

        logger.info("store_put", backend=self.backend_name, store_key=key, bytes=len(data))
        return key

    async def sign(self, store_key: str, ttl_s: int) -> AccessReference:
        try:
            exists = await self._exists(store_key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageUnavailable(f"s3 head of {store_key!r} failed: {exc}") from exc
        if not exists:
            raise KeyNotFound(store_key)
        try:
            url = await self._call(
                self._client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self._bucket, "Key": store_key},
                ExpiresIn=int(ttl_s),
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageUnavailable(f"s3 presign of {store_key!r} failed: {exc}") from exc
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(ttl_s))
        return AccessReference(store_key=store_key, url=url, expires_at=expires_at)

    async def close(self) -> None:
        close = getattr(self._client, "close", None)
        if callable(close):
            close()

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _key_for(self, name: str) -> str:
        name = name.strip("/")
        return f"{self._prefix}/{name}" if self._prefix else name

    async def _exists(self, key: str) -> bool:
        """HEAD the key. Errors other than not-found propagate unchanged."""
        try:
            await self._call(self._client.head_object, Bucket=self._bucket, Key=key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _NOT_FOUND_CODES or _status_of(exc) == 404:
                return False
            raise
        return True

    async def _call(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args, **kwargs))
