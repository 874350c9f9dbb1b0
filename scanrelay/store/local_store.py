"""LocalArtifactStore — filesystem-backed store for development and single-host setups.

Artifacts are written under ``root`` and served by nginx; access references
are nginx ``secure_link`` URLs:

    location /artifacts/ {
        secure_link $arg_md5,$arg_expires;
        secure_link_md5 "$secure_link_expires$uri <signing_key>";
        if ($secure_link = "")  { return 403; }
        if ($secure_link = "0") { return 410; }
        alias /srv/artifacts/;
    }

``public_base_url`` is the externally reachable URL of that location
(e.g. ``https://artifacts.internal/artifacts``).
"""

from __future__ import annotations

import base64
import hashlib
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import quote, urlsplit

from scanrelay.constants import (
    STORE_BACKOFF_BASE_S,
    STORE_BACKOFF_CAP_S,
    STORE_PUT_MAX_ATTEMPTS,
)
from scanrelay.errors import ConfigError, KeyExists, KeyNotFound, StorageUnavailable
from scanrelay.store.protocol import AccessReference
from scanrelay.utils.logger import get_logger
from scanrelay.utils.retry import async_retrying

logger = get_logger(__name__)


def _clean_segment(value: str) -> str:
    cleaned = "".join(c if c.isalnum() or c in "._-" else "_" for c in value.strip())
    return cleaned.strip(".") or "object"


def secure_link_token(uri: str, expires: int, signing_key: str) -> str:
    """nginx secure_link_md5 token: base64url(md5("<expires><uri> <key>")), unpadded."""
    digest = hashlib.md5(f"{expires}{uri} {signing_key}".encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class LocalArtifactStore:
    backend_name = "local"

    def __init__(
        self,
        *,
        root: str,
        public_base_url: str,
        signing_key: str,
        prefix: str = "",
        max_attempts: int = STORE_PUT_MAX_ATTEMPTS,
        backoff_base_s: float = STORE_BACKOFF_BASE_S,
        backoff_cap_s: float = STORE_BACKOFF_CAP_S,
    ) -> None:
        if not public_base_url:
            raise ConfigError("store.public_base_url is required for the local backend")
        if not signing_key:
            raise ConfigError("store.signing_key is required for the local backend")
        self._root = Path(os.path.expanduser(root))
        self._base_url = public_base_url.rstrip("/")
        self._base_path = urlsplit(self._base_url).path
        self._signing_key = signing_key
        self._prefix = prefix.strip("/")
        self._max_attempts = max_attempts
        self._backoff_base_s = backoff_base_s
        self._backoff_cap_s = backoff_cap_s

    async def put(self, name: str, data: bytes) -> str:
        key = self._key_for(name)
        path = self._root / key

        retrying = async_retrying(
            operation="store.put",
            max_attempts=self._max_attempts,
            base=self._backoff_base_s,
            cap=self._backoff_cap_s,
            retry_on=lambda exc: isinstance(exc, OSError) and not isinstance(exc, FileExistsError),
            store_key=key,
        )
        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    self._write_once(path, data)
        except FileExistsError:
            raise KeyExists(key) from None
        except OSError as exc:
            logger.error("store_put_failed", backend=self.backend_name, store_key=key, error=str(exc))
            raise StorageUnavailable(
                f"local put of {key!r} failed after {attempts} attempt(s): {exc}",
                attempts=attempts,
            ) from exc

        logger.info("store_put", backend=self.backend_name, store_key=key, bytes=len(data))
        return key

    async def sign(self, store_key: str, ttl_s: int) -> AccessReference:
        if not (self._root / store_key).is_file():
            raise KeyNotFound(store_key)
        expires = int(time.time()) + int(ttl_s)
        quoted_key = quote(store_key)
        uri = f"{self._base_path}/{quoted_key}"
        token = secure_link_token(uri, expires, self._signing_key)
        url = f"{self._base_url}/{quoted_key}?md5={token}&expires={expires}"
        return AccessReference(
            store_key=store_key,
            url=url,
            expires_at=datetime.fromtimestamp(expires, tz=timezone.utc),
        )

    async def close(self) -> None:
        return None

    def _key_for(self, name: str) -> str:
        segments = [_clean_segment(s) for s in name.split("/") if s.strip()]
        key = "/".join(segments) or "object"
        return f"{self._prefix}/{key}" if self._prefix else key

    @staticmethod
    def _write_once(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        # "xb": exclusive create, FileExistsError if the key is taken
        with open(path, "xb") as fh:
            try:
                fh.write(data)
            except OSError:
                path.unlink(missing_ok=True)
                raise
