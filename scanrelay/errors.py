"""Error taxonomy for scanrelay.

Every exception carries a stable ``code`` string used in log events, job
records and HTTP error bodies:

  CONFIG_ERROR          malformed stage/job/config definition; fatal before any stage runs
  STAGE_FAILURE         a single stage action failed; escalated per its gating policy
  STORAGE_UNAVAILABLE   artifact store unreachable after bounded retries
  KEY_NOT_FOUND         sign() on a key that was never put()
  KEY_EXISTS            put() on a key that already holds an artifact (write-once)
  DISPATCH_FAILURE      job submission failed after retries (recorded, never raised to the run)
  RELAY_FETCH_FAILURE   relay could not download the referenced artifact
  RELAY_IMPORT_FAILURE  downstream import call failed
"""

from __future__ import annotations

from typing import Optional


class ScanRelayError(Exception):
    """Base class for all scanrelay errors."""

    code: str = "SCANRELAY_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ConfigError(ScanRelayError, ValueError):
    code = "CONFIG_ERROR"


class StageFailure(ScanRelayError):
    code = "STAGE_FAILURE"

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(message)
        self.stage = stage


class StorageUnavailable(ScanRelayError):
    code = "STORAGE_UNAVAILABLE"

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class KeyNotFound(ScanRelayError, KeyError):
    code = "KEY_NOT_FOUND"

    def __init__(self, store_key: str) -> None:
        super().__init__(f"no artifact stored under key {store_key!r}")
        self.store_key = store_key


class KeyExists(ScanRelayError):
    code = "KEY_EXISTS"

    def __init__(self, store_key: str) -> None:
        super().__init__(f"an artifact is already stored under key {store_key!r}")
        self.store_key = store_key


class DispatchFailure(ScanRelayError):
    code = "DISPATCH_FAILURE"


class RelayFetchError(ScanRelayError):
    """Artifact download failed. ``retryable`` is False for 4xx and size violations."""

    code = "RELAY_FETCH_FAILURE"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class RelayImportError(ScanRelayError):
    """Downstream import failed. ``retryable`` is False for non-transient 4xx."""

    code = "RELAY_IMPORT_FAILURE"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code
