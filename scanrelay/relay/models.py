"""Relay job model: intake payload, state machine and job record.

State machine::

    RECEIVED → FETCHING → FETCH_FAILED ─────────────────────→ FAILED(FETCH_FAILED)
                        → FETCHED → IMPORTING → IMPORTED
                                              → IMPORT_FAILED → IMPORTING (retry, up to M)
                                                              → FAILED(IMPORT_FAILED)
    any non-terminal state ── watchdog ──→ FAILED(WATCHDOG_TIMEOUT)

Records are never deduplicated: identical submissions get distinct job ids.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlsplit

from scanrelay.utils.logger import redact_url


class JobState(str, enum.Enum):
    RECEIVED = "RECEIVED"
    FETCHING = "FETCHING"
    FETCH_FAILED = "FETCH_FAILED"
    FETCHED = "FETCHED"
    IMPORTING = "IMPORTING"
    IMPORT_FAILED = "IMPORT_FAILED"
    IMPORTED = "IMPORTED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (JobState.IMPORTED, JobState.FAILED)


class ImportOutcome(str, enum.Enum):
    """Coarse outcome exposed on GET /jobs. PENDING covers not-yet-imported jobs."""

    PENDING = "PENDING"
    RETRYING = "RETRYING"
    IMPORTED = "IMPORTED"
    FAILED = "FAILED"


class FailureReason(str, enum.Enum):
    FETCH_FAILED = "FETCH_FAILED"
    IMPORT_FAILED = "IMPORT_FAILED"
    WATCHDOG_TIMEOUT = "WATCHDOG_TIMEOUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Allowed transitions; FAILED is reachable from every non-terminal state (watchdog).
_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.RECEIVED: frozenset({JobState.FETCHING, JobState.FAILED}),
    JobState.FETCHING: frozenset({JobState.FETCHED, JobState.FETCH_FAILED, JobState.FAILED}),
    JobState.FETCH_FAILED: frozenset({JobState.FAILED}),
    JobState.FETCHED: frozenset({JobState.IMPORTING, JobState.FAILED}),
    JobState.IMPORTING: frozenset({JobState.IMPORTED, JobState.IMPORT_FAILED, JobState.FAILED}),
    JobState.IMPORT_FAILED: frozenset({JobState.IMPORTING, JobState.FAILED}),
    JobState.IMPORTED: frozenset(),
    JobState.FAILED: frozenset(),
}


class InvalidJob(ValueError):
    """Intake payload rejected (HTTP 400 INVALID_JOB)."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IntakeJob:
    """The delivery job as received on POST /import. Never mutated by the relay."""

    scan_type: str
    engagement: str
    file_url: str

    @classmethod
    def from_payload(cls, payload: Any) -> "IntakeJob":
        """Validate a decoded JSON body.

        Raises:
            InvalidJob: not an object, a required field missing/empty/non-string,
                        or file_url not an absolute http(s) URL.
        """
        if not isinstance(payload, dict):
            raise InvalidJob("request body must be a JSON object")
        values: dict[str, str] = {}
        for name in ("scan_type", "engagement", "file_url"):
            value = payload.get(name)
            if not isinstance(value, str) or not value.strip():
                raise InvalidJob(f"'{name}' must be a non-empty string")
            values[name] = value.strip()
        parts = urlsplit(values["file_url"])
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise InvalidJob("'file_url' must be an absolute http(s) URL")
        return cls(**values)


@dataclass
class JobRecord:
    """Mutable relay-side record of one job; the source of GET /jobs/{job_id}."""

    job_id: str
    job: IntakeJob
    state: JobState = JobState.RECEIVED
    reason: Optional[FailureReason] = None
    error: Optional[str] = None
    fetch_attempts: int = 0
    import_attempts: int = 0
    bytes_fetched: Optional[int] = None
    received_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    history: list[tuple[str, str]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append((self.state.value, self.received_at.isoformat()))

    @property
    def outcome(self) -> ImportOutcome:
        if self.state is JobState.IMPORTED:
            return ImportOutcome.IMPORTED
        if self.state is JobState.FAILED:
            return ImportOutcome.FAILED
        if self.state is JobState.IMPORT_FAILED or self.import_attempts > 1:
            return ImportOutcome.RETRYING
        return ImportOutcome.PENDING

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    def transition(self, state: JobState) -> None:
        """Move to ``state``.

        Raises:
            ValueError: the transition is not part of the state machine.
        """
        if state not in _TRANSITIONS[self.state]:
            raise ValueError(f"illegal job transition {self.state.value} → {state.value}")
        self.state = state
        self.updated_at = _now()
        self.history.append((state.value, self.updated_at.isoformat()))

    def fail(self, reason: FailureReason, error: Optional[str] = None) -> None:
        self.reason = reason
        self.error = error
        self.transition(JobState.FAILED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "scan_type": self.job.scan_type,
            "engagement": self.job.engagement,
            "file_url": redact_url(self.job.file_url),
            "state": self.state.value,
            "outcome": self.outcome.value,
            "reason": self.reason.value if self.reason else None,
            "error": self.error,
            "fetch_attempts": self.fetch_attempts,
            "import_attempts": self.import_attempts,
            "bytes_fetched": self.bytes_fetched,
            "received_at": self.received_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "history": [{"state": s, "at": at} for s, at in self.history],
        }
