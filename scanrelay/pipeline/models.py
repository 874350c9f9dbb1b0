"""Pipeline data contracts: stages, gating policies, reports and run outcomes.

Gating policy is an explicit field on every Stage; "is this scan blocking?"
is answered by configuration, never by control flow inside an action.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from scanrelay.errors import ConfigError, StageFailure

if TYPE_CHECKING:
    from pathlib import Path


# ─── Enums ────────────────────────────────────────────────────────────────────


class GatingPolicy(str, enum.Enum):
    """Whether a stage failure aborts the run."""

    BLOCKING = "BLOCKING"
    NON_BLOCKING = "NON_BLOCKING"
    TIME_BOXED = "TIME_BOXED"

    @property
    def aborts_on_failure(self) -> bool:
        return self is not GatingPolicy.NON_BLOCKING

    @classmethod
    def parse(cls, value: str) -> "GatingPolicy":
        """Accept ``blocking``, ``non-blocking``, ``NON_BLOCKING`` etc."""
        normalized = str(value).strip().upper().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError:
            raise ConfigError(
                f"invalid gating policy {value!r}; supported: "
                f"{sorted(p.value for p in cls)}"
            ) from None


class StageStatus(str, enum.Enum):
    PASSED = "PASSED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"


class RunStatus(str, enum.Enum):
    SUCCEEDED = "SUCCEEDED"
    ABORTED = "ABORTED"


class ReportKind(str, enum.Enum):
    SECRET_SCAN = "SECRET_SCAN"
    DEPENDENCY_SCAN = "DEPENDENCY_SCAN"
    IMAGE_SCAN = "IMAGE_SCAN"
    DYNAMIC_SCAN = "DYNAMIC_SCAN"

    @classmethod
    def parse(cls, value: str) -> "ReportKind":
        normalized = str(value).strip().upper().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError:
            raise ConfigError(
                f"invalid report kind {value!r}; supported: "
                f"{sorted(k.value for k in cls)}"
            ) from None


# ─── Report ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Report:
    """A scan-report artifact produced by an external analysis tool.

    The payload is opaque: scanrelay never parses it, it only stores and
    forwards it.
    """

    kind: ReportKind
    format: str
    payload: bytes
    stage: str
    produced_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    filename: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.payload)

    @property
    def artifact_name(self) -> str:
        """Object name used when the report is persisted."""
        if self.filename:
            return self.filename
        return f"{self.kind.value.lower()}.{self.format.lower()}"


# ─── Run context ──────────────────────────────────────────────────────────────


class RunContext:
    """Run-scoped state handed to every stage action.

    Holds the report registry. A kind can be registered at most once per
    run; a second registration fails the stage that attempted it.
    """

    def __init__(self, run_id: str, workdir: "Path") -> None:
        self.run_id = run_id
        self.workdir = workdir
        self._reports: dict[ReportKind, Report] = {}

    def add_report(self, report: Report) -> None:
        if report.kind in self._reports:
            existing = self._reports[report.kind]
            raise StageFailure(
                report.stage,
                f"{report.kind.value} report already produced by stage {existing.stage!r}",
            )
        self._reports[report.kind] = report

    @property
    def reports(self) -> dict[ReportKind, Report]:
        return dict(self._reports)


StageAction = Callable[[RunContext], Awaitable[None]]


# ─── Stage ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Stage:
    """A named pipeline step with exactly one gating policy.

    ``timeout_s`` is required for TIME_BOXED and forbidden otherwise.
    """

    name: str
    policy: GatingPolicy
    action: StageAction
    timeout_s: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ConfigError("stage name must be a non-empty string")
        if not isinstance(self.policy, GatingPolicy):
            raise ConfigError(f"stage {self.name!r}: policy must be a GatingPolicy")
        if self.policy is GatingPolicy.TIME_BOXED:
            if self.timeout_s is None or self.timeout_s <= 0:
                raise ConfigError(
                    f"stage {self.name!r}: TIME_BOXED requires a positive timeout_s"
                )
        elif self.timeout_s is not None:
            raise ConfigError(
                f"stage {self.name!r}: timeout_s is only valid with TIME_BOXED "
                f"(policy is {self.policy.value})"
            )
        if not callable(self.action):
            raise ConfigError(f"stage {self.name!r}: action must be callable")


# ─── Results ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StageResult:
    """One entry of the run-scoped stage log."""

    name: str
    policy: GatingPolicy
    status: StageStatus
    duration_s: float
    error: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.status is StageStatus.PASSED

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "policy": self.policy.value,
            "status": self.status.value,
            "duration_s": round(self.duration_s, 3),
            "error": self.error,
        }


@dataclass
class RunOutcome:
    """Result of one sequencer run.

    ``results`` is the ordered stage log; ``skipped`` names the stages that
    never executed because a BLOCKING or TIME_BOXED stage aborted the run.
    """

    run_id: str
    status: RunStatus
    results: list[StageResult] = field(default_factory=list)
    aborted_at: Optional[str] = None
    skipped: list[str] = field(default_factory=list)
    reports: dict[ReportKind, Report] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def result_for(self, stage_name: str) -> Optional[StageResult]:
        for result in self.results:
            if result.name == stage_name:
                return result
        return None

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "aborted_at": self.aborted_at,
            "skipped": list(self.skipped),
            "stages": [r.to_dict() for r in self.results],
            "reports": {
                kind.value: {"stage": r.stage, "format": r.format, "bytes": r.size}
                for kind, r in self.reports.items()
            },
        }
