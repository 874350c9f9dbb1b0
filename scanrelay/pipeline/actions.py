"""Command stage actions.

A CommandAction runs one external tool (gitleaks, trivy, dependency-check,
zap, docker, kubectl ...) as an asyncio subprocess and then collects the
report files it declares. Scanners commonly exit non-zero when they find
something while still writing a complete report, so report collection runs
whether or not the command succeeded; the command's exit status then decides
the stage result.

If the stage is cancelled (TIME_BOXED deadline) the child process is killed
before the cancellation propagates.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Sequence

from scanrelay.errors import StageFailure
from scanrelay.pipeline.models import Report, ReportKind, RunContext
from scanrelay.utils.logger import get_logger

logger = get_logger(__name__)

# Bytes of stderr kept for the stage error message.
_STDERR_TAIL_BYTES = 2_000


@dataclass(frozen=True)
class ReportSpec:
    """A report file a command is expected to write."""

    kind: ReportKind
    path: str
    format: str = ""

    @property
    def resolved_format(self) -> str:
        if self.format:
            return self.format.lower()
        suffix = Path(self.path).suffix.lstrip(".")
        return suffix.lower() or "bin"


@dataclass
class CommandAction:
    """Run ``argv`` and register the declared reports with the RunContext."""

    stage: str
    argv: Sequence[str]
    reports: Sequence[ReportSpec] = field(default_factory=tuple)
    cwd: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    ok_exit_codes: frozenset[int] = frozenset({0})

    async def __call__(self, context: RunContext) -> None:
        workdir = Path(self.cwd) if self.cwd else context.workdir
        env = {**os.environ, **self.env, "SCANRELAY_RUN_ID": context.run_id}

        logger.debug("Running command", stage=self.stage, argv=list(self.argv), cwd=str(workdir))
        try:
            process = await asyncio.create_subprocess_exec(
                *self.argv,
                cwd=str(workdir),
                env=env,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise StageFailure(self.stage, f"could not start {self.argv[0]!r}: {exc}") from exc

        try:
            _, stderr = await process.communicate()
        except asyncio.CancelledError:
            _kill(process)
            await process.wait()
            logger.warning("Command cancelled — process killed", stage=self.stage, pid=process.pid)
            raise

        self._collect_reports(context, workdir)

        if process.returncode not in self.ok_exit_codes:
            tail = (stderr or b"")[-_STDERR_TAIL_BYTES:].decode("utf-8", errors="replace").strip()
            message = f"{self.argv[0]} exited with status {process.returncode}"
            if tail:
                message += f": {tail}"
            raise StageFailure(self.stage, message)

    def _collect_reports(self, context: RunContext, workdir: Path) -> None:
        for spec in self.reports:
            path = Path(spec.path)
            if not path.is_absolute():
                path = workdir / path
            if not path.is_file():
                logger.warning(
                    "Declared report not produced",
                    stage=self.stage,
                    kind=spec.kind.value,
                    path=str(path),
                )
                continue
            context.add_report(
                Report(
                    kind=spec.kind,
                    format=spec.resolved_format,
                    payload=path.read_bytes(),
                    stage=self.stage,
                    filename=path.name,
                )
            )
            logger.info("Report collected", stage=self.stage, kind=spec.kind.value, path=str(path))


def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass
