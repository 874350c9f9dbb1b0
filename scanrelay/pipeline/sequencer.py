"""Stage Sequencer: strictly ordered execution of gated pipeline stages.

Policy handling per stage:
  BLOCKING      failure → run ABORTED at this stage, no later stage executes
  NON_BLOCKING  failure → recorded FAILED, run continues
  TIME_BOXED    action cancelled after timeout_s; timeout or failure → ABORTED

Stages never run concurrently with each other: a quality gate must finish
before any deployment-affecting stage starts.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Optional, Sequence

from scanrelay.errors import ConfigError
from scanrelay.pipeline.models import (
    GatingPolicy,
    RunContext,
    RunOutcome,
    RunStatus,
    Stage,
    StageResult,
    StageStatus,
)
from scanrelay.utils.logger import get_logger
from scanrelay.utils.ulid import generate_ulid

logger = get_logger(__name__)


def validate_stages(stages: Sequence[Stage]) -> None:
    """Reject malformed stage lists before anything runs.

    Raises:
        ConfigError: empty list, non-Stage entries or duplicate names.
    """
    if not stages:
        raise ConfigError("pipeline has no stages")
    seen: set[str] = set()
    for stage in stages:
        if not isinstance(stage, Stage):
            raise ConfigError(f"expected Stage, got {type(stage).__name__}")
        if stage.name in seen:
            raise ConfigError(f"duplicate stage name {stage.name!r}")
        seen.add(stage.name)


class StageSequencer:
    """Runs an ordered list of stages and produces a RunOutcome.

    Usage::

        sequencer = StageSequencer()
        outcome = await sequencer.run(stages)
        sys.exit(outcome.exit_code)

    ``log`` exposes the stage results of the most recent run in execution
    order; it carries no control-flow weight.
    """

    def __init__(self, workdir: Optional[Path] = None) -> None:
        self._workdir = workdir or Path.cwd()
        self.log: list[StageResult] = []

    async def run(
        self,
        stages: Sequence[Stage],
        run_id: Optional[str] = None,
    ) -> RunOutcome:
        validate_stages(stages)
        run_id = run_id or generate_ulid()
        context = RunContext(run_id=run_id, workdir=self._workdir)
        self.log = []

        logger.info("Pipeline run started", run_id=run_id, stages=[s.name for s in stages])

        for index, stage in enumerate(stages):
            result = await self._run_stage(stage, context)
            self.log.append(result)

            if result.passed:
                continue

            if stage.policy.aborts_on_failure:
                skipped = [s.name for s in stages[index + 1:]]
                logger.error(
                    "Pipeline aborted",
                    run_id=run_id,
                    stage=stage.name,
                    policy=stage.policy.value,
                    status=result.status.value,
                    skipped=skipped,
                )
                return RunOutcome(
                    run_id=run_id,
                    status=RunStatus.ABORTED,
                    results=list(self.log),
                    aborted_at=stage.name,
                    skipped=skipped,
                    reports=context.reports,
                )

            logger.warning(
                "Non-blocking stage failed — continuing",
                run_id=run_id,
                stage=stage.name,
                error=result.error,
            )

        logger.info(
            "Pipeline run finished",
            run_id=run_id,
            failed_non_blocking=[r.name for r in self.log if not r.passed],
            reports=sorted(k.value for k in context.reports),
        )
        return RunOutcome(
            run_id=run_id,
            status=RunStatus.SUCCEEDED,
            results=list(self.log),
            reports=context.reports,
        )

    async def _run_stage(self, stage: Stage, context: RunContext) -> StageResult:
        logger.info("Stage started", stage=stage.name, policy=stage.policy.value)
        t0 = time.perf_counter()
        status = StageStatus.PASSED
        error: Optional[str] = None

        try:
            if stage.policy is GatingPolicy.TIME_BOXED:
                try:
                    await asyncio.wait_for(stage.action(context), timeout=stage.timeout_s)
                except asyncio.TimeoutError:
                    status = StageStatus.TIMED_OUT
                    error = f"deadline of {stage.timeout_s}s exceeded"
            else:
                await stage.action(context)
        except Exception as exc:  # noqa: BLE001
            status = StageStatus.FAILED
            error = f"{type(exc).__name__}: {exc}"

        duration = time.perf_counter() - t0
        log_method = logger.info if status is StageStatus.PASSED else logger.warning
        log_method(
            "Stage finished",
            stage=stage.name,
            status=status.value,
            duration_s=round(duration, 3),
            error=error,
        )
        return StageResult(
            name=stage.name,
            policy=stage.policy,
            status=status,
            duration_s=duration,
            error=error,
        )
