"""Pipeline runner: sequencer, then report delivery, then an exit code.

Exit code:
  0  run SUCCEEDED and no fatal delivery failure
  1  run ABORTED (BLOCKING / TIME_BOXED failure), or a report from an
     aborting-policy stage could not be stored
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from scanrelay.config import Config, PipelineConfig
from scanrelay.pipeline.actions import CommandAction
from scanrelay.pipeline.delivery import DeliverySummary, ReportDelivery
from scanrelay.pipeline.models import RunOutcome, Stage
from scanrelay.pipeline.sequencer import StageSequencer
from scanrelay.utils.logger import clear_job_id, get_logger, set_job_id
from scanrelay.utils.ulid import generate_ulid

logger = get_logger(__name__)


def build_stages(pipeline_config: PipelineConfig) -> list[Stage]:
    """Turn configured stage definitions into Stages backed by CommandActions."""
    return [
        Stage(
            name=sc.name,
            policy=sc.policy,
            timeout_s=sc.timeout_s,
            action=CommandAction(
                stage=sc.name,
                argv=sc.command,
                reports=tuple(sc.reports),
                cwd=sc.cwd,
                env=sc.env,
                ok_exit_codes=frozenset(sc.ok_exit_codes),
            ),
        )
        for sc in pipeline_config.stages
    ]


@dataclass
class PipelineResult:
    outcome: RunOutcome
    delivery: Optional[DeliverySummary] = None

    @property
    def exit_code(self) -> int:
        if self.outcome.exit_code != 0:
            return self.outcome.exit_code
        if self.delivery is not None and self.delivery.fatal:
            return 1
        return 0

    def to_dict(self) -> dict:
        return {
            "exit_code": self.exit_code,
            "run": self.outcome.to_dict(),
            "delivery": self.delivery.to_dict() if self.delivery else None,
        }


async def run_pipeline(
    config: Config,
    *,
    stages: Optional[Sequence[Stage]] = None,
    delivery: Optional[ReportDelivery] = None,
    workdir: Optional[Path] = None,
    run_id: Optional[str] = None,
) -> PipelineResult:
    """Run the configured pipeline and deliver its reports.

    ``stages`` and ``delivery`` default to what ``config`` describes; tests
    pass their own.
    """
    run_id = run_id or generate_ulid()
    if stages is None:
        stages = build_stages(config.pipeline)
    if workdir is None and config.pipeline.workdir:
        workdir = Path(config.pipeline.workdir)

    set_job_id(run_id)
    try:
        outcome = await StageSequencer(workdir=workdir).run(stages, run_id=run_id)

        if not config.delivery.enabled:
            logger.info("Delivery disabled — skipping", run_id=run_id)
            return PipelineResult(outcome=outcome)
        if not outcome.succeeded and not config.pipeline.deliver_on_abort:
            logger.info("Run aborted and deliver_on_abort is off — skipping delivery", run_id=run_id)
            return PipelineResult(outcome=outcome)
        if not outcome.reports:
            logger.info("No reports produced — nothing to deliver", run_id=run_id)

        owns_delivery = delivery is None
        delivery = delivery or ReportDelivery.from_config(config)
        try:
            summary = await delivery.deliver(outcome)
        finally:
            if owns_delivery:
                await delivery.close()
        return PipelineResult(outcome=outcome, delivery=summary)
    finally:
        clear_job_id()
