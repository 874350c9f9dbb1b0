"""Pipeline package: stage model, sequencer, command actions, delivery fan-out.

    models.py    — GatingPolicy, Stage, Report, RunContext, StageResult, RunOutcome
    sequencer.py — StageSequencer
    actions.py   — CommandAction, ReportSpec
    delivery.py  — ReportDelivery, DeliverySummary
    runner.py    — run_pipeline(), build_stages()
"""

from scanrelay.pipeline.models import (
    GatingPolicy,
    Report,
    ReportKind,
    RunContext,
    RunOutcome,
    RunStatus,
    Stage,
    StageResult,
    StageStatus,
)
from scanrelay.pipeline.sequencer import StageSequencer

__all__ = [
    "GatingPolicy",
    "Report",
    "ReportKind",
    "RunContext",
    "RunOutcome",
    "RunStatus",
    "Stage",
    "StageResult",
    "StageSequencer",
    "StageStatus",
]
