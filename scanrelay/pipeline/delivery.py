"""Report delivery fan-out: put → sign → dispatch, one isolated coroutine per report.

Runs after the sequencer. Each produced report gets its own failure domain:
a storage outage for one kind, or an UNDELIVERED dispatch, is recorded in
that report's DeliveryEntry and never touches the others.

Escalation:
  - A storage failure for a report produced by a stage whose policy aborts
    on failure (BLOCKING / TIME_BOXED) marks the summary ``fatal``.
  - Dispatch failures are never fatal: the relay, not the build, owns
    eventual import.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from scanrelay.config import Config, check_access_ttl
from scanrelay.dispatch.dispatcher import Dispatcher
from scanrelay.dispatch.models import DeliveryJob, DeliveryMode, DispatchAck
from scanrelay.downstream.importer import DownstreamImporter
from scanrelay.errors import ScanRelayError, StorageUnavailable
from scanrelay.pipeline.models import GatingPolicy, Report, ReportKind, RunOutcome
from scanrelay.store.factory import create_artifact_store
from scanrelay.store.protocol import AccessReference, ArtifactStore
from scanrelay.utils.logger import get_logger

logger = get_logger(__name__)


class DeliveryStatus(str, enum.Enum):
    DELIVERED = "DELIVERED"
    UNDELIVERED = "UNDELIVERED"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    NOT_PRODUCED = "NOT_PRODUCED"


@dataclass(frozen=True)
class DeliveryEntry:
    kind: ReportKind
    status: DeliveryStatus
    stage: Optional[str] = None
    store_key: Optional[str] = None
    ack: Optional[DispatchAck] = None
    error: Optional[str] = None
    fatal: bool = False

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "status": self.status.value,
            "stage": self.stage,
            "store_key": self.store_key,
            "relay_job_id": self.ack.relay_job_id if self.ack else None,
            "attempts": self.ack.attempts if self.ack else 0,
            "error": self.error,
        }


@dataclass
class DeliverySummary:
    """One entry per report kind, including kinds that were never produced."""

    run_id: str
    entries: dict[ReportKind, DeliveryEntry] = field(default_factory=dict)

    @property
    def fatal(self) -> bool:
        return any(entry.fatal for entry in self.entries.values())

    @property
    def delivered(self) -> list[ReportKind]:
        return [k for k, e in self.entries.items() if e.status is DeliveryStatus.DELIVERED]

    def status_of(self, kind: ReportKind) -> DeliveryStatus:
        return self.entries[kind].status

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "fatal": self.fatal,
            "reports": {k.value: e.to_dict() for k, e in self.entries.items()},
        }


class ReportDelivery:
    """Delivers the reports of one pipeline run.

    Args:
        dispatcher: RELAYED or DIRECT Dispatcher.
        store:      Artifact store. Required whenever jobs carry an access
                    reference (RELAYED, or DIRECT into a reference-mode
                    importer); otherwise optional and only archives the report.
        engagement: Downstream engagement id attached to every job.
        scan_type_for: ReportKind → downstream scan_type.
        ttl_s:      Access reference lifetime.
        watchdog_timeout_s: Relay watchdog bound; ttl_s must exceed it.
    """

    def __init__(
        self,
        *,
        dispatcher: Dispatcher,
        store: Optional[ArtifactStore],
        engagement: str,
        scan_type_for: Callable[[ReportKind], str],
        ttl_s: int,
        watchdog_timeout_s: Optional[float] = None,
    ) -> None:
        if dispatcher.needs_reference and store is None:
            raise ValueError(f"{dispatcher.mode.value} delivery by reference requires an artifact store")
        if watchdog_timeout_s is not None:
            check_access_ttl(ttl_s, watchdog_timeout_s)
        self._dispatcher = dispatcher
        self._store = store
        self._engagement = engagement
        self._scan_type_for = scan_type_for
        self._ttl_s = ttl_s

    @classmethod
    def from_config(cls, config: Config) -> "ReportDelivery":
        """Build store, dispatcher and delivery from the loaded config."""
        mode = DeliveryMode.parse(config.delivery.mode)
        importer = DownstreamImporter(config.downstream) if mode is DeliveryMode.DIRECT else None
        dispatcher = Dispatcher(
            mode,
            relay_url=config.delivery.relay_url,
            importer=importer,
            max_attempts=config.delivery.max_attempts,
            backoff_base_s=config.delivery.backoff_base_s,
            backoff_cap_s=config.delivery.backoff_cap_s,
            timeout_s=config.delivery.timeout_s,
        )
        store = create_artifact_store(config.store) if dispatcher.needs_reference else None
        return cls(
            dispatcher=dispatcher,
            store=store,
            engagement=config.delivery.engagement,
            scan_type_for=config.delivery.scan_type_for,
            ttl_s=config.store.ttl_s,
            watchdog_timeout_s=config.relay.watchdog_timeout_s,
        )

    async def deliver(self, outcome: RunOutcome) -> DeliverySummary:
        """Deliver every report the run produced, whatever the run status."""
        policies = {r.name: r.policy for r in outcome.results}
        return await self.deliver_reports(
            outcome.run_id,
            outcome.reports.values(),
            policy_for=lambda stage: policies.get(stage, GatingPolicy.BLOCKING),
        )

    async def deliver_reports(
        self,
        run_id: str,
        reports: Iterable[Report],
        policy_for: Callable[[str], GatingPolicy] = lambda _stage: GatingPolicy.BLOCKING,
    ) -> DeliverySummary:
        reports = list(reports)
        entries = await asyncio.gather(
            *(self._deliver_one(run_id, report, policy_for(report.stage)) for report in reports)
        )
        summary = DeliverySummary(run_id=run_id)
        by_kind = {entry.kind: entry for entry in entries}
        for kind in ReportKind:
            summary.entries[kind] = by_kind.get(
                kind, DeliveryEntry(kind=kind, status=DeliveryStatus.NOT_PRODUCED)
            )

        logger.info(
            "Delivery finished",
            run_id=run_id,
            fatal=summary.fatal,
            statuses={k.value: e.status.value for k, e in summary.entries.items()},
        )
        return summary

    async def close(self) -> None:
        await self._dispatcher.close()
        if self._store is not None:
            await self._store.close()

    # ── Per-report pipeline ───────────────────────────────────────────────────

    async def _deliver_one(self, run_id: str, report: Report, policy: GatingPolicy) -> DeliveryEntry:
        try:
            return await self._deliver_report(run_id, report, policy)
        except Exception as exc:
            logger.error(
                "Report delivery error",
                run_id=run_id,
                kind=report.kind.value,
                stage=report.stage,
                error=repr(exc),
                exc_info=True,
            )
            return DeliveryEntry(
                kind=report.kind,
                status=DeliveryStatus.UNDELIVERED,
                stage=report.stage,
                error=repr(exc),
            )

    async def _deliver_report(self, run_id: str, report: Report, policy: GatingPolicy) -> DeliveryEntry:
        log = logger.bind(run_id=run_id, kind=report.kind.value, stage=report.stage)
        store_key: Optional[str] = None
        reference: Optional[AccessReference] = None

        if self._store is not None:
            try:
                store_key = await self._store.put(f"{run_id}/{report.artifact_name}", report.payload)
                reference = await self._store.sign(store_key, self._ttl_s)
            except StorageUnavailable as exc:
                fatal = policy.aborts_on_failure
                log.error("Report not stored", error=str(exc), fatal=fatal)
                return DeliveryEntry(
                    kind=report.kind,
                    status=DeliveryStatus.STORAGE_UNAVAILABLE,
                    stage=report.stage,
                    store_key=store_key,
                    error=str(exc),
                    fatal=fatal,
                )
            except ScanRelayError as exc:
                log.error("Report not stored", error=str(exc))
                return DeliveryEntry(
                    kind=report.kind,
                    status=DeliveryStatus.UNDELIVERED,
                    stage=report.stage,
                    store_key=store_key,
                    error=str(exc),
                )

        job = DeliveryJob(
            scan_type=self._scan_type_for(report.kind),
            engagement_id=self._engagement,
            access_reference=reference,
            report=report if self._dispatcher.mode is DeliveryMode.DIRECT else None,
        )
        [ack] = await self._dispatcher.dispatch([job])
        return DeliveryEntry(
            kind=report.kind,
            status=DeliveryStatus.DELIVERED if ack.accepted else DeliveryStatus.UNDELIVERED,
            stage=report.stage,
            store_key=store_key,
            ack=ack,
            error=ack.error,
        )
