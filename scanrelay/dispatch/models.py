"""Delivery job contracts shared by the dispatcher and the relay intake."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from scanrelay.pipeline.models import Report, ReportKind
from scanrelay.store.protocol import AccessReference


class DeliveryMode(str, enum.Enum):
    """Delivery path capability flag.

    RELAYED: store + access reference + relay /import (asynchronous import)
    DIRECT:  synchronous upload straight to the downstream import API
    """

    RELAYED = "RELAYED"
    DIRECT = "DIRECT"

    @classmethod
    def parse(cls, value: str) -> "DeliveryMode":
        return cls(str(value).strip().upper())


class DispatchStatus(str, enum.Enum):
    ACCEPTED = "ACCEPTED"
    UNDELIVERED = "UNDELIVERED"


@dataclass(frozen=True)
class DeliveryJob:
    """One report's delivery instruction.

    Immutable: the relay receives a copy over HTTP and never mutates it.
    ``report`` is only attached for DIRECT delivery, where the payload is
    uploaded instead of (or alongside) the access reference.
    """

    scan_type: str
    engagement_id: str
    access_reference: Optional[AccessReference] = None
    report: Optional[Report] = None

    @property
    def kind(self) -> Optional[ReportKind]:
        return self.report.kind if self.report is not None else None

    @property
    def file_url(self) -> Optional[str]:
        return self.access_reference.url if self.access_reference is not None else None

    def to_payload(self) -> dict[str, str]:
        """Relay intake body: ``{scan_type, engagement, file_url}``."""
        if self.access_reference is None:
            raise ValueError("a relayed delivery job needs an access reference")
        return {
            "scan_type": self.scan_type,
            "engagement": self.engagement_id,
            "file_url": self.access_reference.url,
        }


@dataclass(frozen=True)
class DispatchAck:
    """Per-job dispatch result. ``relay_job_id`` is set for accepted RELAYED jobs."""

    job: DeliveryJob
    status: DispatchStatus
    attempts: int
    relay_job_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.status is DispatchStatus.ACCEPTED
