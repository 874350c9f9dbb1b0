"""Delivery Job Dispatcher.

``dispatch(jobs)`` submits every job concurrently and independently: one
job's failure or slowness never affects another's outcome. Each job gets up
to ``max_attempts`` submissions with exponential backoff on transient
failures (transport errors, timeouts, 408/429/5xx). A job that still fails,
or that is rejected with a non-transient status, is acknowledged as
UNDELIVERED. ``dispatch`` itself never raises.

The dispatcher keeps no state across invocations.
"""

from __future__ import annotations

import asyncio
from typing import Optional, Sequence

import httpx

from scanrelay.constants import (
    DISPATCH_BACKOFF_BASE_S,
    DISPATCH_BACKOFF_CAP_S,
    DISPATCH_MAX_ATTEMPTS,
    DISPATCH_TIMEOUT_S,
    RETRYABLE_STATUSES,
)
from scanrelay.dispatch.models import DeliveryJob, DeliveryMode, DispatchAck, DispatchStatus
from scanrelay.downstream.importer import DownstreamImporter
from scanrelay.errors import ConfigError, DispatchFailure, RelayImportError
from scanrelay.utils.logger import get_logger, redact_url
from scanrelay.utils.retry import async_retrying

logger = get_logger(__name__)


class _SubmitError(DispatchFailure):
    def __init__(self, message: str, *, retryable: bool, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, _SubmitError) and exc.retryable


class Dispatcher:
    """Submit delivery jobs to the relay (RELAYED) or the downstream API (DIRECT)."""

    def __init__(
        self,
        mode: DeliveryMode,
        *,
        relay_url: str = "",
        importer: Optional[DownstreamImporter] = None,
        client: Optional[httpx.AsyncClient] = None,
        max_attempts: int = DISPATCH_MAX_ATTEMPTS,
        backoff_base_s: float = DISPATCH_BACKOFF_BASE_S,
        backoff_cap_s: float = DISPATCH_BACKOFF_CAP_S,
        timeout_s: float = DISPATCH_TIMEOUT_S,
    ) -> None:
        if mode is DeliveryMode.RELAYED and not relay_url:
            raise ConfigError("delivery.relay_url is required for relayed delivery")
        if mode is DeliveryMode.DIRECT and importer is None:
            raise ConfigError("direct delivery requires a downstream importer")
        self.mode = mode
        self._relay_url = relay_url.rstrip("/")
        self._importer = importer
        self._max_attempts = max_attempts
        self._backoff_base_s = backoff_base_s
        self._backoff_cap_s = backoff_cap_s
        self._owns_client = client is None and mode is DeliveryMode.RELAYED
        if mode is DeliveryMode.RELAYED:
            self._client = client or httpx.AsyncClient(
                timeout=httpx.Timeout(timeout_s),
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
                follow_redirects=False,
            )
        else:
            self._client = client

    @property
    def needs_reference(self) -> bool:
        """True when every job must carry a signed access reference."""
        return self.mode is DeliveryMode.RELAYED or self._importer.mode == "reference"

    async def dispatch(self, jobs: Sequence[DeliveryJob]) -> list[DispatchAck]:
        """Submit all jobs concurrently; one DispatchAck per job, in input order."""
        if not jobs:
            return []
        return list(await asyncio.gather(*(self._dispatch_one(job) for job in jobs)))

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()

    # ── Per-job submission ────────────────────────────────────────────────────

    async def _dispatch_one(self, job: DeliveryJob) -> DispatchAck:
        log = logger.bind(
            scan_type=job.scan_type,
            engagement=job.engagement_id,
            mode=self.mode.value,
        )
        retrying = async_retrying(
            operation="dispatch.submit",
            max_attempts=self._max_attempts,
            base=self._backoff_base_s,
            cap=self._backoff_cap_s,
            retry_on=_is_retryable,
            scan_type=job.scan_type,
        )
        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    relay_job_id = await self._submit(job)
        except _SubmitError as exc:
            log.warning(
                "dispatch_undelivered",
                attempts=attempts,
                status_code=exc.status_code,
                error=exc.message,
            )
            return DispatchAck(
                job=job,
                status=DispatchStatus.UNDELIVERED,
                attempts=attempts,
                error=exc.message,
            )
        except Exception as exc:
            log.error("dispatch_error", attempts=attempts, error=repr(exc), exc_info=True)
            return DispatchAck(
                job=job,
                status=DispatchStatus.UNDELIVERED,
                attempts=attempts,
                error=repr(exc),
            )

        log.info("dispatch_accepted", attempts=attempts, relay_job_id=relay_job_id)
        return DispatchAck(
            job=job,
            status=DispatchStatus.ACCEPTED,
            attempts=attempts,
            relay_job_id=relay_job_id,
        )

    async def _submit(self, job: DeliveryJob) -> Optional[str]:
        if self.mode is DeliveryMode.RELAYED:
            return await self._submit_relayed(job)
        await self._submit_direct(job)
        return None

    async def _submit_relayed(self, job: DeliveryJob) -> Optional[str]:
        url = f"{self._relay_url}/import"
        try:
            response = await self._client.post(url, json=job.to_payload())
        except httpx.TimeoutException as exc:
            raise _SubmitError(f"relay timed out: {exc!r}", retryable=True) from exc
        except httpx.TransportError as exc:
            raise _SubmitError(f"relay unreachable: {exc!r}", retryable=True) from exc

        if response.is_success:
            try:
                return response.json().get("job_id")
            except (ValueError, AttributeError):
                return None

        status = response.status_code
        logger.debug(
            "relay_rejected",
            status=status,
            retry_after=response.headers.get("Retry-After"),
            file_url=redact_url(job.file_url or ""),
        )
        raise _SubmitError(
            f"relay returned HTTP {status}",
            retryable=status in RETRYABLE_STATUSES,
            status_code=status,
        )

    async def _submit_direct(self, job: DeliveryJob) -> None:
        report = job.report
        if self._importer.needs_content and report is None:
            raise _SubmitError("direct multipart delivery requires the report payload", retryable=False)
        if not self._importer.needs_content and not job.file_url:
            raise _SubmitError("direct reference delivery requires an access reference", retryable=False)
        try:
            await self._importer.import_scan(
                scan_type=job.scan_type,
                engagement=job.engagement_id,
                file_url=job.file_url,
                content=report.payload if report is not None else None,
                filename=report.artifact_name if report is not None else "report",
            )
        except RelayImportError as exc:
            raise _SubmitError(
                exc.message,
                retryable=exc.retryable,
                status_code=exc.status_code,
            ) from exc
