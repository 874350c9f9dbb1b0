"""Relay HTTP surface for delivery jobs.

  POST /import        — accept {scan_type, engagement, file_url}
                        202 {job_id, status: "enqueued"} | 400 INVALID_JOB | 503 QUEUE_FULL
  GET  /jobs/{job_id} — job record (404 JOB_NOT_FOUND)
  GET  /jobs          — recent job records, optional ?outcome=&limit=

There is no deduplication: two identical submissions are two jobs.
Every route is gated on ``app.state.ready`` via require_ready.
"""

from __future__ import annotations

import json
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from scanrelay.constants import RELAY_RETRY_AFTER_S
from scanrelay.relay.models import ImportOutcome, IntakeJob, InvalidJob
from scanrelay.relay.results import ResultStore
from scanrelay.relay.workers import QueueFull, RelayWorkerPool
from scanrelay.utils.logger import get_logger

logger = get_logger(__name__)


# ─── Dependencies ─────────────────────────────────────────────────────────────


async def require_ready(request: Request) -> None:
    """FastAPI dependency: raises HTTP 503 if app.state.ready is not True.

    /health handles the 503 case itself (to return a richer body).
    """
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={
                "code": "STARTING",
                "message": "scanrelay is starting up. Workers not ready yet.",
            },
            headers={"Retry-After": str(RELAY_RETRY_AFTER_S)},
        )


router = APIRouter(tags=["jobs"], dependencies=[Depends(require_ready)])


def _invalid(message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": "INVALID_JOB", "message": message})


# ─── Routes ───────────────────────────────────────────────────────────────────


@router.post("/import", status_code=202)
async def import_job(request: Request) -> JSONResponse:
    """Accept a delivery job and return immediately; processing is asynchronous.

    The body is decoded by hand so malformed JSON is a 400 INVALID_JOB like
    every other bad payload, not FastAPI's 422.
    """
    raw = await request.body()
    try:
        payload: Any = json.loads(raw) if raw else None
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("Intake rejected — malformed JSON", bytes=len(raw))
        raise _invalid("request body is not valid JSON") from None

    try:
        job = IntakeJob.from_payload(payload)
    except InvalidJob as exc:
        logger.warning("Intake rejected — invalid job", error=str(exc))
        raise _invalid(str(exc)) from None

    pool: RelayWorkerPool = request.app.state.worker_pool
    try:
        record = await pool.submit(job)
    except QueueFull as exc:
        logger.warning("Intake rejected — queue full", capacity=pool.capacity)
        raise HTTPException(
            status_code=503,
            detail={"code": "QUEUE_FULL", "message": str(exc)},
            headers={"Retry-After": str(RELAY_RETRY_AFTER_S)},
        ) from None

    return JSONResponse(status_code=202, content={"job_id": record.job_id, "status": "enqueued"})


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, request: Request) -> dict[str, Any]:
    results: ResultStore = request.app.state.results
    record = await results.get(job_id)
    if record is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "JOB_NOT_FOUND", "message": f"no job with id {job_id!r}"},
        )
    return record.to_dict()


@router.get("/jobs")
async def list_jobs(
    request: Request,
    outcome: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
) -> dict[str, Any]:
    parsed: Optional[ImportOutcome] = None
    if outcome is not None:
        try:
            parsed = ImportOutcome(outcome.strip().upper())
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail={
                    "code": "INVALID_FILTER",
                    "message": f"outcome must be one of {[o.value for o in ImportOutcome]}",
                },
            ) from None

    results: ResultStore = request.app.state.results
    records = await results.list(outcome=parsed, limit=limit)
    return {"jobs": [r.to_dict() for r in records], "count": len(records)}
