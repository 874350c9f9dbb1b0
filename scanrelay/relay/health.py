"""Relay health endpoint.

  GET /health — 503 before ``app.state.ready``; 200 with queue and worker
                metrics afterwards ("degraded" when no worker task is alive)

Polled by container probes and by the pipeline before relayed delivery.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

from scanrelay.relay.results import ResultStore
from scanrelay.relay.workers import RelayWorkerPool

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Response body (200)::

        {
          "status": "ok" | "degraded",
          "queue_depth": 0,
          "queue_capacity": 32,
          "workers": 4,
          "workers_busy": 0,
          "jobs_recorded": 12,
          "counters": {"accepted": .., "rejected": .., "imported": ..,
                       "failed": .., "watchdog_timeouts": ..}
        }
    """
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={
                "status": "starting",
                "message": "scanrelay is starting up. Workers not ready yet.",
            },
        )

    pool: RelayWorkerPool = request.app.state.worker_pool
    results: ResultStore = request.app.state.results
    counters = pool.counters

    return {
        "status": "ok" if pool.running else "degraded",
        "queue_depth": pool.depth,
        "queue_capacity": pool.capacity,
        "workers": pool.workers,
        "workers_busy": pool.busy,
        "jobs_recorded": await results.count(),
        "counters": {
            "accepted": counters.accepted,
            "rejected": counters.rejected,
            "imported": counters.imported,
            "failed": counters.failed,
            "watchdog_timeouts": counters.watchdog_timeouts,
        },
    }
