"""Programmatic uvicorn entry point for the relay.

Reads host and port from the loaded config (127.0.0.1:8080 by default) and
starts uvicorn with hardened defaults:

  --limit-concurrency 100  HTTP 503 from uvicorn beyond 100 concurrent connections
  --backlog 50             OS connection queue depth
  --timeout-keep-alive 5   short keep-alive to limit idle connection hoarding

Usage:
    python -m scanrelay.relay.run
    scanrelay-relay            # [project.scripts]
    scanrelay relay            # via the CLI
"""

from __future__ import annotations

import os
from typing import Optional

import uvicorn

from scanrelay.config import load_config

UVICORN_LIMIT_CONCURRENCY: int = 100
UVICORN_BACKLOG: int = 50
UVICORN_TIMEOUT_KEEP_ALIVE: int = 5
UVICORN_TIMEOUT_GRACEFUL_SHUTDOWN: int = 30


def main(config_path: Optional[str] = None) -> None:
    """Start the relay with hardened uvicorn defaults.

    Raises:
        SystemExit: Propagated from load_config() on config errors.
    """
    config = load_config(config_path)
    if config_path:
        # The app's lifespan re-discovers config; point it at the same file.
        os.environ["SCANRELAY_CONFIG"] = config_path

    uvicorn.run(
        "scanrelay.relay.main:app",
        host=config.relay.host,
        port=config.relay.port,
        limit_concurrency=UVICORN_LIMIT_CONCURRENCY,
        backlog=UVICORN_BACKLOG,
        timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
        timeout_graceful_shutdown=UVICORN_TIMEOUT_GRACEFUL_SHUTDOWN,
    )


if __name__ == "__main__":
    main()
