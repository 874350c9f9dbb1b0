"""scanrelay: stage sequencing and decoupled scan-report delivery.

Packages:
  - pipeline   — Stage Sequencer, command actions, report-delivery fan-out
  - store      — Artifact Store Client (S3 / local filesystem)
  - dispatch   — Delivery Job Dispatcher (RELAYED or DIRECT)
  - downstream — vulnerability-management "import scan" client
  - relay      — standalone Relay Service (FastAPI)
"""

__version__ = "1.0.0"
