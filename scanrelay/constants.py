"""Shared constants for scanrelay.

All timeouts, bounds and retry counts used across modules are defined here.
No magic numbers in other modules: import from here.
"""

# ─── Artifact Store ───────────────────────────────────────────────────────────

# Default lifetime of a minted access reference (seconds).
# Must exceed RELAY_WATCHDOG_TIMEOUT_S so the relay can always fetch a job's
# artifact before the job is forced into FAILED.
DEFAULT_ACCESS_TTL_S: int = 3_600  # 1 hour

# Attempts for a single put() before STORAGE_UNAVAILABLE is raised.
STORE_PUT_MAX_ATTEMPTS: int = 3

# Exponential backoff for store puts: base * 2^(attempt-1), capped.
STORE_BACKOFF_BASE_S: float = 0.5
STORE_BACKOFF_CAP_S: float = 4.0

# ─── Dispatcher ───────────────────────────────────────────────────────────────

# Submission attempts per delivery job before it is recorded UNDELIVERED.
DISPATCH_MAX_ATTEMPTS: int = 3
DISPATCH_BACKOFF_BASE_S: float = 0.5
DISPATCH_BACKOFF_CAP_S: float = 4.0

# Total timeout of one submission request/response exchange.
DISPATCH_TIMEOUT_S: float = 15.0

# HTTP statuses treated as transient by every outbound client.
RETRYABLE_STATUSES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})

# ─── Relay Service ────────────────────────────────────────────────────────────

# Worker pool size: caps concurrent outbound fetch + import connections.
RELAY_WORKERS: int = 4

# Bounded intake queue depth. Submissions past this depth receive HTTP 503.
RELAY_QUEUE_CAPACITY: int = 32

# Hard bound on total processing time of one job (fetch + all import attempts).
RELAY_WATCHDOG_TIMEOUT_S: float = 600.0  # 10 minutes

# Artifact download bounds.
RELAY_FETCH_TIMEOUT_S: float = 60.0
RELAY_MAX_ARTIFACT_BYTES: int = 50 * 1024 * 1024  # 50 MB
RELAY_FETCH_MAX_ATTEMPTS: int = 3

# Downstream import retries.
RELAY_IMPORT_MAX_ATTEMPTS: int = 3
RELAY_BACKOFF_BASE_S: float = 1.0
RELAY_BACKOFF_CAP_S: float = 30.0

# Seconds advertised in the Retry-After header of a 503 QUEUE_FULL response.
RELAY_RETRY_AFTER_S: int = 2

# Intake payloads are three short strings; anything larger is rejected with 413.
MAX_INTAKE_BODY_BYTES: int = 65_536  # 64 KB

# Result store bound (oldest records evicted first).
RESULT_STORE_MAX_RECORDS: int = 10_000

# ─── Downstream ───────────────────────────────────────────────────────────────

DOWNSTREAM_TIMEOUT_S: float = 120.0
DOWNSTREAM_IMPORT_PATH: str = "/api/v2/import-scan/"
