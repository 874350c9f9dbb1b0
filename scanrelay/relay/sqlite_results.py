"""SQLiteResultStore — aiosqlite-backed relay job records.

  - WAL mode: PRAGMA journal_mode=WAL
  - Schema version guard: PRAGMA user_version=1, RuntimeError on mismatch
  - Long-lived connection: opened in initialize(), closed in close()
  - INSERT OR REPLACE keyed on job_id: every state transition rewrites the row
  - Bounded: rows beyond ``max_records`` are pruned oldest-first on insert
"""

from __future__ import annotations

import json
import os
from datetime import datetime
from typing import Optional

import aiosqlite

from scanrelay.constants import RESULT_STORE_MAX_RECORDS
from scanrelay.relay.models import FailureReason, ImportOutcome, IntakeJob, JobRecord, JobState
from scanrelay.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Schema DDL ───────────────────────────────────────────────────────────────

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS relay_jobs (
    seq              INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id           TEXT NOT NULL UNIQUE,
    scan_type        TEXT NOT NULL,
    engagement       TEXT NOT NULL,
    file_url         TEXT NOT NULL,
    state            TEXT NOT NULL,
    outcome          TEXT NOT NULL,
    reason           TEXT,
    error            TEXT,
    fetch_attempts   INTEGER NOT NULL DEFAULT 0,
    import_attempts  INTEGER NOT NULL DEFAULT 0,
    bytes_fetched    INTEGER,
    received_at      TEXT NOT NULL,
    updated_at       TEXT NOT NULL,
    history          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_relay_jobs_outcome
    ON relay_jobs(outcome, seq DESC);
"""

_SCHEMA_VERSION = 1


def _row_to_record(row: aiosqlite.Row) -> JobRecord:
    return JobRecord(
        job_id=row["job_id"],
        job=IntakeJob(
            scan_type=row["scan_type"],
            engagement=row["engagement"],
            file_url=row["file_url"],
        ),
        state=JobState(row["state"]),
        reason=FailureReason(row["reason"]) if row["reason"] else None,
        error=row["error"],
        fetch_attempts=row["fetch_attempts"],
        import_attempts=row["import_attempts"],
        bytes_fetched=row["bytes_fetched"],
        received_at=datetime.fromisoformat(row["received_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        history=[tuple(item) for item in json.loads(row["history"])],
    )


class SQLiteResultStore:
    """Durable result store.

    The stored file_url is the full access reference (query string
    included) so operators can re-drive a job while it is still valid;
    the HTTP surface only ever exposes the redacted form.
    """

    def __init__(self, db_path: str, max_records: int = RESULT_STORE_MAX_RECORDS) -> None:
        self._db_path: str = os.path.expanduser(db_path)
        self._max_records = max_records
        self._db: Optional[aiosqlite.Connection] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open the connection, enable WAL and create/verify the schema.

        Raises:
            RuntimeError: PRAGMA user_version is neither 0 nor 1.
        """
        parent_dir = os.path.dirname(self._db_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL;")

        cursor = await self._db.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        current_version: int = row[0] if row else 0

        if current_version == 0:
            await self._db.executescript(_CREATE_SCHEMA_SQL)
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            await self._db.commit()
            logger.info("results_db_schema_created", db_path=self._db_path, schema_version=_SCHEMA_VERSION)
        elif current_version == _SCHEMA_VERSION:
            logger.info("results_db_schema_ok", db_path=self._db_path, schema_version=current_version)
        else:
            await self._db.close()
            self._db = None
            raise RuntimeError(
                f"Unsupported relay results schema version: {current_version}. "
                f"Delete {self._db_path} to reset."
            )

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("results_db_closed", db_path=self._db_path)

    # ── ResultStore Protocol ──────────────────────────────────────────────────

    async def save(self, record: JobRecord) -> None:
        """Upsert the record. Catches all exceptions — never raises into a worker."""
        try:
            assert self._db is not None, "Database not initialized — call initialize() first"
            await self._db.execute(
                """INSERT INTO relay_jobs
                   (job_id, scan_type, engagement, file_url, state, outcome, reason, error,
                    fetch_attempts, import_attempts, bytes_fetched, received_at, updated_at, history)
                   VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                   ON CONFLICT(job_id) DO UPDATE SET
                     state=excluded.state,
                     outcome=excluded.outcome,
                     reason=excluded.reason,
                     error=excluded.error,
                     fetch_attempts=excluded.fetch_attempts,
                     import_attempts=excluded.import_attempts,
                     bytes_fetched=excluded.bytes_fetched,
                     updated_at=excluded.updated_at,
                     history=excluded.history""",
                (
                    record.job_id,
                    record.job.scan_type,
                    record.job.engagement,
                    record.job.file_url,
                    record.state.value,
                    record.outcome.value,
                    record.reason.value if record.reason else None,
                    record.error,
                    record.fetch_attempts,
                    record.import_attempts,
                    record.bytes_fetched,
                    record.received_at.isoformat(),
                    record.updated_at.isoformat(),
                    json.dumps(record.history),
                ),
            )
            await self._db.execute(
                """DELETE FROM relay_jobs WHERE seq <= (
                       SELECT MAX(seq) - ? FROM relay_jobs
                   )""",
                (self._max_records,),
            )
            await self._db.commit()
        except Exception as exc:
            logger.error(
                "result_save_failed",
                job_id=record.job_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def get(self, job_id: str) -> Optional[JobRecord]:
        assert self._db is not None, "Database not initialized — call initialize() first"
        cursor = await self._db.execute("SELECT * FROM relay_jobs WHERE job_id = ?", (job_id,))
        row = await cursor.fetchone()
        return _row_to_record(row) if row else None

    async def list(
        self,
        outcome: Optional[ImportOutcome] = None,
        limit: int = 50,
    ) -> list[JobRecord]:
        assert self._db is not None, "Database not initialized — call initialize() first"
        if outcome is not None:
            cursor = await self._db.execute(
                "SELECT * FROM relay_jobs WHERE outcome = ? ORDER BY seq DESC LIMIT ?",
                (outcome.value, limit),
            )
        else:
            cursor = await self._db.execute(
                "SELECT * FROM relay_jobs ORDER BY seq DESC LIMIT ?",
                (limit,),
            )
        rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def delete(self, job_id: str) -> None:
        assert self._db is not None, "Database not initialized — call initialize() first"
        await self._db.execute("DELETE FROM relay_jobs WHERE job_id = ?", (job_id,))
        await self._db.commit()

    async def count(self) -> int:
        assert self._db is not None, "Database not initialized — call initialize() first"
        cursor = await self._db.execute("SELECT COUNT(*) FROM relay_jobs")
        row = await cursor.fetchone()
        return int(row[0]) if row else 0
