"""Relay result store: Protocol, bounded in-memory backend and factory.

Backends:
    InMemoryResultStore — default; bounded, oldest records evicted first
    SQLiteResultStore   — relay.results_path set; aiosqlite, survives restarts

save() is called from worker tasks and MUST NOT raise: a failing result
write is logged and the job carries on.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable

from scanrelay.constants import RESULT_STORE_MAX_RECORDS
from scanrelay.relay.models import ImportOutcome, JobRecord
from scanrelay.utils.logger import get_logger

if TYPE_CHECKING:
    from scanrelay.config import RelayConfig

logger = get_logger(__name__)


@runtime_checkable
class ResultStore(Protocol):
    """Pluggable job-record store."""

    async def initialize(self) -> None:
        ...

    async def save(self, record: JobRecord) -> None:
        """Insert or replace the record keyed by job_id. Never raises."""
        ...

    async def get(self, job_id: str) -> Optional[JobRecord]:
        ...

    async def list(
        self,
        outcome: Optional[ImportOutcome] = None,
        limit: int = 50,
    ) -> list[JobRecord]:
        """Most recently received first."""
        ...

    async def delete(self, job_id: str) -> None:
        ...

    async def count(self) -> int:
        ...

    async def close(self) -> None:
        ...


class InMemoryResultStore:
    """Bounded insertion-ordered record map.

    Records are stored by reference: workers mutate the JobRecord and call
    save(), which only refreshes its position bookkeeping.
    """

    def __init__(self, max_records: int = RESULT_STORE_MAX_RECORDS) -> None:
        self._max_records = max_records
        self._records: OrderedDict[str, JobRecord] = OrderedDict()

    async def initialize(self) -> None:
        return None

    async def save(self, record: JobRecord) -> None:
        self._records[record.job_id] = record
        while len(self._records) > self._max_records:
            evicted_id, _ = self._records.popitem(last=False)
            logger.debug("result_evicted", job_id=evicted_id)

    async def get(self, job_id: str) -> Optional[JobRecord]:
        return self._records.get(job_id)

    async def list(
        self,
        outcome: Optional[ImportOutcome] = None,
        limit: int = 50,
    ) -> list[JobRecord]:
        matches: list[JobRecord] = []
        for record in reversed(self._records.values()):
            if outcome is not None and record.outcome is not outcome:
                continue
            matches.append(record)
            if len(matches) >= limit:
                break
        return matches

    async def delete(self, job_id: str) -> None:
        self._records.pop(job_id, None)

    async def count(self) -> int:
        return len(self._records)

    async def close(self) -> None:
        return None


async def create_result_store(relay_config: "RelayConfig") -> ResultStore:
    """Select and initialize the result store.

    relay.results_path set → SQLiteResultStore at that path
    otherwise              → InMemoryResultStore(relay.max_records)

    Raises:
        RuntimeError: SQLite schema version mismatch (startup is refused).
    """
    if relay_config.results_path:
        from scanrelay.relay.sqlite_results import SQLiteResultStore

        store: ResultStore = SQLiteResultStore(
            db_path=relay_config.results_path,
            max_records=relay_config.max_records,
        )
        await store.initialize()
        logger.info("result_store_selected", backend="SQLiteResultStore", db_path=relay_config.results_path)
        return store

    store = InMemoryResultStore(max_records=relay_config.max_records)
    await store.initialize()
    logger.info("result_store_selected", backend="InMemoryResultStore", max_records=relay_config.max_records)
    return store
