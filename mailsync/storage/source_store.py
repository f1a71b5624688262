"""
Ingestion source store.

Holds per-source encrypted credentials, lifecycle status and the last
committed sync state. ``commit_cycle`` writes the cursor together with the
completion status so a cycle is either fully recorded or not at all.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Protocol

from ..core.exceptions import UnknownSourceError
from ..core.models import SourceRecord, SourceStatus
from ..core.sync_state import SyncState

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SourceStore(Protocol):
    """Keyed record store for ingestion sources."""

    def add_source(self, source_id: str, provider: str,
                   status: SourceStatus = SourceStatus.PENDING_AUTH) -> SourceRecord: ...

    def get(self, source_id: str) -> Optional[SourceRecord]: ...

    def list_sources(self) -> List[SourceRecord]: ...

    def set(self, source_id: str, credentials: str, status: SourceStatus) -> None: ...

    def update_status(self, source_id: str, status: SourceStatus, message: Optional[str] = None) -> None: ...

    def commit_cycle(self, source_id: str, sync_state: SyncState, status: SourceStatus,
                     message: Optional[str] = None) -> None: ...


class InMemorySourceStore:
    """Dictionary-backed store for tests and single-process use."""

    def __init__(self) -> None:
        self._records: Dict[str, SourceRecord] = {}

    def _require(self, source_id: str) -> SourceRecord:
        record = self._records.get(source_id)
        if record is None:
            raise UnknownSourceError(f"Unknown ingestion source: {source_id}")
        return record

    def add_source(self, source_id: str, provider: str,
                   status: SourceStatus = SourceStatus.PENDING_AUTH) -> SourceRecord:
        record = self._records.get(source_id)
        if record is None:
            record = SourceRecord(source_id=source_id, provider=provider, status=status, updated_at=_now())
            self._records[source_id] = record
        return replace(record, sync_state=json.loads(json.dumps(record.sync_state)))

    def get(self, source_id: str) -> Optional[SourceRecord]:
        record = self._records.get(source_id)
        if record is None:
            return None
        return replace(record, sync_state=json.loads(json.dumps(record.sync_state)))

    def list_sources(self) -> List[SourceRecord]:
        return [self.get(source_id) for source_id in sorted(self._records)]

    def set(self, source_id: str, credentials: str, status: SourceStatus) -> None:
        record = self._require(source_id)
        record.credentials = credentials
        record.status = status
        record.updated_at = _now()

    def update_status(self, source_id: str, status: SourceStatus, message: Optional[str] = None) -> None:
        record = self._require(source_id)
        record.status = status
        record.last_status_message = message
        record.updated_at = _now()

    def commit_cycle(self, source_id: str, sync_state: SyncState, status: SourceStatus,
                     message: Optional[str] = None) -> None:
        record = self._require(source_id)
        record.sync_state = json.loads(json.dumps(sync_state or {}))
        record.status = status
        record.last_status_message = message
        record.updated_at = _now()


class SQLiteSourceStore:
    """SQLite-backed source store used by the command-line runner."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS ingestion_sources (
        source_id TEXT PRIMARY KEY,
        provider TEXT NOT NULL,
        credentials TEXT,
        status TEXT NOT NULL DEFAULT 'pending_auth',
        sync_state TEXT NOT NULL DEFAULT '{}',
        last_status_message TEXT,
        updated_at TEXT
    )
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()
        logger.info("SQLite source store initialized at %s", db_path)

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        """Yield the connection inside a transaction."""
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as e:
                logger.error("Source store operation failed: %s", e)
                raise

    def _ensure_schema(self) -> None:
        with self.get_connection() as conn:
            conn.execute(self.SCHEMA)

    def close(self) -> None:
        self._conn.close()

    @staticmethod
    def _to_record(row: Any) -> SourceRecord:
        return SourceRecord(
            source_id=row["source_id"],
            provider=row["provider"],
            credentials=row["credentials"],
            status=SourceStatus(row["status"]),
            sync_state=json.loads(row["sync_state"] or "{}"),
            last_status_message=row["last_status_message"],
            updated_at=datetime.fromisoformat(row["updated_at"]) if row["updated_at"] else None,
        )

    def _update(self, conn: sqlite3.Connection, source_id: str, sql: str, params: tuple) -> None:
        cursor = conn.execute(sql, params + (_now().isoformat(), source_id))
        if cursor.rowcount == 0:
            raise UnknownSourceError(f"Unknown ingestion source: {source_id}")

    def add_source(self, source_id: str, provider: str,
                   status: SourceStatus = SourceStatus.PENDING_AUTH) -> SourceRecord:
        with self.get_connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO ingestion_sources (source_id, provider, status, updated_at) "
                "VALUES (?, ?, ?, ?)",
                (source_id, provider, status.value, _now().isoformat()),
            )
        return self.get(source_id)

    def get(self, source_id: str) -> Optional[SourceRecord]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM ingestion_sources WHERE source_id = ?", (source_id,)
            ).fetchone()
        return self._to_record(row) if row else None

    def list_sources(self) -> List[SourceRecord]:
        with self.get_connection() as conn:
            rows = conn.execute("SELECT * FROM ingestion_sources ORDER BY source_id").fetchall()
        return [self._to_record(row) for row in rows]

    def set(self, source_id: str, credentials: str, status: SourceStatus) -> None:
        with self.get_connection() as conn:
            self._update(
                conn, source_id,
                "UPDATE ingestion_sources SET credentials = ?, status = ?, updated_at = ? WHERE source_id = ?",
                (credentials, status.value),
            )

    def update_status(self, source_id: str, status: SourceStatus, message: Optional[str] = None) -> None:
        with self.get_connection() as conn:
            self._update(
                conn, source_id,
                "UPDATE ingestion_sources SET status = ?, last_status_message = ?, updated_at = ? "
                "WHERE source_id = ?",
                (status.value, message),
            )

    def commit_cycle(self, source_id: str, sync_state: SyncState, status: SourceStatus,
                     message: Optional[str] = None) -> None:
        with self.get_connection() as conn:
            self._update(
                conn, source_id,
                "UPDATE ingestion_sources SET sync_state = ?, status = ?, last_status_message = ?, "
                "updated_at = ? WHERE source_id = ?",
                (json.dumps(sync_state or {}, sort_keys=True), status.value, message),
            )
        logger.debug("Committed sync state for source %s", source_id)
