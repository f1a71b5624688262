"""
PostgreSQL-backed ingestion source store.

Same contract as :class:`~mailsync.storage.source_store.SQLiteSourceStore`,
for deployments that keep source metadata next to the archive index.
"""

import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from ..core.exceptions import UnknownSourceError
from ..core.models import SourceRecord, SourceStatus
from ..core.sync_state import SyncState

logger = logging.getLogger(__name__)


@dataclass
class PostgreSQLConfig:
    """Configuration for PostgreSQL connection."""
    host: str = os.getenv('POSTGRES_HOST', 'localhost')
    port: int = int(os.getenv('POSTGRES_PORT', '5432'))
    database: str = os.getenv('POSTGRES_DB', 'mailsync')
    user: str = os.getenv('POSTGRES_USER', 'mailsync')
    password: str = os.getenv('POSTGRES_PASSWORD', '')
    min_connections: int = 1
    max_connections: int = 10


class PostgresSourceStore:
    """Source store on a pooled PostgreSQL connection."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS ingestion_sources (
        source_id TEXT PRIMARY KEY,
        provider VARCHAR(32) NOT NULL,
        credentials TEXT,
        status VARCHAR(32) NOT NULL DEFAULT 'pending_auth',
        sync_state JSONB NOT NULL DEFAULT '{}'::jsonb,
        last_status_message TEXT,
        updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
    );
    """

    def __init__(self, config_or_pool=None):
        """
        Initialize the store.

        Args:
            config_or_pool: Either a PostgreSQLConfig object or a connection pool.
                          If None, creates default config.
        """
        if hasattr(config_or_pool, 'getconn') and hasattr(config_or_pool, 'putconn'):
            self.pool = config_or_pool
            self.config = None
            logger.info("PostgreSQL source store initialized with existing pool")
        else:
            self.config = config_or_pool or PostgreSQLConfig()
            self.pool = ThreadedConnectionPool(
                self.config.min_connections,
                self.config.max_connections,
                host=self.config.host,
                port=self.config.port,
                database=self.config.database,
                user=self.config.user,
                password=self.config.password,
                cursor_factory=RealDictCursor,
            )
            logger.info("PostgreSQL connection pool initialized for %s", self.config.database)
        self._ensure_schema()

    @contextmanager
    def get_connection(self):
        """Context manager yielding a pooled connection inside one transaction."""
        conn = self.pool.getconn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error("Source store operation failed: %s", e)
            raise
        finally:
            self.pool.putconn(conn)

    def _ensure_schema(self) -> None:
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(self.SCHEMA)

    def close(self) -> None:
        self.pool.closeall()

    @staticmethod
    def _to_record(row: Dict[str, Any]) -> SourceRecord:
        sync_state = row.get("sync_state") or {}
        if isinstance(sync_state, str):
            sync_state = json.loads(sync_state)
        return SourceRecord(
            source_id=row["source_id"],
            provider=row["provider"],
            credentials=row.get("credentials"),
            status=SourceStatus(row["status"]),
            sync_state=sync_state,
            last_status_message=row.get("last_status_message"),
            updated_at=row.get("updated_at"),
        )

    def _update(self, source_id: str, assignments: str, params: tuple) -> None:
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE ingestion_sources SET {assignments}, updated_at = %s WHERE source_id = %s",
                    params + (datetime.now(timezone.utc), source_id),
                )
                if cur.rowcount == 0:
                    raise UnknownSourceError(f"Unknown ingestion source: {source_id}")

    def add_source(self, source_id: str, provider: str,
                   status: SourceStatus = SourceStatus.PENDING_AUTH) -> SourceRecord:
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO ingestion_sources (source_id, provider, status)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (source_id) DO NOTHING
                    """,
                    (source_id, provider, status.value),
                )
        return self.get(source_id)

    def get(self, source_id: str) -> Optional[SourceRecord]:
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM ingestion_sources WHERE source_id = %s", (source_id,))
                row = cur.fetchone()
        return self._to_record(row) if row else None

    def list_sources(self) -> List[SourceRecord]:
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM ingestion_sources ORDER BY source_id")
                rows = cur.fetchall()
        return [self._to_record(row) for row in rows]

    def set(self, source_id: str, credentials: str, status: SourceStatus) -> None:
        self._update(source_id, "credentials = %s, status = %s", (credentials, status.value))

    def update_status(self, source_id: str, status: SourceStatus, message: Optional[str] = None) -> None:
        self._update(source_id, "status = %s, last_status_message = %s", (status.value, message))

    def commit_cycle(self, source_id: str, sync_state: SyncState, status: SourceStatus,
                     message: Optional[str] = None) -> None:
        self._update(
            source_id,
            "sync_state = %s::jsonb, status = %s, last_status_message = %s",
            (json.dumps(sync_state or {}, sort_keys=True), status.value, message),
        )
