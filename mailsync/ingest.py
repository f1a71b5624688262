"""Command-line runner for one sync cycle.

Usage::

    python -m mailsync.ingest --source-id SOURCE [--source-id OTHER] [--db mailsync.db]
    python -m mailsync.ingest --all --postgres
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .core.config import Config
from .core.models import SourceStatus
from .orchestrator import CycleReport, SyncOrchestrator
from .storage import EmlDirectorySink, SQLiteSourceStore
from .utils.logger import setup_script_logging

logger = logging.getLogger(__name__)


def _build_parser(config: Config) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one email sync cycle per ingestion source")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--source-id", action="append", dest="source_ids", help="Source to sync (repeatable)")
    target.add_argument("--all", action="store_true", help="Sync every source that is ready")
    parser.add_argument("--db", default=config.SYNC_DB_PATH, help="SQLite source store path")
    parser.add_argument("--postgres", action="store_true",
                        help="Use the PostgreSQL source store configured by POSTGRES_* variables")
    parser.add_argument("--archive-dir", default=config.ARCHIVE_DIR)
    parser.add_argument("--log-dir", default=config.LOG_DIR)
    parser.add_argument("--verbose", "-v", action="store_true")
    return parser


def _open_store(args: argparse.Namespace):
    if args.postgres:
        from .storage.postgres_store import PostgresSourceStore

        return PostgresSourceStore()
    return SQLiteSourceStore(args.db)


def _summary(report: CycleReport) -> str:
    mode = "full import" if report.full_import else "incremental"
    line = f"{report.source_id}: {mode}, {report.fetched} fetched, {report.archived} archived"
    if report.status_message:
        line += f" ({report.status_message})"
    return line


async def _run(orchestrator: SyncOrchestrator, source_ids: List[str]) -> int:
    results = await orchestrator.sync_many(source_ids)
    failures = 0
    for source_id, result in results.items():
        if isinstance(result, BaseException):
            failures += 1
            print(f"{source_id}: failed: {result}")
        else:
            print(_summary(result))
    return 1 if failures else 0


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for scheduled execution."""
    config = Config()
    args = _build_parser(config).parse_args(argv)
    setup_script_logging("ingest", logging.DEBUG if args.verbose else logging.INFO, args.log_dir)

    try:
        store = _open_store(args)
    except Exception as exc:
        logger.error("Cannot open source store: %s", exc)
        return 1

    if args.all:
        source_ids = [
            record.source_id for record in store.list_sources()
            if record.status not in (SourceStatus.PENDING_AUTH, SourceStatus.PAUSED)
        ]
        if not source_ids:
            print("No sources ready to sync")
            return 0
    else:
        source_ids = args.source_ids

    orchestrator = SyncOrchestrator(store, EmlDirectorySink(args.archive_dir), config)
    try:
        return asyncio.run(_run(orchestrator, source_ids))
    finally:
        store.close()


if __name__ == "__main__":  # pragma: no cover - CLI behaviour
    sys.exit(main())
