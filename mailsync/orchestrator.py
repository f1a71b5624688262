"""
This module defines the SyncOrchestrator, which drives one sync cycle per
ingestion source: it loads the source, builds the connector for its
credentials, hands every fetched message to the sink and commits the
advanced cursor only once the fetch sequence is exhausted.

Classes:
    CycleReport: Counters and outcome of one cycle
    SyncOrchestrator: Runs, serializes and schedules sync cycles
"""

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .connectors import EmailConnector, build_connector
from .core.config import Config
from .core.exceptions import SourceNotReadyError, UnknownSourceError
from .core.models import SourceStatus
from .core.sync_state import merge_states
from .utils.crypto import decrypt_object

logger = logging.getLogger(__name__)

_NOT_READY = (SourceStatus.PENDING_AUTH, SourceStatus.PAUSED)


@dataclass
class CycleReport:
    """Outcome of one sync cycle for one source."""
    source_id: str
    provider: str
    full_import: bool = False
    fetched: int = 0
    archived: int = 0
    status_message: Optional[str] = None


class SyncOrchestrator:
    """Run sync cycles against a source store and a message sink."""

    def __init__(
        self,
        store: Any,
        sink: Any,
        config: Optional[Config] = None,
        *,
        connector_factory: Callable[..., EmailConnector] = build_connector,
        decrypt: Callable[[str], Any] = decrypt_object,
    ) -> None:
        self.store = store
        self.sink = sink
        self.config = config or Config()
        self._connector_factory = connector_factory
        self._decrypt = decrypt
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running: Dict[str, asyncio.Task] = {}

    def _lock_for(self, source_id: str) -> asyncio.Lock:
        return self._locks.setdefault(source_id, asyncio.Lock())

    async def sync_source(self, source_id: str) -> CycleReport:
        """Run one cycle for ``source_id``; cycles for the same source never overlap.

        Raises:
            UnknownSourceError: If the source does not exist
            SourceNotReadyError: If the source is paused or awaiting authorization
            MailSyncError: Whatever aborted the cycle, after the source is marked ``error``
        """
        async with self._lock_for(source_id):
            task = asyncio.current_task()
            self._running[source_id] = task
            try:
                return await self._run_cycle(source_id)
            finally:
                if self._running.get(source_id) is task:
                    del self._running[source_id]

    async def _run_cycle(self, source_id: str) -> CycleReport:
        record = self.store.get(source_id)
        if record is None:
            raise UnknownSourceError(f"Unknown ingestion source: {source_id}")
        if record.status in _NOT_READY:
            raise SourceNotReadyError(f"Source {source_id} is {record.status.value}; not syncing")
        if not record.credentials:
            raise SourceNotReadyError(f"Source {source_id} has no stored credentials")

        prior = record.sync_state or {}
        report = CycleReport(
            source_id=source_id,
            provider=record.provider,
            full_import=not prior.get(record.provider),
        )
        running = SourceStatus.IMPORTING if report.full_import else SourceStatus.SYNCING
        self.store.update_status(source_id, running, record.last_status_message)
        logger.info(
            "Starting %s cycle for source %s (%s)",
            "full import" if report.full_import else "incremental", source_id, record.provider,
        )

        try:
            async with self._connector_factory(self._decrypt(record.credentials), self.config) as connector:
                async with aclosing(connector.fetch_emails(prior)) as emails:
                    async for email in emails:
                        report.fetched += 1
                        if await self.sink.persist(source_id, email):
                            report.archived += 1
                update = connector.get_updated_sync_state()
                report.status_message = connector.status_message
        except asyncio.CancelledError:
            logger.info("Sync cycle for source %s cancelled after %d messages", source_id, report.fetched)
            current = self.store.get(source_id)
            if current is not None and current.status == running:
                self.store.update_status(source_id, record.status, record.last_status_message)
            raise
        except Exception as exc:
            logger.error("Sync cycle for source %s failed: %s", source_id, exc)
            self.store.update_status(source_id, SourceStatus.ERROR, str(exc))
            raise

        current = self.store.get(source_id)
        if current is not None and current.status == SourceStatus.PAUSED:
            logger.info("Source %s was paused during the cycle; cursor not committed", source_id)
            return report
        self.store.commit_cycle(
            source_id, merge_states(prior, update), SourceStatus.ACTIVE, report.status_message
        )
        logger.info(
            "Completed cycle for source %s: %d fetched, %d archived",
            source_id, report.fetched, report.archived,
        )
        return report

    async def sync_many(self, source_ids: Iterable[str]) -> Dict[str, Union[CycleReport, BaseException]]:
        """Run cycles for several sources concurrently.

        Each source's result is either its report or the exception that
        aborted it; one failing source does not stop the others.
        """
        ids: List[str] = list(dict.fromkeys(source_ids))
        results = await asyncio.gather(*(self.sync_source(s) for s in ids), return_exceptions=True)
        return dict(zip(ids, results))

    async def trigger_initial_import(self, source_id: str) -> asyncio.Task:
        """Schedule a cycle for a freshly authorized source.

        Used as the ``on_authenticated`` hook of the authorization flows.
        """
        existing = self._tasks.get(source_id)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.create_task(self.sync_source(source_id), name=f"sync-{source_id}")
        self._tasks[source_id] = task
        task.add_done_callback(lambda t: self._on_task_done(source_id, t))
        logger.info("Scheduled initial import for source %s", source_id)
        return task

    def _on_task_done(self, source_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(source_id) is task:
            del self._tasks[source_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Scheduled sync for source %s failed: %s", source_id, exc)

    async def pause_source(self, source_id: str) -> None:
        """Mark ``source_id`` paused and cancel its running or scheduled cycle."""
        if self.store.get(source_id) is None:
            raise UnknownSourceError(f"Unknown ingestion source: {source_id}")
        self.store.update_status(source_id, SourceStatus.PAUSED, "Paused by operator")
        me = asyncio.current_task()
        tasks = {
            task for task in (self._running.get(source_id), self._tasks.get(source_id))
            if task is not None and task is not me and not task.done()
        }
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)

    def resume_source(self, source_id: str) -> None:
        record = self.store.get(source_id)
        if record is None:
            raise UnknownSourceError(f"Unknown ingestion source: {source_id}")
        if record.status == SourceStatus.PAUSED:
            resumed = SourceStatus.ACTIVE if record.sync_state else SourceStatus.AUTH_SUCCESS
            self.store.update_status(source_id, resumed, None)

    async def wait_for_scheduled(self) -> None:
        """Wait until every scheduled cycle has finished."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
