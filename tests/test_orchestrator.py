"""Tests for SyncOrchestrator cycles, scheduling and error handling."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import pytest

from mailsync.connectors.gmail_connector import GmailConnector
from mailsync.core.credentials import GmailCredentials, credentials_from_dict, credentials_to_dict
from mailsync.core.exceptions import (
    RetriesExhaustedError,
    SourceNotReadyError,
    UnknownSourceError,
)
from mailsync.core.models import SourceStatus
from mailsync.orchestrator import SyncOrchestrator
from mailsync.storage import EmlDirectorySink, InMemorySourceStore
from mailsync.utils.crypto import encrypt_object
from tests.gmail_fixtures import FakeGmailService, http_error


def _authorize(store: InMemorySourceStore, source_id: str, email: str = "a@example.com") -> None:
    store.add_source(source_id, "gmail")
    creds = GmailCredentials(refresh_token="rt", user_email=email)
    store.set(source_id, encrypt_object(credentials_to_dict(creds)), SourceStatus.AUTH_SUCCESS)


class StateRecordingSink:
    """Records the stored sync state seen while each message is persisted."""

    def __init__(self, store: InMemorySourceStore) -> None:
        self.store = store
        self.seen: List[str] = []
        self.states: List[Dict[str, Any]] = []

    async def persist(self, source_id, email) -> bool:
        self.seen.append(email.id)
        self.states.append(self.store.get(source_id).sync_state)
        return True


class BlockingSink:
    """Accepts one message and then never returns."""

    def __init__(self) -> None:
        self.started = asyncio.Event()

    async def persist(self, source_id, email) -> bool:
        self.started.set()
        await asyncio.Event().wait()
        return True


@pytest.fixture
def store() -> InMemorySourceStore:
    store = InMemorySourceStore()
    _authorize(store, "src-1")
    return store


@pytest.fixture
def mailbox() -> FakeGmailService:
    service = FakeGmailService()
    for i in range(1, 6):
        service.add_message(f"m{i}")
    return service


@pytest.fixture
def factory(mailbox, retry_policy):
    mailboxes = {"a@example.com": mailbox}

    def build(credentials, config):
        creds = credentials_from_dict(credentials)
        return GmailConnector(creds, config, service=mailboxes[creds.user_email], retry_policy=retry_policy)

    build.mailboxes = mailboxes
    return build


def _orchestrator(store, sink, config, factory) -> SyncOrchestrator:
    return SyncOrchestrator(store, sink, config, connector_factory=factory)


@pytest.mark.asyncio
async def test_cycle_archives_and_commits_cursor(store, mailbox, config, factory, tmp_path):
    orchestrator = _orchestrator(store, EmlDirectorySink(str(tmp_path)), config, factory)

    report = await orchestrator.sync_source("src-1")

    assert (report.full_import, report.fetched, report.archived) == (True, 5, 5)
    record = store.get("src-1")
    assert record.status == SourceStatus.ACTIVE
    assert record.sync_state == {"gmail": {"a@example.com": {"historyId": "5"}}}
    assert len(list((tmp_path / "src-1").iterdir())) == 5

    mailbox.add_message("m6")
    report = await orchestrator.sync_source("src-1")
    assert (report.full_import, report.fetched, report.archived) == (False, 1, 1)
    assert store.get("src-1").sync_state["gmail"]["a@example.com"]["historyId"] == "6"


@pytest.mark.asyncio
async def test_reimport_does_not_duplicate_archive(store, config, factory, tmp_path):
    orchestrator = _orchestrator(store, EmlDirectorySink(str(tmp_path)), config, factory)
    await orchestrator.sync_source("src-1")

    store.commit_cycle("src-1", {}, SourceStatus.ACTIVE)
    report = await orchestrator.sync_source("src-1")

    assert (report.full_import, report.fetched, report.archived) == (True, 5, 0)
    assert len(list((tmp_path / "src-1").iterdir())) == 5


@pytest.mark.asyncio
async def test_cursor_is_committed_only_after_the_sequence_ends(store, mailbox, config, factory):
    await _orchestrator(store, StateRecordingSink(store), config, factory).sync_source("src-1")
    before = store.get("src-1").sync_state
    mailbox.add_message("m6")
    mailbox.add_message("m7")

    sink = StateRecordingSink(store)
    await _orchestrator(store, sink, config, factory).sync_source("src-1")

    assert sink.seen == ["m6", "m7"]
    assert sink.states == [before, before]
    assert store.get("src-1").sync_state != before


@pytest.mark.asyncio
async def test_failed_cycle_marks_error_and_keeps_cursor(store, mailbox, config, factory):
    orchestrator = _orchestrator(store, StateRecordingSink(store), config, factory)
    await orchestrator.sync_source("src-1")
    committed = store.get("src-1").sync_state

    mailbox.add_message("m6")
    mailbox.fail_next("messages.get", http_error(503, "backendError"), times=5)
    with pytest.raises(RetriesExhaustedError):
        await orchestrator.sync_source("src-1")

    record = store.get("src-1")
    assert record.status == SourceStatus.ERROR
    assert "5 attempts" in record.last_status_message
    assert record.sync_state == committed

    report = await orchestrator.sync_source("src-1")
    assert report.fetched == 1
    assert store.get("src-1").status == SourceStatus.ACTIVE


@pytest.mark.asyncio
async def test_fallback_message_is_recorded(store, mailbox, config, factory):
    store.commit_cycle("src-1", {"gmail": {"a@example.com": {"historyId": "1"}}}, SourceStatus.ACTIVE)
    mailbox.oldest_history_id = 3

    report = await _orchestrator(store, StateRecordingSink(store), config, factory).sync_source("src-1")

    assert report.fetched == 5
    record = store.get("src-1")
    assert "full re-sync" in record.last_status_message
    assert "full re-sync" in record.sync_state["statusMessage"]


@pytest.mark.asyncio
async def test_sources_that_are_not_ready_are_refused(store, config, factory):
    store.add_source("pending", "gmail")
    store.add_source("no-creds", "jmap", SourceStatus.ACTIVE)
    store.update_status("src-1", SourceStatus.PAUSED)
    orchestrator = _orchestrator(store, StateRecordingSink(store), config, factory)

    for source_id in ("pending", "no-creds", "src-1"):
        with pytest.raises(SourceNotReadyError):
            await orchestrator.sync_source(source_id)
    with pytest.raises(UnknownSourceError):
        await orchestrator.sync_source("missing")
    assert store.get("src-1").status == SourceStatus.PAUSED


@pytest.mark.asyncio
async def test_cycles_for_one_source_do_not_overlap(store, config, factory):
    orchestrator = _orchestrator(store, StateRecordingSink(store), config, factory)

    first, second = await asyncio.gather(orchestrator.sync_source("src-1"), orchestrator.sync_source("src-1"))

    assert (first.full_import, first.fetched) == (True, 5)
    assert (second.full_import, second.fetched) == (False, 0)


@pytest.mark.asyncio
async def test_sync_many_isolates_failures(store, config, factory):
    _authorize(store, "src-2", email="b@example.com")
    broken = FakeGmailService(email="b@example.com")
    broken.fail_next("users.getProfile", http_error(401, "authError"))
    factory.mailboxes["b@example.com"] = broken

    results = await _orchestrator(store, StateRecordingSink(store), config, factory).sync_many(["src-1", "src-2"])

    assert results["src-1"].fetched == 5
    assert isinstance(results["src-2"], Exception)
    assert store.get("src-2").status == SourceStatus.ERROR


@pytest.mark.asyncio
async def test_initial_import_is_scheduled_once(store, config, factory):
    sink = StateRecordingSink(store)
    orchestrator = _orchestrator(store, sink, config, factory)

    first = await orchestrator.trigger_initial_import("src-1")
    second = await orchestrator.trigger_initial_import("src-1")
    await orchestrator.wait_for_scheduled()

    assert first is second
    assert first.result().fetched == 5
    assert len(sink.seen) == 5


@pytest.mark.asyncio
async def test_pause_cancels_running_cycle_without_commit(store, config, factory):
    sink = BlockingSink()
    orchestrator = _orchestrator(store, sink, config, factory)

    task = await orchestrator.trigger_initial_import("src-1")
    await sink.started.wait()
    await orchestrator.pause_source("src-1")

    assert task.cancelled()
    record = store.get("src-1")
    assert record.status == SourceStatus.PAUSED
    assert record.sync_state == {}


@pytest.mark.asyncio
async def test_pause_cancels_cycle_started_directly(store, config, factory):
    sink = BlockingSink()
    orchestrator = _orchestrator(store, sink, config, factory)

    task = asyncio.create_task(orchestrator.sync_source("src-1"))
    await sink.started.wait()
    await orchestrator.pause_source("src-1")

    assert task.cancelled()
    record = store.get("src-1")
    assert record.status == SourceStatus.PAUSED
    assert record.sync_state == {}


@pytest.mark.asyncio
async def test_pause_cancels_only_that_source_in_sync_many(store, config, factory):
    _authorize(store, "src-2", email="b@example.com")
    blocked = FakeGmailService(email="b@example.com")
    blocked.add_message("b1")
    factory.mailboxes["b@example.com"] = blocked

    class BlockSecondSource(StateRecordingSink):
        def __init__(self, store):
            super().__init__(store)
            self.started = asyncio.Event()

        async def persist(self, source_id, email) -> bool:
            if source_id == "src-2":
                self.started.set()
                await asyncio.Event().wait()
            return await super().persist(source_id, email)

    sink = BlockSecondSource(store)
    orchestrator = _orchestrator(store, sink, config, factory)
    running = asyncio.create_task(orchestrator.sync_many(["src-1", "src-2"]))
    await sink.started.wait()
    await orchestrator.pause_source("src-2")
    results = await running

    assert results["src-1"].fetched == 5
    assert isinstance(results["src-2"], asyncio.CancelledError)
    assert store.get("src-2").status == SourceStatus.PAUSED
    assert store.get("src-2").sync_state == {}
    assert store.get("src-1").status == SourceStatus.ACTIVE


class PausingSink(StateRecordingSink):
    """Pauses the source through the store while the cycle is running."""

    async def persist(self, source_id, email) -> bool:
        self.store.update_status(source_id, SourceStatus.PAUSED, "Paused elsewhere")
        return await super().persist(source_id, email)


@pytest.mark.asyncio
async def test_pause_recorded_during_cycle_is_kept(store, config, factory):
    report = await _orchestrator(store, PausingSink(store), config, factory).sync_source("src-1")

    assert report.fetched == 5
    record = store.get("src-1")
    assert record.status == SourceStatus.PAUSED
    assert record.sync_state == {}


@pytest.mark.asyncio
async def test_resume_restores_status(store, config, factory):
    orchestrator = _orchestrator(store, StateRecordingSink(store), config, factory)
    await orchestrator.pause_source("src-1")
    orchestrator.resume_source("src-1")
    assert store.get("src-1").status == SourceStatus.AUTH_SUCCESS

    await orchestrator.sync_source("src-1")
    await orchestrator.pause_source("src-1")
    orchestrator.resume_source("src-1")
    assert store.get("src-1").status == SourceStatus.ACTIVE
