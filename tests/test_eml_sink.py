"""Tests for the .eml directory sink."""

import os

import pytest

from mailsync.core.models import EmailObject
from mailsync.storage import EmlDirectorySink


def _email(message_id: str, eml: bytes = b"Subject: hi\r\n\r\nbody") -> EmailObject:
    return EmailObject(id=message_id, thread_id=message_id, user_email="a@example.com", eml=eml)


@pytest.mark.asyncio
async def test_message_is_written_once_per_source(tmp_path):
    sink = EmlDirectorySink(str(tmp_path))

    assert await sink.persist("src-1", _email("m1")) is True
    assert await sink.persist("src-1", _email("m1", b"changed")) is False
    assert await sink.persist("src-2", _email("m1")) is True

    path = sink.path_for("src-1", "m1")
    with open(path, "rb") as fh:
        assert fh.read() == b"Subject: hi\r\n\r\nbody"


def test_file_names_are_safe_for_any_message_id(tmp_path):
    sink = EmlDirectorySink(str(tmp_path))
    path = sink.path_for("src-1", "INBOX/Sub:7:42")

    assert os.path.dirname(path) == str(tmp_path / "src-1")
    assert path.endswith(".eml")


@pytest.mark.asyncio
async def test_failed_write_leaves_nothing_behind(tmp_path, monkeypatch):
    sink = EmlDirectorySink(str(tmp_path))
    real_fsync = os.fsync
    failures = [OSError(28, "No space left on device")]

    def fsync(fd):
        if failures:
            raise failures.pop()
        real_fsync(fd)

    monkeypatch.setattr(os, "fsync", fsync)

    with pytest.raises(OSError):
        await sink.persist("src-1", _email("m1"))
    assert list((tmp_path / "src-1").iterdir()) == []

    assert await sink.persist("src-1", _email("m1")) is True
    with open(sink.path_for("src-1", "m1"), "rb") as fh:
        assert fh.read() == b"Subject: hi\r\n\r\nbody"
