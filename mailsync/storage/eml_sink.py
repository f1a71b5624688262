"""Message sinks receiving each fetched EmailObject."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import tempfile
from typing import Protocol

from ..core.models import EmailObject

logger = logging.getLogger(__name__)


class MessageSink(Protocol):
    """Persists fetched messages; must tolerate the same message twice."""

    async def persist(self, source_id: str, email: EmailObject) -> bool: ...


def _file_name(message_id: str) -> str:
    return hashlib.sha256(message_id.encode("utf-8")).hexdigest() + ".eml"


class EmlDirectorySink:
    """Write raw messages to ``<archive_dir>/<source_id>/<sha256(id)>.eml``.

    Returns ``False`` when the file already exists, so re-delivered messages
    are archived once per (source, provider-native id).
    """

    def __init__(self, archive_dir: str) -> None:
        self.archive_dir = archive_dir

    def path_for(self, source_id: str, message_id: str) -> str:
        return os.path.join(self.archive_dir, source_id, _file_name(message_id))

    def _write(self, path: str, data: bytes) -> bool:
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)
        if os.path.exists(path):
            return False
        # the final name only ever refers to a completely written file
        fd, tmp_path = tempfile.mkstemp(prefix=".", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            try:
                os.link(tmp_path, path)
            except FileExistsError:
                return False
        finally:
            os.unlink(tmp_path)
        return True

    async def persist(self, source_id: str, email: EmailObject) -> bool:
        path = self.path_for(source_id, email.id)
        written = await asyncio.to_thread(self._write, path, email.eml)
        if written:
            logger.debug("Archived message %s for source %s", email.id, source_id)
        else:
            logger.debug("Message %s for source %s already archived", email.id, source_id)
        return written
