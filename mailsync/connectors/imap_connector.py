"""IMAP email connector implementation.

This module provides the :class:`IMAPConnector`, capable of fetching emails
from an IMAP server and returning :class:`~mailsync.core.models.EmailObject`
records. The cursor is kept per folder as ``{"uidValidity", "lastUid"}``; a
changed UIDVALIDITY means the stored UIDs no longer identify the same
messages and the folder is imported again from scratch.

``imaplib`` is blocking, so every server round trip runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import imaplib
import logging
import re
import ssl
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple, TypeVar

from ..core.config import Config
from ..core.credentials import ImapCredentials
from ..core.exceptions import (
    ItemGoneError,
    ProviderAuthError,
    ProviderRequestError,
    StateInvalidatedError,
    TransientProviderError,
)
from ..core.models import EmailObject, MailboxUser
from ..core.sync_state import SyncState, build_state, get_account_state
from ..utils.retry import RetryPolicy, with_retry
from .base import EmailConnector
from .normalizer import normalize_message
from .taxonomy import TaxonomyEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")

ALL_MAILBOXES = "*"

_LIST_RE = re.compile(r'\((?P<flags>[^)]*)\)\s+(?P<delim>"(?:[^"\\]|\\.)*"|NIL)\s+(?P<name>.+)')

_SPECIAL_USE_ROLES = {
    "\\trash": "trash",
    "\\junk": "junk",
    "\\sent": "sent",
    "\\drafts": "drafts",
    "\\archive": "archive",
    "\\all": "all",
}


def _quote(name: str) -> str:
    return '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        value = value[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return value


def parse_list_response(line: Any) -> Optional[Tuple[str, str, List[str]]]:
    """Parse one LIST response line into ``(name, delimiter, flags)``."""
    if isinstance(line, tuple):
        # Literal form: (b'(\\HasNoChildren) "/" {5}', b'Inbox')
        line = line[0].rsplit(b" ", 1)[0] + b' "' + line[1] + b'"'
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    if not line:
        return None
    match = _LIST_RE.match(line)
    if not match:
        return None
    delim = match.group("delim")
    delimiter = "" if delim == "NIL" else _unquote(delim)
    flags = [flag.lower() for flag in match.group("flags").split()]
    return _unquote(match.group("name")), delimiter, flags


class IMAPConnector(EmailConnector):
    """Retrieve emails from an IMAP server.

    When ``use_ssl`` is ``False`` the connector upgrades the connection with
    ``STARTTLS`` so credentials are never sent in plaintext. A server without
    ``STARTTLS`` support is rejected.
    """

    provider = "imap"

    def __init__(
        self,
        credentials: ImapCredentials,
        config: Optional[Config] = None,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        connection_factory: Optional[Callable[[], Any]] = None,
    ) -> None:
        super().__init__()
        self.credentials = credentials
        self.config = config or Config()
        self.host = credentials.host
        self.port = credentials.port
        self.username = credentials.username
        self.use_ssl = credentials.use_ssl
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)
        self._connection_factory = connection_factory or self._open_socket
        self._conn: Any = None
        self._selected: Optional[str] = None
        self._delimiters: Dict[str, str] = {}
        self._noselect: set = set()

    @property
    def user_email(self) -> str:
        return self.username

    # ------------------------------------------------------------------
    def _open_socket(self) -> imaplib.IMAP4:
        timeout = self.config.IMAP_TIMEOUT_SECONDS
        if self.use_ssl:
            return imaplib.IMAP4_SSL(self.host, self.port, timeout=timeout)
        return imaplib.IMAP4(self.host, self.port, timeout=timeout)

    def _ensure_connection(self) -> Any:
        if self._conn is not None:
            return self._conn
        logger.info("Connecting to IMAP server %s:%s as %s", self.host, self.port, self.username)
        conn = self._connection_factory()
        if not self.use_ssl:
            try:
                status, _ = conn.starttls(ssl_context=ssl.create_default_context())
            except (imaplib.IMAP4.error, ssl.SSLError) as exc:
                raise ProviderRequestError(
                    "IMAP server requires a secure connection; STARTTLS negotiation failed"
                ) from exc
            if status != "OK":
                raise ProviderRequestError("IMAP server requires a secure connection; STARTTLS negotiation failed")
        try:
            status, _ = conn.login(self.username, self.credentials.password)
        except imaplib.IMAP4.abort:
            raise
        except imaplib.IMAP4.error as exc:
            raise ProviderAuthError(f"IMAP login failed for {self.username}: {exc}") from exc
        if status != "OK":
            raise ProviderAuthError(f"IMAP login failed for {self.username}: status={status}")
        self._conn = conn
        self._selected = None
        return conn

    def _drop_connection(self) -> None:
        conn, self._conn, self._selected = self._conn, None, None
        if conn is None:
            return
        try:
            conn.logout()
        except (imaplib.IMAP4.error, OSError) as exc:
            logger.debug("Error during IMAP logout: %s", exc)

    async def _run(self, description: str, func: Callable[[], T]) -> T:
        """Run a blocking IMAP operation in a thread, with retry."""

        async def attempt() -> T:
            try:
                return await asyncio.to_thread(func)
            except (imaplib.IMAP4.abort, OSError) as exc:
                await asyncio.to_thread(self._drop_connection)
                raise TransientProviderError(f"IMAP {description} failed: {exc}") from exc
            except imaplib.IMAP4.error as exc:
                raise ProviderRequestError(f"IMAP {description} failed: {exc}") from exc

        return await with_retry(attempt, self.retry_policy, description=f"IMAP {description}")

    async def close(self) -> None:
        if self._conn is not None:
            await asyncio.to_thread(self._drop_connection)

    # ------------------------------------------------------------------
    def _list_folders(self) -> List[TaxonomyEntry]:
        conn = self._ensure_connection()
        status, lines = conn.list()
        if status != "OK":
            raise ProviderRequestError(f"IMAP LIST failed: status={status}")
        entries: List[TaxonomyEntry] = []
        self._noselect = set()
        for line in lines or []:
            parsed = parse_list_response(line)
            if parsed is None:
                continue
            name, delimiter, flags = parsed
            self._delimiters[name] = delimiter
            if "\\noselect" in flags or "\\nonexistent" in flags:
                self._noselect.add(name)
            parent_id = None
            leaf = name
            if delimiter and delimiter in name:
                parent_id, leaf = name.rsplit(delimiter, 1)
            role = next((_SPECIAL_USE_ROLES[f] for f in flags if f in _SPECIAL_USE_ROLES), None)
            if name.upper() == "INBOX":
                role = "inbox"
            entries.append(TaxonomyEntry(id=name, name=leaf, parent_id=parent_id, role=role))
        return entries

    def _select(self, folder: str) -> int:
        """Select ``folder`` read-only and return its UIDVALIDITY."""
        conn = self._ensure_connection()
        status, _ = conn.select(_quote(folder), readonly=True)
        if status != "OK":
            raise ProviderRequestError(f"IMAP SELECT failed for {folder}: status={status}")
        self._selected = folder
        _, data = conn.response("UIDVALIDITY")
        try:
            return int(data[0])
        except (TypeError, ValueError, IndexError) as exc:
            raise ProviderRequestError(f"IMAP server reported no UIDVALIDITY for {folder}") from exc

    def _search(self, folder: str, last_uid: int) -> List[int]:
        conn = self._ensure_connection()
        if self._selected != folder:
            self._select(folder)
        criteria = f"UID {last_uid + 1}:*" if last_uid else "ALL"
        status, data = conn.uid("SEARCH", None, criteria)
        if status != "OK":
            raise ProviderRequestError(f"IMAP UID SEARCH failed in {folder}: status={status}")
        uids = sorted({int(uid) for uid in (data[0] or b"").split()})
        # "n:*" always matches the highest UID, even when it is below n.
        return [uid for uid in uids if uid > last_uid]

    def _fetch_raw(self, folder: str, uid: int) -> bytes:
        conn = self._ensure_connection()
        if self._selected != folder:
            self._select(folder)
        status, data = conn.uid("FETCH", str(uid), "(RFC822)")
        if status != "OK":
            raise ProviderRequestError(f"IMAP UID FETCH {uid} failed in {folder}: status={status}")
        for item in data or []:
            if isinstance(item, tuple) and len(item) > 1 and item[1]:
                return item[1]
        raise ItemGoneError(f"IMAP message {uid} no longer exists in {folder}")

    # ------------------------------------------------------------------
    async def test_connection(self) -> bool:
        """Log in and issue NOOP."""

        def noop() -> bool:
            status, _ = self._ensure_connection().noop()
            return status == "OK"

        ok = await self._run("NOOP", noop)
        if ok:
            logger.info("IMAP connection test successful for %s on %s", self.username, self.host)
        return ok

    async def list_all_users(self) -> AsyncIterator[MailboxUser]:
        yield MailboxUser(id=self.username, primary_email=self.username, display_name=self.username)

    async def _load_folders(self) -> None:
        if len(self.taxonomy):
            return
        self.taxonomy.add_all(await self._run("LIST", self._list_folders))

    def _folders_to_sync(self) -> List[str]:
        wanted = self.credentials.mailboxes or ["INBOX"]
        if ALL_MAILBOXES in wanted:
            excluded = set()
            if not self.config.ALL_INCLUSIVE_ARCHIVE:
                excluded = set(self.taxonomy.ids_with_roles(("trash", "junk")))
            return [
                entry.id for entry in self.taxonomy
                if entry.id not in self._noselect and entry.id not in excluded
            ]
        return list(wanted)

    def _folder_path(self, folder: str) -> str:
        if folder in self.taxonomy:
            return self.taxonomy.resolve_path(folder)
        return folder

    @staticmethod
    def _start_uid(cursor: Any, uid_validity: int) -> int:
        if not isinstance(cursor, dict):
            return 0
        if int(cursor.get("uidValidity", -1)) != uid_validity:
            raise StateInvalidatedError(
                f"UIDVALIDITY changed from {cursor.get('uidValidity')} to {uid_validity}"
            )
        return int(cursor.get("lastUid", 0))

    async def fetch_emails(self, sync_state: Optional[SyncState] = None) -> AsyncIterator[EmailObject]:
        """Fetch messages with UIDs above each folder's stored ``lastUid``."""
        self._begin_cycle()
        prior = get_account_state(sync_state, self.provider, self.username) or {}
        cursors: Dict[str, Dict[str, int]] = {}

        await self._load_folders()
        for folder in self._folders_to_sync():
            uid_validity = await self._run(f"SELECT {folder}", lambda: self._select(folder))
            try:
                last_uid = self._start_uid(prior.get(folder), uid_validity)
            except StateInvalidatedError as exc:
                logger.info("IMAP folder %s for %s: %s, re-importing folder", folder, self.username, exc)
                self.status_message = f"UIDVALIDITY changed for {folder}; re-imported folder."
                last_uid = 0
            if not last_uid:
                logger.info("Full import of IMAP folder %s for %s", folder, self.username)

            uids = await self._run(f"UID SEARCH {folder}", lambda: self._search(folder, last_uid))
            path = self._folder_path(folder)
            max_uid = last_uid
            for uid in uids:
                message_id = f"{folder}:{uid_validity}:{uid}"
                email = await self._guarded(message_id, self._fetch_message(folder, uid, message_id, path))
                if email is not None:
                    yield email
                max_uid = max(max_uid, uid)
            cursors[folder] = {"uidValidity": uid_validity, "lastUid": max_uid}

        logger.info("Fetched IMAP folders %s for %s", ", ".join(cursors) or "(none)", self.username)
        state = build_state(self.provider, self.username, cursors, self.status_message) if cursors else {}
        self._complete_cycle(state)

    async def _fetch_message(self, folder: str, uid: int, message_id: str, path: str) -> EmailObject:
        raw = await self._run(f"UID FETCH {uid}", lambda: self._fetch_raw(folder, uid))
        return normalize_message(
            raw,
            message_id=message_id,
            user_email=self.username,
            path=path,
            tags=(path,) if path else (),
        )
