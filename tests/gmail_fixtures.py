"""In-memory stand-in for the ``googleapiclient`` Gmail resource chain."""

from __future__ import annotations

import base64
import json
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple

import httplib2
import pytest
from googleapiclient.errors import HttpError


def make_raw_email(
    message_id: str,
    subject: str = "Hello",
    *,
    in_reply_to: Optional[str] = None,
    references: Optional[str] = None,
    body: str = "Hi Bob",
) -> bytes:
    headers = [
        f"Subject: {subject}",
        "From: Alice <alice@example.com>",
        "To: Bob <bob@example.com>",
        "Date: Mon, 01 Jan 2024 00:00:00 +0000",
        f"Message-ID: <{message_id}@example.com>",
    ]
    if in_reply_to:
        headers.append(f"In-Reply-To: {in_reply_to}")
    if references:
        headers.append(f"References: {references}")
    headers += ["MIME-Version: 1.0", "Content-Type: text/plain; charset=utf-8"]
    return ("\r\n".join(headers) + "\r\n\r\n" + body + "\r\n").encode("utf-8")


def http_error(status: int, reason: str = "") -> HttpError:
    content = json.dumps(
        {"error": {"code": status, "message": reason or "error", "errors": [{"reason": reason}]}}
    ).encode("utf-8")
    return HttpError(httplib2.Response({"status": status}), content)


class _Request:
    def __init__(self, service: "FakeGmailService", method: str, handler: Callable[[], Dict[str, Any]]):
        self._service = service
        self._method = method
        self._handler = handler

    def execute(self) -> Dict[str, Any]:
        self._service.calls.append(self._method)
        pending = self._service.failures[self._method]
        if pending:
            raise pending.pop(0)
        return self._handler()


class _Messages:
    def __init__(self, service: "FakeGmailService"):
        self._service = service

    def list(self, userId: str, pageToken: Optional[str] = None, maxResults: int = 500, **_: Any) -> _Request:
        return _Request(self._service, "messages.list", lambda: self._service._list(pageToken))

    def get(self, userId: str, id: str, format: str = "full") -> _Request:
        return _Request(self._service, "messages.get", lambda: self._service._get(id))


class _History:
    def __init__(self, service: "FakeGmailService"):
        self._service = service

    def list(self, userId: str, startHistoryId: str, pageToken: Optional[str] = None,
             historyTypes: Optional[List[str]] = None) -> _Request:
        return _Request(self._service, "history.list", lambda: self._service._history(startHistoryId, pageToken))


class _Labels:
    def __init__(self, service: "FakeGmailService"):
        self._service = service

    def get(self, userId: str, id: str) -> _Request:
        return _Request(self._service, "labels.get", lambda: self._service._label(id))


class FakeGmailService:
    """Mailbox whose messages, history and labels live in memory.

    ``messages.list`` returns newest first, like Gmail. Every added message
    bumps the history id by one.
    """

    def __init__(self, email: str = "a@example.com", page_size: int = 10) -> None:
        self.email = email
        self.page_size = page_size
        self.history_id = 0
        self.oldest_history_id = 0
        self.mail: Dict[str, Dict[str, Any]] = {}
        self.order: List[str] = []
        self.history_log: List[Tuple[int, str]] = []
        self.label_defs: Dict[str, Dict[str, str]] = {
            "INBOX": {"id": "INBOX", "name": "INBOX", "type": "system"},
        }
        self.failures: Dict[str, List[Exception]] = defaultdict(list)
        self.calls: List[str] = []
        self.on_list_page: Optional[Callable[[int], None]] = None

    # -- test helpers --------------------------------------------------
    def add_message(self, message_id: str, raw: Optional[bytes] = None, *,
                    thread_id: Optional[str] = None, label_ids: Tuple[str, ...] = ("INBOX",)) -> None:
        self.history_id += 1
        raw = raw if raw is not None else make_raw_email(message_id)
        self.mail[message_id] = {
            "id": message_id,
            "threadId": thread_id or f"t-{message_id}",
            "labelIds": list(label_ids),
            "internalDate": "1704067200000",
            "raw": base64.urlsafe_b64encode(raw).decode("ascii"),
        }
        self.order.append(message_id)
        self.history_log.append((self.history_id, message_id))

    def fail_next(self, method: str, exc: Exception, times: int = 1) -> None:
        self.failures[method].extend([exc] * times)

    def count(self, method: str) -> int:
        return self.calls.count(method)

    # -- resource chain ------------------------------------------------
    def users(self) -> "FakeGmailService":
        return self

    def messages(self) -> _Messages:
        return _Messages(self)

    def history(self) -> _History:
        return _History(self)

    def labels(self) -> _Labels:
        return _Labels(self)

    def getProfile(self, userId: str) -> _Request:
        return _Request(self, "users.getProfile",
                        lambda: {"emailAddress": self.email, "historyId": str(self.history_id)})

    # -- handlers ------------------------------------------------------
    def _list(self, page_token: Optional[str]) -> Dict[str, Any]:
        offset = int(page_token or 0)
        newest_first = list(reversed(self.order))
        page = newest_first[offset:offset + self.page_size]
        response: Dict[str, Any] = {"messages": [{"id": m, "threadId": self.mail[m]["threadId"]} for m in page]}
        if offset + self.page_size < len(newest_first):
            response["nextPageToken"] = str(offset + self.page_size)
        if self.on_list_page is not None:
            self.on_list_page(offset // self.page_size)
        return response

    def _get(self, message_id: str) -> Dict[str, Any]:
        if message_id not in self.mail:
            raise http_error(404, "notFound")
        return dict(self.mail[message_id])

    def _history(self, start: str, page_token: Optional[str]) -> Dict[str, Any]:
        if int(start) < self.oldest_history_id:
            raise http_error(404, "notFound")
        records = [
            {"id": str(h), "messagesAdded": [{"message": {"id": m}}]}
            for h, m in self.history_log if h > int(start)
        ]
        response: Dict[str, Any] = {"historyId": str(self.history_id)}
        if records:
            response["history"] = records
        return response

    def _label(self, label_id: str) -> Dict[str, Any]:
        if label_id not in self.label_defs:
            raise http_error(404, "notFound")
        return dict(self.label_defs[label_id])


@pytest.fixture
def gmail_service() -> FakeGmailService:
    """Fake Gmail mailbox for ``a@example.com``."""
    return FakeGmailService()
