"""Gmail API email connector implementation.

This module provides the :class:`GmailConnector` for personal Gmail accounts
authorized through the OAuth user-consent flow. Change tracking uses Gmail
history ids. A full import notes the profile ``historyId``, lists every
message, then replays history from the noted id so messages that arrived
during the scan are not lost; the cursor is the ``historyId`` reported by
that replay. Later cycles replay ``messageAdded`` records from the cursor.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set, Tuple

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..core.config import Config
from ..core.credentials import GmailCredentials
from ..core.exceptions import (
    AuthConfigurationError,
    ItemGoneError,
    NormalizationError,
    ProviderAuthError,
    ProviderError,
    StateInvalidatedError,
    TransientProviderError,
    classify_status,
)
from ..core.models import EmailObject, MailboxUser
from ..core.sync_state import SyncState, build_state, get_cursor
from ..utils.retry import RetryPolicy, with_retry
from .base import EmailConnector
from .normalizer import normalize_message
from .taxonomy import TaxonomyEntry

logger = logging.getLogger(__name__)

GMAIL_SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/userinfo.email",
]


def _google_error_reason(content: Any) -> Optional[str]:
    """Extract the first ``reason`` from a Google API error body."""
    try:
        payload = json.loads(content.decode("utf-8") if isinstance(content, bytes) else content)
    except (TypeError, ValueError, UnicodeDecodeError):
        return None
    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return None
    for item in error.get("errors") or []:
        if isinstance(item, dict) and item.get("reason"):
            return item["reason"]
    return error.get("status")


def translate_google_error(exc: HttpError) -> ProviderError:
    """Classify a ``googleapiclient`` error into the sync error taxonomy."""
    status = int(getattr(exc.resp, "status", 0) or 0)
    return classify_status(status, f"Gmail API error {status}: {exc}", _google_error_reason(exc.content))


class GmailConnector(EmailConnector):
    """Retrieve emails from one Gmail mailbox using the Gmail API."""

    provider = "gmail"

    def __init__(
        self,
        credentials: GmailCredentials,
        config: Optional[Config] = None,
        *,
        service: Any = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        super().__init__()
        if not credentials.refresh_token:
            raise AuthConfigurationError("Gmail credentials must include a refresh token.")
        self.credentials = credentials
        self.config = config or Config()
        self.user_email = credentials.user_email
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)
        self._service = service
        self._pending_history_id: Optional[str] = None

    # ------------------------------------------------------------------
    def _get_service(self) -> Any:
        if self._service is None:
            creds = Credentials(
                token=None,
                refresh_token=self.credentials.refresh_token,
                token_uri=self.config.GOOGLE_OAUTH_TOKEN_URI,
                client_id=self.config.GOOGLE_OAUTH_CLIENT_ID,
                client_secret=self.config.GOOGLE_OAUTH_CLIENT_SECRET,
                scopes=GMAIL_SCOPES,
            )
            self._service = build("gmail", "v1", credentials=creds, cache_discovery=False)
        return self._service

    async def _call(self, description: str, make_request: Callable[[Any], Any]) -> Dict[str, Any]:
        """Execute a Gmail API request off the event loop, with retry."""

        def execute() -> Dict[str, Any]:
            return make_request(self._get_service()).execute()

        async def attempt() -> Dict[str, Any]:
            try:
                return await asyncio.to_thread(execute)
            except HttpError as exc:
                raise translate_google_error(exc) from exc
            except RefreshError as exc:
                raise ProviderAuthError(f"Gmail token refresh failed: {exc}") from exc
            except (TransportError, httplib2.HttpLib2Error, OSError) as exc:
                raise TransientProviderError(f"Gmail {description} failed: {exc}") from exc

        return await with_retry(attempt, self.retry_policy, description=f"Gmail {description}")

    # ------------------------------------------------------------------
    async def test_connection(self) -> bool:
        """Test the connection by fetching the user's profile."""
        profile = await self._call("users.getProfile", lambda s: s.users().getProfile(userId="me"))
        if profile.get("emailAddress"):
            logger.info("Gmail OAuth connection test successful for %s", profile["emailAddress"])
            return True
        return False

    async def list_all_users(self) -> AsyncIterator[MailboxUser]:
        """Yield the single authenticated user."""
        profile = await self._call("users.getProfile", lambda s: s.users().getProfile(userId="me"))
        email = profile.get("emailAddress")
        if email:
            yield MailboxUser(id=email, primary_email=email, display_name=email)

    # ------------------------------------------------------------------
    async def fetch_emails(self, sync_state: Optional[SyncState] = None) -> AsyncIterator[EmailObject]:
        """Fetch messages for the authenticated user.

        Without a ``historyId`` for this account every message is imported.
        With one, only ``messageAdded`` history since that id is replayed; if
        Gmail no longer holds that history the cycle becomes a full import.
        """
        self._begin_cycle()
        self._pending_history_id = None
        seen: Set[str] = set()

        start_history_id = get_cursor(sync_state, self.provider, self.user_email, "historyId")
        if start_history_id is None:
            logger.info("No Gmail sync state for %s, performing full import", self.user_email)
            async for email in self._fetch_all_messages(seen):
                yield email
        else:
            try:
                async for email in self._fetch_history(str(start_history_id), seen):
                    yield email
            except StateInvalidatedError as exc:
                logger.info("Gmail history for %s is no longer available (%s), performing full re-sync",
                            self.user_email, exc)
                self.status_message = "Gmail history cursor expired; performed full re-sync."
                async for email in self._fetch_all_messages(seen):
                    yield email

        state: SyncState = {}
        if self._pending_history_id:
            state = build_state(
                self.provider,
                self.user_email,
                {"historyId": self._pending_history_id},
                self.status_message,
            )
        self._complete_cycle(state)

    async def _fetch_history(self, start_history_id: str, seen: Set[str]) -> AsyncIterator[EmailObject]:
        self._pending_history_id = start_history_id
        page_token: Optional[str] = None
        while True:
            try:
                response = await self._call(
                    "history.list",
                    lambda s: s.users().history().list(
                        userId="me",
                        startHistoryId=start_history_id,
                        pageToken=page_token,
                        historyTypes=["messageAdded"],
                    ),
                )
            except ItemGoneError as exc:
                # Gmail answers 404 when startHistoryId is older than its retained history.
                raise StateInvalidatedError(
                    f"startHistoryId {start_history_id} is no longer valid", exc.status_code
                ) from exc

            for record in response.get("history") or []:
                for added in record.get("messagesAdded") or []:
                    message_id = (added.get("message") or {}).get("id")
                    if not message_id or message_id in seen:
                        continue
                    seen.add(message_id)
                    email = await self._guarded(message_id, self._fetch_single_message(message_id))
                    if email is not None:
                        yield email

            if response.get("historyId"):
                self._pending_history_id = str(response["historyId"])
            page_token = response.get("nextPageToken")
            if not page_token:
                break

    async def _fetch_all_messages(self, seen: Set[str]) -> AsyncIterator[EmailObject]:
        profile = await self._call("users.getProfile", lambda s: s.users().getProfile(userId="me"))
        scan_start = profile.get("historyId")

        page_token: Optional[str] = None
        while True:
            response = await self._call(
                "messages.list",
                lambda s: s.users().messages().list(
                    userId="me", pageToken=page_token, maxResults=self.config.GMAIL_PAGE_SIZE
                ),
            )
            for meta in response.get("messages") or []:
                message_id = meta.get("id")
                if not message_id or message_id in seen:
                    continue
                seen.add(message_id)
                email = await self._guarded(message_id, self._fetch_single_message(message_id))
                if email is not None:
                    yield email
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        # Replay what arrived while listing; the cursor comes from that replay,
        # so it is read only after enumeration completes.
        if scan_start:
            try:
                async for email in self._fetch_history(str(scan_start), seen):
                    yield email
                return
            except StateInvalidatedError:
                logger.debug("History since %s unavailable after full scan of %s", scan_start, self.user_email)

        profile = await self._call("users.getProfile", lambda s: s.users().getProfile(userId="me"))
        if profile.get("historyId"):
            self._pending_history_id = str(profile["historyId"])

    async def _fetch_single_message(self, message_id: str) -> EmailObject:
        response = await self._call(
            "messages.get",
            lambda s: s.users().messages().get(userId="me", id=message_id, format="raw"),
        )
        raw_b64 = response.get("raw")
        if not raw_b64:
            raise NormalizationError(f"Gmail message {message_id} has no raw content")
        try:
            raw = base64.urlsafe_b64decode(raw_b64 + "=" * (-len(raw_b64) % 4))
        except (ValueError, TypeError) as exc:
            raise NormalizationError(f"Gmail message {message_id} has invalid raw content") from exc

        path, tags = await self._get_label_details(response.get("labelIds") or [])
        received_at = None
        if response.get("internalDate"):
            received_at = datetime.fromtimestamp(int(response["internalDate"]) / 1000, timezone.utc)

        return normalize_message(
            raw,
            message_id=response.get("id") or message_id,
            user_email=self.user_email,
            native_thread_id=response.get("threadId"),
            path=path,
            tags=tags,
            fallback_received_at=received_at,
        )

    async def _load_label(self, label_id: str) -> TaxonomyEntry:
        try:
            label = await self._call(
                "labels.get", lambda s: s.users().labels().get(userId="me", id=label_id)
            )
        except ItemGoneError:
            logger.debug("Gmail label %s no longer exists", label_id)
            return TaxonomyEntry(id=label_id, name="")
        return TaxonomyEntry(id=label_id, name=label.get("name") or "", kind=label.get("type"))

    async def _get_label_details(self, label_ids: List[str]) -> Tuple[str, List[str]]:
        """Resolve label ids to a folder path and tag list.

        Every named label becomes a tag; user-type labels are also joined
        into the folder path.
        """
        tags: List[str] = []
        path = ""
        for label_id in label_ids:
            label = await self.taxonomy.get_or_load(label_id, self._load_label)
            if not label.name:
                continue
            tags.append(label.name)
            if label.kind == "user":
                path = f"{path}/{label.name}" if path else label.name
        return path, tags
