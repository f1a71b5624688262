"""JMAP email connector implementation.

This module provides the :class:`JMAPConnector` for any server speaking
RFC 8620/8621. Change tracking uses the opaque ``Email`` state string. A full
import pages through ``Email/query`` and then replays ``Email/changes`` from
the state seen on the first page, which yields the cursor; later cycles call
``Email/changes`` from the stored state. A server answering
``cannotCalculateChanges`` turns the cycle into a full import.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Set
from urllib.parse import quote

import httpx

from ..core.config import Config
from ..core.credentials import JMAPCredentials
from ..core.exceptions import (
    AuthConfigurationError,
    ProviderError,
    ProviderRequestError,
    RetriesExhaustedError,
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

CORE_CAPABILITY = "urn:ietf:params:jmap:core"
MAIL_CAPABILITY = "urn:ietf:params:jmap:mail"
USING = [CORE_CAPABILITY, MAIL_CAPABILITY]

EMAIL_PROPERTIES = ["id", "blobId", "threadId", "mailboxIds", "receivedAt", "subject"]
MAILBOX_PROPERTIES = ["id", "name", "parentId", "role"]
EXCLUDED_ROLES = ("trash", "junk")

# Method-level error types that a later attempt may not hit.
TRANSIENT_METHOD_ERRORS = frozenset({"serverUnavailable"})


def _parse_received_at(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class JMAPConnector(EmailConnector):
    """Retrieve emails from a JMAP server over HTTP."""

    provider = "jmap"

    def __init__(
        self,
        credentials: JMAPCredentials,
        config: Optional[Config] = None,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__()
        if not credentials.session_url:
            raise AuthConfigurationError("JMAP credentials must include a session URL.")
        if credentials.auth_method == "bearer":
            if not credentials.bearer_token:
                raise AuthConfigurationError("Bearer token is required for bearer authentication.")
        elif credentials.auth_method == "basic":
            if not credentials.username or not credentials.password:
                raise AuthConfigurationError("Username and password are required for basic authentication.")
        else:
            raise AuthConfigurationError(f"Unsupported JMAP auth method: {credentials.auth_method!r}")

        self.credentials = credentials
        self.config = config or Config()
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._session: Optional[Dict[str, Any]] = None
        self.account_id: Optional[str] = None
        self._pending_state: Optional[str] = None

    @property
    def user_email(self) -> str:
        if self._session and self._session.get("username"):
            return self._session["username"]
        return self.credentials.username or ""

    # ------------------------------------------------------------------
    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "application/json"}
            auth: Optional[httpx.Auth] = None
            if self.credentials.auth_method == "bearer":
                headers["Authorization"] = f"Bearer {self.credentials.bearer_token}"
            else:
                auth = httpx.BasicAuth(self.credentials.username or "", self.credentials.password or "")
            self._client = httpx.AsyncClient(
                headers=headers,
                auth=auth,
                timeout=httpx.Timeout(self.config.JMAP_HTTP_TIMEOUT_SECONDS),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue one HTTP request and translate failures into the error taxonomy."""
        try:
            response = await self._get_client().request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"JMAP request to {url} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(f"JMAP transport error for {url}: {exc}") from exc
        except httpx.RequestError as exc:
            raise ProviderRequestError(f"JMAP request to {url} failed: {exc}") from exc
        if response.is_error:
            raise classify_status(
                response.status_code,
                f"JMAP {method} {url} returned {response.status_code}: {response.reason_phrase}",
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderRequestError(f"Malformed JMAP response from {response.url}") from exc
        if not isinstance(payload, dict):
            raise ProviderRequestError(f"Unexpected JMAP response from {response.url}")
        return payload

    # ------------------------------------------------------------------
    async def _fetch_session(self) -> Dict[str, Any]:
        """Fetch and cache the JMAP session resource.

        A bare server URL is first tried with ``/.well-known/jmap`` and then
        used as the session URL itself.
        """
        if self._session is not None:
            return self._session

        url = self.credentials.session_url
        if "/.well-known/jmap" not in url and "/session" not in url:
            well_known = url.rstrip("/") + "/.well-known/jmap"
            try:
                response = await with_retry(
                    lambda: self._send("GET", well_known),
                    self.retry_policy,
                    description="JMAP session discovery",
                )
                self._session = self._json(response)
                return self._session
            except (ProviderError, RetriesExhaustedError) as exc:
                logger.debug("JMAP well-known discovery at %s failed, using %s: %s", well_known, url, exc)

        response = await with_retry(
            lambda: self._send("GET", url), self.retry_policy, description="JMAP session fetch"
        )
        self._session = self._json(response)
        return self._session

    async def _get_account_id(self) -> str:
        if self.account_id:
            return self.account_id
        session = await self._fetch_session()
        primary = (session.get("primaryAccounts") or {}).get(MAIL_CAPABILITY)
        if primary:
            self.account_id = primary
            return primary
        for account_id, account in (session.get("accounts") or {}).items():
            if MAIL_CAPABILITY in ((account or {}).get("accountCapabilities") or {}):
                self.account_id = account_id
                return account_id
        raise ProviderRequestError("No JMAP account with mail capability found")

    def _method_result(self, responses: List[Any], index: int) -> Dict[str, Any]:
        try:
            name, args, _call_id = responses[index]
        except (IndexError, TypeError, ValueError) as exc:
            raise ProviderRequestError(f"JMAP response is missing method result {index}") from exc
        if name == "error":
            error_type = (args or {}).get("type", "unknown")
            if error_type == "cannotCalculateChanges":
                raise StateInvalidatedError("JMAP server cannot calculate changes from the stored state")
            if error_type in TRANSIENT_METHOD_ERRORS:
                raise TransientProviderError(f"JMAP method error: {error_type}")
            raise ProviderRequestError(f"JMAP method error: {error_type}")
        return args or {}

    async def _call(self, method_calls: List[List[Any]], description: str) -> List[Dict[str, Any]]:
        """POST ``method_calls`` to the API URL and return each method's arguments."""

        async def attempt() -> List[Dict[str, Any]]:
            session = await self._fetch_session()
            api_url = session.get("apiUrl")
            if not api_url:
                raise ProviderRequestError("JMAP session does not advertise an apiUrl")
            response = await self._send("POST", api_url, json={"using": USING, "methodCalls": method_calls})
            responses = self._json(response).get("methodResponses")
            if not isinstance(responses, list):
                raise ProviderRequestError("JMAP response has no methodResponses")
            return [self._method_result(responses, i) for i in range(len(method_calls))]

        return await with_retry(attempt, self.retry_policy, description=f"JMAP {description}")

    async def _download_blob(self, blob_id: str, account_id: str) -> bytes:
        session = await self._fetch_session()
        template = session.get("downloadUrl")
        if not template:
            raise ProviderRequestError("JMAP session does not advertise a downloadUrl")
        url = (
            template.replace("{accountId}", quote(account_id, safe=""))
            .replace("{blobId}", quote(blob_id, safe=""))
            .replace("{name}", "email.eml")
            .replace("{type}", quote("message/rfc822", safe=""))
        )
        response = await with_retry(
            lambda: self._send("GET", url), self.retry_policy, description="JMAP blob download"
        )
        return response.content

    async def _load_mailboxes(self, account_id: str) -> None:
        if len(self.taxonomy):
            return
        (result,) = await self._call(
            [["Mailbox/get", {"accountId": account_id, "properties": MAILBOX_PROPERTIES}, "mailboxes"]],
            "Mailbox/get",
        )
        self.taxonomy.add_all(
            TaxonomyEntry(
                id=mailbox["id"],
                name=mailbox.get("name") or "",
                parent_id=mailbox.get("parentId"),
                role=mailbox.get("role"),
            )
            for mailbox in result.get("list") or []
            if mailbox.get("id")
        )

    # ------------------------------------------------------------------
    async def test_connection(self) -> bool:
        """Fetch the session and resolve the mail account."""
        account_id = await self._get_account_id()
        logger.info("JMAP connection test successful for account %s", account_id)
        return True

    async def list_all_users(self) -> AsyncIterator[MailboxUser]:
        session = await self._fetch_session()
        account_id = await self._get_account_id()
        account = (session.get("accounts") or {}).get(account_id) or {}
        yield MailboxUser(
            id=account_id,
            primary_email=self.user_email,
            display_name=account.get("name") or self.user_email,
        )

    # ------------------------------------------------------------------
    async def fetch_emails(self, sync_state: Optional[SyncState] = None) -> AsyncIterator[EmailObject]:
        """Fetch emails created or updated since the stored ``emailState``."""
        self._begin_cycle()
        self._pending_state = None
        seen: Set[str] = set()

        account_id = await self._get_account_id()
        await self._load_mailboxes(account_id)

        since_state = get_cursor(sync_state, self.provider, account_id, "emailState")
        if since_state is None:
            logger.info("No JMAP sync state for account %s, performing full import", account_id)
            async for email in self._fetch_all(account_id, seen):
                yield email
        else:
            try:
                async for email in self._fetch_changes(account_id, str(since_state), seen):
                    yield email
            except StateInvalidatedError:
                logger.info("JMAP state for account %s is too old, performing full re-sync", account_id)
                self.status_message = "JMAP sync state expired; performed full re-sync."
                async for email in self._fetch_all(account_id, seen):
                    yield email

        state: SyncState = {}
        if self._pending_state:
            state = build_state(
                self.provider, account_id, {"emailState": self._pending_state}, self.status_message
            )
        self._complete_cycle(state)

    def _query_args(self, account_id: str, position: int) -> Dict[str, Any]:
        args: Dict[str, Any] = {
            "accountId": account_id,
            "sort": [{"property": "receivedAt", "isAscending": False}],
            "position": position,
            "limit": self.config.JMAP_BATCH_SIZE,
        }
        if not self.config.ALL_INCLUSIVE_ARCHIVE:
            excluded = self.taxonomy.ids_with_roles(EXCLUDED_ROLES)
            if excluded:
                args["filter"] = {"inMailboxOtherThan": excluded}
        return args

    async def _fetch_all(self, account_id: str, seen: Set[str]) -> AsyncIterator[EmailObject]:
        position = 0
        scan_state: Optional[str] = None
        while True:
            query, result = await self._call(
                [
                    ["Email/query", self._query_args(account_id, position), "query"],
                    [
                        "Email/get",
                        {
                            "accountId": account_id,
                            "#ids": {"resultOf": "query", "name": "Email/query", "path": "/ids"},
                            "properties": EMAIL_PROPERTIES,
                        },
                        "emails",
                    ],
                ],
                "Email/query",
            )
            if scan_state is None:
                scan_state = result.get("state")
            async for email in self._emit(result.get("list") or [], account_id, seen):
                yield email
            ids = query.get("ids") or []
            position += len(ids)
            if len(ids) < self.config.JMAP_BATCH_SIZE:
                break

        # Catch up on emails created while paging; the cursor comes from that
        # call, so it is read only after enumeration completes.
        if scan_state:
            try:
                async for email in self._fetch_changes(account_id, scan_state, seen):
                    yield email
                return
            except StateInvalidatedError:
                logger.debug("JMAP changes since %s unavailable after full scan", scan_state)

        (current,) = await self._call(
            [["Email/get", {"accountId": account_id, "ids": [], "properties": ["id"]}, "state"]],
            "Email/get state",
        )
        if current.get("state"):
            self._pending_state = current["state"]

    async def _fetch_changes(self, account_id: str, since_state: str, seen: Set[str]) -> AsyncIterator[EmailObject]:
        self._pending_state = since_state
        while True:
            (changes,) = await self._call(
                [["Email/changes", {"accountId": account_id, "sinceState": since_state}, "changes"]],
                "Email/changes",
            )
            changed = [i for i in (changes.get("created") or []) + (changes.get("updated") or []) if i not in seen]
            batch = self.config.JMAP_BATCH_SIZE
            for start in range(0, len(changed), batch):
                (result,) = await self._call(
                    [
                        [
                            "Email/get",
                            {"accountId": account_id, "ids": changed[start:start + batch], "properties": EMAIL_PROPERTIES},
                            "emails",
                        ]
                    ],
                    "Email/get",
                )
                async for email in self._emit(result.get("list") or [], account_id, seen):
                    yield email

            new_state = changes.get("newState")
            if new_state:
                self._pending_state = new_state
            if not changes.get("hasMoreChanges") or not new_state or new_state == since_state:
                break
            since_state = new_state

    async def _emit(self, emails: List[Dict[str, Any]], account_id: str, seen: Set[str]) -> AsyncIterator[EmailObject]:
        for email in emails:
            email_id = email.get("id")
            if not email_id or email_id in seen:
                continue
            seen.add(email_id)
            if self._only_in_excluded_mailboxes(email):
                logger.debug("Skipping JMAP email %s filed only in trash or junk", email_id)
                continue
            parsed = await self._guarded(email_id, self._fetch_email(email, account_id))
            if parsed is not None:
                yield parsed

    def _only_in_excluded_mailboxes(self, email: Dict[str, Any]) -> bool:
        if self.config.ALL_INCLUSIVE_ARCHIVE:
            return False
        mailbox_ids = list(email.get("mailboxIds") or {})
        excluded = set(self.taxonomy.ids_with_roles(EXCLUDED_ROLES))
        return bool(mailbox_ids) and all(mid in excluded for mid in mailbox_ids)

    async def _fetch_email(self, email: Dict[str, Any], account_id: str) -> EmailObject:
        raw = await self._download_blob(email["blobId"], account_id) if email.get("blobId") else b""
        paths = [
            path
            for path in (self.taxonomy.resolve_path(mid) for mid in (email.get("mailboxIds") or {}))
            if path
        ]
        return normalize_message(
            raw,
            message_id=email["id"],
            user_email=self.user_email,
            native_thread_id=email.get("threadId"),
            path=paths[0] if paths else "",
            tags=paths,
            fallback_received_at=_parse_received_at(email.get("receivedAt")),
            fallback_subject=email.get("subject") or "",
        )
