"""OAuth 2.0 device authorization grant (RFC 8628).

The flow never sleeps. :meth:`DeviceCodeFlow.start` issues the user code and
reports the poll interval, and each :meth:`DeviceCodeFlow.poll` call sends
exactly one token request. The caller owns the timer, whether it is a
scheduler, a UI or a test.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

import httpx
from google.auth import jwt

from ..core.config import Config
from ..core.credentials import GmailCredentials
from ..core.exceptions import (
    AuthConfigurationError,
    AuthorizationDeniedOrExpired,
    AuthorizationFailedError,
    ProviderRequestError,
    TransientProviderError,
    UnknownSourceError,
)
from .session import (
    REVOKE_AND_RETRY,
    AuthorizationSession,
    AuthState,
    FlowKind,
    OnAuthenticated,
    store_authenticated_credentials,
)

logger = logging.getLogger(__name__)

DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
DEFAULT_INTERVAL = 5
SLOW_DOWN_INCREMENT = 5
FINISHED_SESSION_TTL = timedelta(minutes=10)


class PollStatus(str, Enum):
    PENDING = "pending"
    SLOW_DOWN = "slow_down"
    SUCCESS = "success"
    DENIED = "denied"
    EXPIRED = "expired"
    ERROR = "error"


@dataclass
class PollResult:
    """Outcome of one poll.

    Attributes:
        status: What the provider answered
        interval: Seconds the caller should wait before the next poll
        user_email: Resolved identity on success
        error: Provider error code or message on failure
        remediation: Operator instruction for recoverable failures
    """
    status: PollStatus
    interval: int = DEFAULT_INTERVAL
    user_email: Optional[str] = None
    error: Optional[str] = None
    remediation: Optional[str] = None


_TERMINAL_RESULTS = {
    AuthState.DENIED: PollStatus.DENIED,
    AuthState.EXPIRED: PollStatus.EXPIRED,
    AuthState.FAILED: PollStatus.ERROR,
}


class DeviceCodeFlow:
    """Drive device-code authorization for Gmail sources."""

    def __init__(
        self,
        store: Any,
        config: Optional[Config] = None,
        *,
        on_authenticated: Optional[OnAuthenticated] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
        session_ttl: timedelta = FINISHED_SESSION_TTL,
    ) -> None:
        self.store = store
        self.config = config or Config()
        self.on_authenticated = on_authenticated
        self._transport = transport
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.session_ttl = session_ttl
        self._sessions: Dict[str, AuthorizationSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def session(self, source_id: str) -> Optional[AuthorizationSession]:
        return self._sessions.get(source_id)

    # ------------------------------------------------------------------
    async def _post_form(self, url: str, data: Dict[str, str]) -> httpx.Response:
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=30.0) as client:
                response = await client.post(url, data=data, headers={"Accept": "application/json"})
        except httpx.TransportError as exc:
            raise TransientProviderError(f"Request to {url} failed: {exc}") from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientProviderError(f"{url} returned {response.status_code}", response.status_code)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderRequestError(f"Malformed response from {response.url}", response.status_code) from exc
        if not isinstance(payload, dict):
            raise ProviderRequestError(f"Unexpected response from {response.url}", response.status_code)
        return payload

    @staticmethod
    def _email_from_id_token(id_token: Optional[str]) -> Optional[str]:
        """Read the email claim of an ID token received directly from the token endpoint."""
        if not id_token:
            return None
        try:
            claims = jwt.decode(id_token, verify=False)
        except (ValueError, TypeError) as exc:
            logger.debug("Ignoring unreadable ID token: %s", exc)
            return None
        if claims.get("email_verified") is False:
            return None
        return claims.get("email")

    async def _fetch_user_email(self, access_token: str) -> Optional[str]:
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=30.0) as client:
                response = await client.get(
                    self.config.DEVICE_USERINFO_ENDPOINT,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.TransportError as exc:
            raise TransientProviderError(f"Userinfo request failed: {exc}") from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientProviderError(f"Userinfo returned {response.status_code}", response.status_code)
        if response.is_error:
            return None
        return self._json(response).get("email")

    def _prune(self) -> None:
        """Forget terminal sessions once their grace period is over."""
        cutoff = self._clock() - self.session_ttl
        for source_id, session in list(self._sessions.items()):
            if session.finished_at is None or session.finished_at > cutoff:
                continue
            del self._sessions[source_id]
            lock = self._locks.get(source_id)
            if lock is not None and not lock.locked():
                del self._locks[source_id]
            logger.debug("Dropped finished device authorization for source %s", source_id)

    # ------------------------------------------------------------------
    async def start(self, source_id: str) -> AuthorizationSession:
        """Request a device and user code for ``source_id``.

        Raises:
            AuthConfigurationError: If no client id is configured or the provider rejects it
            UnknownSourceError: If the source does not exist
        """
        self._prune()
        if not self.config.GOOGLE_OAUTH_CLIENT_ID:
            raise AuthConfigurationError(
                "Google OAuth is not configured. Please set GOOGLE_OAUTH_CLIENT_ID environment variable."
            )
        if self.store.get(source_id) is None:
            raise UnknownSourceError(f"Ingestion source not found: {source_id}")

        response = await self._post_form(
            self.config.DEVICE_AUTHORIZATION_ENDPOINT,
            {"client_id": self.config.GOOGLE_OAUTH_CLIENT_ID, "scope": " ".join(self.config.DEVICE_SCOPES)},
        )
        payload = self._json(response)
        if response.is_error or not payload.get("device_code"):
            error = payload.get("error_description") or payload.get("error") or str(response.status_code)
            raise AuthConfigurationError(f"Device authorization request rejected: {error}")

        session = AuthorizationSession(
            source_id=source_id,
            flow_kind=FlowKind.DEVICE_CODE,
            state=AuthState.CODE_ISSUED,
            device_code=payload["device_code"],
            user_code=payload.get("user_code"),
            verification_url=payload.get("verification_uri") or payload.get("verification_url"),
            interval=int(payload.get("interval") or DEFAULT_INTERVAL),
            expires_at=self._clock() + timedelta(seconds=int(payload.get("expires_in") or 1800)),
        )
        self._sessions[source_id] = session
        logger.info(
            "Issued device code for source %s, expires at %s", source_id, session.expires_at.isoformat()
        )
        return session


    async def poll(self, source_id: str) -> PollResult:
        """Send one token request for ``source_id`` and report the outcome.

        Polling after success returns the same success without storing the
        credentials or firing the post-auth hook again. Finished sessions are
        answered the same way until ``session_ttl`` has passed, then dropped.

        Raises:
            AuthorizationDeniedOrExpired: If no device authorization was started for the source
            TransientProviderError: If the token or userinfo endpoint could not be reached
        """
        self._prune()
        lock = self._locks.setdefault(source_id, asyncio.Lock())
        async with lock:
            session = self._sessions.get(source_id)
            if session is None:
                raise AuthorizationDeniedOrExpired(
                    f"No device authorization in progress for source {source_id}; restart the flow"
                )
            try:
                return await self._poll_session(session)
            finally:
                if session.is_terminal and session.finished_at is None:
                    session.finished_at = self._clock()

    async def _poll_session(self, session: AuthorizationSession) -> PollResult:
        source_id = session.source_id
        if session.state == AuthState.AUTHENTICATED:
            return PollResult(PollStatus.SUCCESS, session.interval, user_email=session.user_email)
        if session.state in _TERMINAL_RESULTS:
            return PollResult(
                _TERMINAL_RESULTS[session.state], session.interval,
                error=session.error, remediation=session.remediation,
            )
        if session.pending_tokens is not None:
            # the device code is spent; only the identity step is left
            return await self._complete(session, session.pending_tokens)
        if session.expires_at is not None and self._clock() >= session.expires_at:
            session.fail(AuthState.EXPIRED, "expired_token")
            logger.info("Device code for source %s expired", source_id)
            return PollResult(PollStatus.EXPIRED, session.interval, error="expired_token")

        session.state = AuthState.POLLING
        data = {
            "client_id": self.config.GOOGLE_OAUTH_CLIENT_ID or "",
            "device_code": session.device_code or "",
            "grant_type": DEVICE_GRANT_TYPE,
        }
        if self.config.GOOGLE_OAUTH_CLIENT_SECRET:
            data["client_secret"] = self.config.GOOGLE_OAUTH_CLIENT_SECRET
        payload = self._json(await self._post_form(self.config.DEVICE_TOKEN_ENDPOINT, data))

        if payload.get("access_token"):
            return await self._complete(session, payload)

        error = payload.get("error") or "unknown_error"
        if error == "authorization_pending":
            return PollResult(PollStatus.PENDING, session.interval)
        if error == "slow_down":
            session.interval += SLOW_DOWN_INCREMENT
            logger.debug("Device flow for source %s asked to slow down to %ss", source_id, session.interval)
            return PollResult(PollStatus.SLOW_DOWN, session.interval)
        if error == "access_denied":
            session.fail(AuthState.DENIED, error)
            logger.warning("Device authorization denied for source %s", source_id)
            return PollResult(PollStatus.DENIED, session.interval, error=error)
        if error == "expired_token":
            session.fail(AuthState.EXPIRED, error)
            return PollResult(PollStatus.EXPIRED, session.interval, error=error)

        description = payload.get("error_description") or error
        session.fail(AuthState.FAILED, description)
        logger.error("Device authorization failed for source %s: %s", source_id, description)
        return PollResult(PollStatus.ERROR, session.interval, error=description)

    async def _complete(self, session: AuthorizationSession, payload: Dict[str, Any]) -> PollResult:
        refresh_token = payload.get("refresh_token")
        if not refresh_token:
            session.fail(AuthState.FAILED, "No refresh token received", REVOKE_AND_RETRY)
            logger.error("No refresh token received for source %s", session.source_id)
            return PollResult(
                PollStatus.ERROR, session.interval,
                error="No refresh token received", remediation=REVOKE_AND_RETRY,
            )

        session.pending_tokens = payload
        session.device_code = None
        user_email = self._email_from_id_token(payload.get("id_token"))
        if not user_email:
            user_email = await self._fetch_user_email(payload["access_token"])
        if not user_email:
            session.fail(AuthState.FAILED, "Could not resolve the account email")
            return PollResult(PollStatus.ERROR, session.interval, error="Could not resolve the account email")

        try:
            store_authenticated_credentials(
                self.store, session.source_id,
                GmailCredentials(refresh_token=refresh_token, user_email=user_email),
            )
        except UnknownSourceError as exc:
            session.fail(AuthState.FAILED, str(exc))
            raise AuthorizationFailedError(str(exc)) from exc

        session.state = AuthState.AUTHENTICATED
        session.user_email = user_email
        session.pending_tokens = None
        logger.info("Device authorization successful for source %s (%s)", session.source_id, user_email)
        if self.on_authenticated is not None:
            await self.on_authenticated(session.source_id)
        return PollResult(PollStatus.SUCCESS, session.interval, user_email=user_email)
