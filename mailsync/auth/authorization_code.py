"""Google OAuth authorization-code flow for personal Gmail sources.

The ingestion source id travels through Google as the ``state`` parameter,
so the callback needs no server-side session to find the source. Consent is
always forced, because Google only issues a refresh token on fresh consent.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Awaitable, Callable, Dict, Optional

import requests
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from oauthlib.oauth2.rfc6749.errors import OAuth2Error

from ..connectors.gmail_connector import GMAIL_SCOPES
from ..core.config import Config
from ..core.credentials import GmailCredentials
from ..core.exceptions import (
    AuthConfigurationError,
    AuthorizationDeniedOrExpired,
    AuthorizationFailedError,
    NetworkError,
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

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"

FlowFactory = Callable[[str], Any]
IdentityResolver = Callable[[Any], Awaitable[Optional[str]]]


class AuthorizationCodeFlow:
    """Issue consent URLs and exchange callback codes for Gmail credentials."""

    def __init__(
        self,
        store: Any,
        config: Optional[Config] = None,
        *,
        on_authenticated: Optional[OnAuthenticated] = None,
        flow_factory: Optional[FlowFactory] = None,
        identity_resolver: Optional[IdentityResolver] = None,
    ) -> None:
        self.store = store
        self.config = config or Config()
        self.on_authenticated = on_authenticated
        self._flow_factory = flow_factory or self._build_flow
        self._identity_resolver = identity_resolver or self._fetch_user_email
        self._sessions: Dict[str, AuthorizationSession] = {}

    def session(self, source_id: str) -> Optional[AuthorizationSession]:
        return self._sessions.get(source_id)

    # ------------------------------------------------------------------
    def _require_configured(self) -> None:
        if not self.config.google_oauth_configured:
            raise AuthConfigurationError(
                "Google OAuth is not configured. Please set GOOGLE_OAUTH_CLIENT_ID and "
                "GOOGLE_OAUTH_CLIENT_SECRET environment variables."
            )
        if not self.config.GOOGLE_OAUTH_REDIRECT_URI:
            raise AuthConfigurationError(
                "Google OAuth redirect URI is not configured. Please set GOOGLE_OAUTH_REDIRECT_URI "
                "environment variable."
            )

    def _build_flow(self, source_id: str) -> Flow:
        # Google may return the granted scopes in a different order or with
        # ``openid`` added; oauthlib would otherwise raise on the mismatch.
        os.environ.setdefault("OAUTHLIB_RELAX_TOKEN_SCOPE", "1")
        client_config = {
            "web": {
                "client_id": self.config.GOOGLE_OAUTH_CLIENT_ID,
                "client_secret": self.config.GOOGLE_OAUTH_CLIENT_SECRET,
                "auth_uri": GOOGLE_AUTH_URI,
                "token_uri": self.config.GOOGLE_OAUTH_TOKEN_URI,
                "redirect_uris": [self.config.GOOGLE_OAUTH_REDIRECT_URI],
            }
        }
        return Flow.from_client_config(
            client_config,
            scopes=GMAIL_SCOPES,
            state=source_id,
            redirect_uri=self.config.GOOGLE_OAUTH_REDIRECT_URI,
            autogenerate_code_verifier=False,
        )

    async def _fetch_user_email(self, flow: Any) -> Optional[str]:
        def userinfo() -> Dict[str, Any]:
            service = build("oauth2", "v2", credentials=flow.credentials, cache_discovery=False)
            return service.userinfo().get().execute()

        try:
            info = await asyncio.to_thread(userinfo)
        except HttpError as exc:
            raise AuthorizationFailedError(f"Could not get user email from Google: {exc}") from exc
        return info.get("email")

    # ------------------------------------------------------------------
    def authorization_url(self, source_id: str) -> str:
        """Return the consent URL for ``source_id``.

        Raises:
            AuthConfigurationError: If the OAuth client is not configured
            UnknownSourceError: If the source does not exist
        """
        self._require_configured()
        record = self.store.get(source_id)
        if record is None:
            raise UnknownSourceError(f"Ingestion source not found: {source_id}")
        if record.provider != "gmail":
            raise AuthConfigurationError(f"Ingestion source {source_id} is not a Gmail provider")

        flow = self._flow_factory(source_id)
        auth_url, _ = flow.authorization_url(access_type="offline", prompt="consent", state=source_id)
        self._sessions[source_id] = AuthorizationSession(
            source_id=source_id,
            flow_kind=FlowKind.AUTHORIZATION_CODE,
            state=AuthState.AWAITING_USER_REDIRECT,
        )
        logger.info("Issued Gmail authorization URL for source %s", source_id)
        return auth_url

    async def handle_callback(
        self,
        state: Optional[str],
        code: Optional[str] = None,
        error: Optional[str] = None,
    ) -> AuthorizationSession:
        """Exchange the callback ``code`` for a refresh token.

        ``state`` is the source id sent with the consent URL. A callback for a
        source that is already authenticated returns the existing session
        without exchanging again.

        Raises:
            AuthorizationDeniedOrExpired: If the user denied consent or the code is no longer valid
            AuthorizationFailedError: If no refresh token or identity was returned
        """
        if not state:
            raise AuthorizationFailedError("Missing source ID")
        source_id = state
        session = self._sessions.get(source_id)
        if session is None:
            session = AuthorizationSession(
                source_id=source_id,
                flow_kind=FlowKind.AUTHORIZATION_CODE,
                state=AuthState.AWAITING_USER_REDIRECT,
            )
            self._sessions[source_id] = session
        if session.state == AuthState.AUTHENTICATED:
            return session
        if session.state in (AuthState.CODE_RECEIVED, AuthState.EXCHANGING):
            raise AuthorizationFailedError(f"Authorization for source {source_id} is already in progress")

        if error:
            logger.warning("Gmail OAuth authorization denied for source %s: %s", source_id, error)
            session.fail(AuthState.DENIED, error)
            raise AuthorizationDeniedOrExpired(f"Authorization denied: {error}")
        if not code:
            session.fail(AuthState.FAILED, "Missing authorization code")
            raise AuthorizationFailedError("Missing authorization code")

        self._require_configured()
        if self.store.get(source_id) is None:
            raise UnknownSourceError(f"Ingestion source not found: {source_id}")

        session.state = AuthState.CODE_RECEIVED
        flow = self._flow_factory(source_id)
        session.state = AuthState.EXCHANGING
        try:
            tokens = await asyncio.to_thread(flow.fetch_token, code=code)
        except OAuth2Error as exc:
            detail = exc.description or exc.error
            if exc.error in ("invalid_grant", "access_denied"):
                session.fail(AuthState.DENIED, detail)
                raise AuthorizationDeniedOrExpired(f"Authorization code rejected: {detail}") from exc
            session.fail(AuthState.FAILED, detail)
            raise AuthorizationFailedError(f"Token exchange failed: {detail}") from exc
        except requests.RequestException as exc:
            session.fail(AuthState.FAILED, str(exc))
            raise NetworkError(f"Token exchange with Google failed: {exc}") from exc

        refresh_token = (tokens or {}).get("refresh_token")
        if not refresh_token:
            logger.error("No refresh token received from Google for source %s", source_id)
            session.fail(AuthState.FAILED, "No refresh token received", REVOKE_AND_RETRY)
            raise AuthorizationFailedError(
                "No refresh token received. Please revoke access and try again.", REVOKE_AND_RETRY
            )

        try:
            user_email = await self._identity_resolver(flow)
        except Exception as exc:
            session.fail(AuthState.FAILED, str(exc))
            raise
        if not user_email:
            session.fail(AuthState.FAILED, "Could not get user email from Google")
            raise AuthorizationFailedError("Could not get user email from Google")

        try:
            store_authenticated_credentials(
                self.store,
                source_id,
                GmailCredentials(refresh_token=refresh_token, user_email=user_email),
            )
        except Exception as exc:
            session.fail(AuthState.FAILED, str(exc))
            raise
        session.state = AuthState.AUTHENTICATED
        session.user_email = user_email
        logger.info("Gmail OAuth authorization successful for source %s (%s)", source_id, user_email)
        if self.on_authenticated is not None:
            await self.on_authenticated(source_id)
        return session
