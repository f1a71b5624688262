"""Tests for the Gmail authorization-code flow."""

from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

import pytest
import requests
from oauthlib.oauth2.rfc6749.errors import InvalidClientError, InvalidGrantError

from mailsync.auth import AuthorizationCodeFlow, AuthState
from mailsync.auth.session import REVOKE_AND_RETRY
from mailsync.core.config import Config
from mailsync.core.credentials import credentials_from_dict
from mailsync.core.exceptions import (
    AuthConfigurationError,
    AuthorizationDeniedOrExpired,
    AuthorizationFailedError,
    NetworkError,
    UnknownSourceError,
)
from mailsync.core.models import SourceStatus
from mailsync.storage import InMemorySourceStore
from mailsync.utils.crypto import decrypt_object


class FakeFlow:
    """Stand-in for ``google_auth_oauthlib.flow.Flow``."""

    def __init__(self, tokens: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None) -> None:
        self.tokens = tokens if tokens is not None else {"access_token": "at", "refresh_token": "rt"}
        self.error = error
        self.url_kwargs: Dict[str, Any] = {}
        self.codes: List[str] = []
        self.credentials = object()

    def authorization_url(self, **kwargs: Any):
        self.url_kwargs = kwargs
        return f"https://accounts.google.com/o/oauth2/auth?state={kwargs['state']}", kwargs["state"]

    def fetch_token(self, code: str) -> Dict[str, Any]:
        self.codes.append(code)
        if self.error is not None:
            raise self.error
        return self.tokens


class Hook:
    def __init__(self) -> None:
        self.calls: List[str] = []

    async def __call__(self, source_id: str) -> None:
        self.calls.append(source_id)


async def _resolve_identity(flow: Any) -> str:
    return "a@example.com"


@pytest.fixture
def store() -> InMemorySourceStore:
    store = InMemorySourceStore()
    store.add_source("src-1", "gmail")
    store.add_source("imap-1", "imap")
    return store


def _flow(store, config, fake: FakeFlow, hook: Optional[Hook] = None) -> AuthorizationCodeFlow:
    return AuthorizationCodeFlow(
        store, config,
        on_authenticated=hook,
        flow_factory=lambda source_id: fake,
        identity_resolver=_resolve_identity,
    )


def test_authorization_url_forces_offline_consent(store, config):
    fake = FakeFlow()
    flow = _flow(store, config, fake)

    url = flow.authorization_url("src-1")

    assert "state=src-1" in url
    assert fake.url_kwargs == {"access_type": "offline", "prompt": "consent", "state": "src-1"}
    assert flow.session("src-1").state == AuthState.AWAITING_USER_REDIRECT


def test_authorization_url_rejects_bad_requests(store, config):
    flow = _flow(store, config, FakeFlow())
    with pytest.raises(UnknownSourceError):
        flow.authorization_url("missing")
    with pytest.raises(AuthConfigurationError):
        flow.authorization_url("imap-1")

    unconfigured = Config(GOOGLE_OAUTH_CLIENT_ID=None, GOOGLE_OAUTH_CLIENT_SECRET=None)
    with pytest.raises(AuthConfigurationError):
        _flow(store, unconfigured, FakeFlow()).authorization_url("src-1")


@pytest.mark.asyncio
async def test_callback_stores_credentials_once(store, config):
    fake = FakeFlow()
    hook = Hook()
    flow = _flow(store, config, fake, hook)
    flow.authorization_url("src-1")

    session = await flow.handle_callback("src-1", code="code-1")
    again = await flow.handle_callback("src-1", code="code-1")

    assert session is again
    assert session.state == AuthState.AUTHENTICATED
    assert session.user_email == "a@example.com"
    assert fake.codes == ["code-1"]
    assert hook.calls == ["src-1"]

    record = store.get("src-1")
    assert record.status == SourceStatus.AUTH_SUCCESS
    creds = credentials_from_dict(decrypt_object(record.credentials))
    assert (creds.refresh_token, creds.user_email) == ("rt", "a@example.com")


@pytest.mark.asyncio
async def test_missing_refresh_token_fails_with_remediation(store, config):
    hook = Hook()
    flow = _flow(store, config, FakeFlow(tokens={"access_token": "at"}), hook)

    with pytest.raises(AuthorizationFailedError) as excinfo:
        await flow.handle_callback("src-1", code="code-1")

    assert excinfo.value.remediation == REVOKE_AND_RETRY
    assert flow.session("src-1").state == AuthState.FAILED
    assert store.get("src-1").credentials is None
    assert store.get("src-1").status == SourceStatus.PENDING_AUTH
    assert hook.calls == []


@pytest.mark.asyncio
async def test_user_denial_is_reported(store, config):
    flow = _flow(store, config, FakeFlow())
    with pytest.raises(AuthorizationDeniedOrExpired):
        await flow.handle_callback("src-1", error="access_denied")
    assert flow.session("src-1").state == AuthState.DENIED


@pytest.mark.asyncio
async def test_rejected_code_is_denied_or_expired(store, config):
    flow = _flow(store, config, FakeFlow(error=InvalidGrantError(description="Bad Request")))
    with pytest.raises(AuthorizationDeniedOrExpired):
        await flow.handle_callback("src-1", code="stale")
    assert flow.session("src-1").state == AuthState.DENIED


@pytest.mark.asyncio
async def test_other_oauth_errors_fail(store, config):
    flow = _flow(store, config, FakeFlow(error=InvalidClientError(description="bad client")))
    with pytest.raises(AuthorizationFailedError):
        await flow.handle_callback("src-1", code="code-1")
    assert flow.session("src-1").state == AuthState.FAILED


@pytest.mark.asyncio
async def test_network_failure_during_exchange(store, config):
    flow = _flow(store, config, FakeFlow(error=requests.ConnectionError("unreachable")))
    with pytest.raises(NetworkError):
        await flow.handle_callback("src-1", code="code-1")


@pytest.mark.asyncio
async def test_identity_lookup_failure_allows_retry(store, config):
    outcomes: List[Any] = [ConnectionError("userinfo unreachable"), "a@example.com"]

    async def flaky_identity(flow: Any) -> str:
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    fake = FakeFlow()
    flow = AuthorizationCodeFlow(
        store, config, flow_factory=lambda source_id: fake, identity_resolver=flaky_identity
    )

    with pytest.raises(ConnectionError):
        await flow.handle_callback("src-1", code="code-1")
    assert flow.session("src-1").state == AuthState.FAILED
    assert store.get("src-1").credentials is None

    session = await flow.handle_callback("src-1", code="code-2")
    assert session.state == AuthState.AUTHENTICATED
    assert fake.codes == ["code-1", "code-2"]


def test_scope_relaxation_is_set_only_when_a_flow_is_built(store, config, monkeypatch):
    monkeypatch.delenv("OAUTHLIB_RELAX_TOKEN_SCOPE", raising=False)
    flow = AuthorizationCodeFlow(store, config)
    assert "OAUTHLIB_RELAX_TOKEN_SCOPE" not in os.environ

    flow._build_flow("src-1")

    assert os.environ["OAUTHLIB_RELAX_TOKEN_SCOPE"] == "1"


@pytest.mark.asyncio
async def test_callback_validation(store, config):
    flow = _flow(store, config, FakeFlow())
    with pytest.raises(AuthorizationFailedError):
        await flow.handle_callback(None, code="code-1")
    with pytest.raises(AuthorizationFailedError):
        await flow.handle_callback("src-1")
    with pytest.raises(UnknownSourceError):
        await flow.handle_callback("missing", code="code-1")
