"""Authorization session state shared by the interactive flows.

Sessions live in process memory only. Losing one (restart, expiry) means the
flow is started again; nothing here is written to durable storage except the
final credentials.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from ..core.credentials import ProviderCredentials, credentials_to_dict
from ..core.exceptions import UnknownSourceError
from ..core.models import SourceStatus
from ..utils.crypto import encrypt_object

logger = logging.getLogger(__name__)

#: Called once per source when it first reaches ``AUTHENTICATED``.
OnAuthenticated = Callable[[str], Awaitable[Any]]

REVOKE_AND_RETRY = (
    "No refresh token was returned. Please revoke the application's access in your "
    "Google account settings and try again."
)


class FlowKind(str, Enum):
    AUTHORIZATION_CODE = "authorization_code"
    DEVICE_CODE = "device_code"
    STATIC = "static"


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AWAITING_USER_REDIRECT = "awaiting_user_redirect"
    CODE_RECEIVED = "code_received"
    EXCHANGING = "exchanging"
    CODE_ISSUED = "code_issued"
    POLLING = "polling"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"
    DENIED = "denied"
    EXPIRED = "expired"


TERMINAL_STATES = frozenset(
    {AuthState.AUTHENTICATED, AuthState.FAILED, AuthState.DENIED, AuthState.EXPIRED}
)


@dataclass
class AuthorizationSession:
    """Transient state of one authorization attempt for one source."""

    source_id: str
    flow_kind: FlowKind
    state: AuthState = AuthState.UNAUTHENTICATED
    device_code: Optional[str] = None
    user_code: Optional[str] = None
    verification_url: Optional[str] = None
    interval: int = 5
    expires_at: Optional[datetime] = None
    user_email: Optional[str] = None
    error: Optional[str] = None
    remediation: Optional[str] = None
    pending_tokens: Optional[Dict[str, Any]] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def fail(self, state: AuthState, error: str, remediation: Optional[str] = None) -> None:
        self.state = state
        self.error = error
        self.remediation = remediation
        self.device_code = None
        self.pending_tokens = None


def store_authenticated_credentials(store: Any, source_id: str, credentials: ProviderCredentials) -> None:
    """Encrypt ``credentials`` and move the source out of ``pending_auth``.

    Raises:
        UnknownSourceError: If the source no longer exists
    """
    if store.get(source_id) is None:
        raise UnknownSourceError(f"Unknown ingestion source: {source_id}")
    store.set(source_id, encrypt_object(credentials_to_dict(credentials)), SourceStatus.AUTH_SUCCESS)
    logger.info("Stored credentials for source %s", source_id)
