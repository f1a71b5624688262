"""Registration of sources that authenticate with static credentials.

JMAP and IMAP sources have no interactive flow: the credentials are
verified with one connection test and stored.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Union

from ..connectors.base import EmailConnector
from ..connectors.factory import build_connector
from ..core.config import Config
from ..core.credentials import ProviderCredentials, credentials_from_dict
from ..core.exceptions import AuthorizationFailedError, UnknownSourceError
from .session import (
    AuthorizationSession,
    AuthState,
    FlowKind,
    OnAuthenticated,
    store_authenticated_credentials,
)

logger = logging.getLogger(__name__)


async def register_static_credentials(
    store: Any,
    source_id: str,
    credentials: Union[ProviderCredentials, Dict[str, Any]],
    *,
    config: Optional[Config] = None,
    on_authenticated: Optional[OnAuthenticated] = None,
    connector_factory: Callable[..., EmailConnector] = build_connector,
) -> AuthorizationSession:
    """Test ``credentials`` against the provider, then store them.

    Raises:
        UnknownSourceError: If the source does not exist
        AuthorizationFailedError: If the connection test reports failure
        ProviderAuthError: If the provider rejects the credentials
    """
    if store.get(source_id) is None:
        raise UnknownSourceError(f"Ingestion source not found: {source_id}")
    if isinstance(credentials, dict):
        credentials = credentials_from_dict(credentials)

    async with connector_factory(credentials, config) as connector:
        ok = await connector.test_connection()
        user_email = getattr(connector, "user_email", None)
    if not ok:
        raise AuthorizationFailedError(
            f"Connection test failed for source {source_id}",
            "Check the server address and credentials and try again.",
        )

    store_authenticated_credentials(store, source_id, credentials)
    session = AuthorizationSession(
        source_id=source_id,
        flow_kind=FlowKind.STATIC,
        state=AuthState.AUTHENTICATED,
        user_email=user_email,
    )
    logger.info("Registered %s credentials for source %s", credentials.type, source_id)
    if on_authenticated is not None:
        await on_authenticated(source_id)
    return session
