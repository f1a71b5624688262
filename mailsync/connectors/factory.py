"""Connector construction from stored credentials."""

from __future__ import annotations

from typing import Any, Dict, Optional, Union

from ..core.config import Config
from ..core.credentials import (
    GmailCredentials,
    ImapCredentials,
    JMAPCredentials,
    ProviderCredentials,
    credentials_from_dict,
)
from ..core.exceptions import AuthConfigurationError
from .base import EmailConnector
from .gmail_connector import GmailConnector
from .imap_connector import IMAPConnector
from .jmap_connector import JMAPConnector


def build_connector(
    credentials: Union[ProviderCredentials, Dict[str, Any]],
    config: Optional[Config] = None,
) -> EmailConnector:
    """Return the connector matching ``credentials``.

    ``credentials`` may be a typed credential object or the decrypted
    document stored for an ingestion source.
    """
    if isinstance(credentials, dict):
        credentials = credentials_from_dict(credentials)
    config = config or Config()
    if isinstance(credentials, GmailCredentials):
        return GmailConnector(credentials, config)
    if isinstance(credentials, JMAPCredentials):
        return JMAPConnector(credentials, config)
    if isinstance(credentials, ImapCredentials):
        return IMAPConnector(credentials, config)
    raise AuthConfigurationError(f"No connector for credentials of type {type(credentials).__name__}")
