"""Provider credential payloads.

Credentials are stored encrypted as a JSON document with a ``type``
discriminator. The helpers here convert between that document and the
typed dataclasses connectors accept.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Union

from .exceptions import AuthConfigurationError


@dataclass
class GmailCredentials:
    """Long-lived OAuth credential for a personal Gmail mailbox."""

    refresh_token: str
    user_email: str
    type: str = "gmail"


@dataclass
class JMAPCredentials:
    """Session URL plus basic or bearer authentication for a JMAP server."""

    session_url: str
    auth_method: str = "basic"
    username: Optional[str] = None
    password: Optional[str] = None
    bearer_token: Optional[str] = None
    type: str = "jmap"


@dataclass
class ImapCredentials:
    """Login for an IMAP server."""

    host: str
    username: str
    password: str
    port: int = 993
    use_ssl: bool = True
    mailboxes: List[str] = field(default_factory=lambda: ["INBOX"])
    type: str = "imap"


ProviderCredentials = Union[GmailCredentials, JMAPCredentials, ImapCredentials]

_CREDENTIAL_TYPES = {
    "gmail": GmailCredentials,
    "jmap": JMAPCredentials,
    "imap": ImapCredentials,
}


def credentials_to_dict(credentials: ProviderCredentials) -> Dict[str, Any]:
    """Return the JSON-serializable document for ``credentials``."""
    return asdict(credentials)


def credentials_from_dict(data: Dict[str, Any]) -> ProviderCredentials:
    """Build typed credentials from a decrypted document.

    Raises
    ------
    AuthConfigurationError
        If the document has an unknown ``type`` or misses required fields.
    """
    kind = (data or {}).get("type")
    cls = _CREDENTIAL_TYPES.get(kind or "")
    if cls is None:
        raise AuthConfigurationError(f"Unsupported credential type: {kind!r}")
    known = set(cls.__dataclass_fields__)
    try:
        return cls(**{k: v for k, v in data.items() if k in known})
    except TypeError as exc:
        raise AuthConfigurationError(f"Incomplete {kind} credentials: {exc}") from exc
