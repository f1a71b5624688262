"""Email connector implementations package.

This package provides one connector per provider family:

- EmailConnector: Abstract base class defining the connector interface
- GmailConnector: Gmail API retrieval tracked by history id
- JMAPConnector: JMAP retrieval tracked by the Email state string
- IMAPConnector: IMAP retrieval tracked by UIDVALIDITY and last UID per folder

All connectors yield :class:`~mailsync.core.models.EmailObject` records and
expose the cursor reached by a fully drained cycle.

Example Usage:
    from mailsync.connectors import build_connector

    async with build_connector({"type": "imap", "host": "imap.example.com",
                                "username": "user@example.com",
                                "password": "secret"}) as connector:
        async for email in connector.fetch_emails(previous_state):
            ...
        next_state = connector.get_updated_sync_state()
"""

from .base import EmailConnector
from .factory import build_connector
from .gmail_connector import GmailConnector
from .imap_connector import IMAPConnector
from .jmap_connector import JMAPConnector
from .taxonomy import TaxonomyCache, TaxonomyEntry

__all__ = [
    "EmailConnector",
    "GmailConnector",
    "JMAPConnector",
    "IMAPConnector",
    "TaxonomyCache",
    "TaxonomyEntry",
    "build_connector",
]
