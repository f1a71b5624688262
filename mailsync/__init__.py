"""Provider-agnostic email synchronization for archive ingestion.

- EmailConnector variants: Gmail, JMAP and IMAP retrieval with resumable cursors
- Authorization flows: OAuth authorization-code, device-code and static credentials
- SyncOrchestrator: drives one sync cycle per ingestion source
"""

from .connectors import EmailConnector, GmailConnector, IMAPConnector, JMAPConnector, build_connector
from .core.models import EmailObject, SourceStatus
from .orchestrator import SyncOrchestrator

__all__ = [
    "EmailConnector",
    "GmailConnector",
    "JMAPConnector",
    "IMAPConnector",
    "build_connector",
    "EmailObject",
    "SourceStatus",
    "SyncOrchestrator",
]
