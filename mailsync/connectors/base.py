"""Base abstract email connector class.

This module provides the abstract :class:`EmailConnector` base class that defines
the contract every provider connector implements:

- ``test_connection()`` performs the cheapest authenticated call.
- ``fetch_emails(sync_state)`` is an async generator of
  :class:`~mailsync.core.models.EmailObject`, single pass, not restartable.
- ``get_updated_sync_state()`` returns the cursor advancement, and only once
  the generator has been drained. A cycle that is abandoned early reports no
  advancement, so the caller can discard it without committing anything.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Awaitable, Optional

from ..core.exceptions import ItemGoneError, NormalizationError
from ..core.models import EmailObject, MailboxUser
from ..core.sync_state import SyncState
from .taxonomy import TaxonomyCache

logger = logging.getLogger(__name__)


class EmailConnector(ABC):
    """Abstract base class for provider connectors."""

    #: Provider family, also the top-level key of the sync state.
    provider: str = ""

    def __init__(self) -> None:
        self.taxonomy = TaxonomyCache()
        self.status_message: Optional[str] = None
        self._cycle_complete = False
        self._updated_state: SyncState = {}

    # ------------------------------------------------------------------
    @abstractmethod
    async def test_connection(self) -> bool:
        """Verify credentials with a side-effect-free call.

        Raises
        ------
        AuthError, NetworkError
            When the provider rejects the credentials or cannot be reached.
        """

    @abstractmethod
    def fetch_emails(self, sync_state: Optional[SyncState] = None) -> AsyncIterator[EmailObject]:
        """Yield every message new since ``sync_state``.

        Parameters
        ----------
        sync_state:
            Document returned by a previous cycle. ``None`` or a document
            without an entry for this account triggers a full import.
        """

    @abstractmethod
    def list_all_users(self) -> AsyncIterator[MailboxUser]:
        """Yield the mailbox users reachable with these credentials."""

    def get_updated_sync_state(self) -> SyncState:
        """Return the cursor accumulated by the last fully drained cycle."""
        if not self._cycle_complete:
            logger.debug("%s fetch cycle not drained; no sync state advancement", self.provider)
            return {}
        return dict(self._updated_state)

    async def close(self) -> None:
        """Release network resources held by the connector."""

    async def __aenter__(self) -> "EmailConnector":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    def _begin_cycle(self) -> None:
        self._cycle_complete = False
        self._updated_state = {}
        self.status_message = None
        self.taxonomy.clear()

    def _complete_cycle(self, state: SyncState) -> None:
        self._updated_state = state
        self._cycle_complete = True

    async def _guarded(self, message_id: str, fetch: Awaitable[Optional[EmailObject]]) -> Optional[EmailObject]:
        """Await ``fetch`` and absorb errors local to this one message."""
        try:
            return await fetch
        except ItemGoneError:
            logger.warning("%s message %s not found, skipping", self.provider, message_id)
        except NormalizationError as exc:
            logger.warning("%s message %s could not be parsed, skipping: %s", self.provider, message_id, exc)
        return None
