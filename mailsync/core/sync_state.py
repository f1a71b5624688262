"""Helpers for the ``SyncState`` document.

A sync state is a nested mapping namespaced by provider family and then by
account identifier, e.g.::

    {"gmail": {"a@example.com": {"historyId": "4711"}}}
    {"jmap": {"u1234": {"emailState": "s42"}}, "statusMessage": "..."}

An absent account entry means a full import is required. Connectors build
these documents; callers persist them verbatim.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, Optional

SyncState = Dict[str, Any]

STATUS_MESSAGE_KEY = "statusMessage"


def get_account_state(
    sync_state: Optional[SyncState], provider: str, account: str
) -> Optional[Dict[str, Any]]:
    """Return the cursor entry for ``account`` or ``None`` when absent."""
    if not sync_state:
        return None
    entry = (sync_state.get(provider) or {}).get(account)
    if not entry:
        return None
    return entry


def get_cursor(
    sync_state: Optional[SyncState], provider: str, account: str, key: str
) -> Optional[Any]:
    """Return a single cursor field, ``None`` when missing or empty."""
    entry = get_account_state(sync_state, provider, account)
    if entry is None:
        return None
    value = entry.get(key)
    return value if value not in (None, "") else None


def build_state(
    provider: str,
    account: str,
    cursor: Dict[str, Any],
    status_message: Optional[str] = None,
) -> SyncState:
    """Build a single-account state document."""
    state: SyncState = {provider: {account: dict(cursor)}}
    if status_message:
        state[STATUS_MESSAGE_KEY] = status_message
    return state


def merge_states(prior: Optional[SyncState], update: Optional[SyncState]) -> SyncState:
    """Overlay ``update`` onto ``prior`` without mutating either.

    Account entries in ``update`` replace those in ``prior``; entries for other
    providers or accounts are kept. The status message always reflects the
    update, so a stale message does not outlive the cycle that produced it.
    """
    merged: SyncState = copy.deepcopy(prior) if prior else {}
    merged.pop(STATUS_MESSAGE_KEY, None)
    for key, value in (update or {}).items():
        if key == STATUS_MESSAGE_KEY:
            merged[key] = value
        elif isinstance(value, dict):
            provider_entry = merged.setdefault(key, {})
            for account, cursor in value.items():
                provider_entry[account] = copy.deepcopy(cursor)
        else:
            merged[key] = value
    return merged
