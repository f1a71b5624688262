"""Per-cycle cache of provider folder and label metadata.

A :class:`TaxonomyCache` belongs to exactly one connector instance. Ids are
only unique within one provider account and session, so the cache is never
shared across accounts or kept beyond the sync cycle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

PATH_SEPARATOR = "/"


@dataclass(frozen=True)
class TaxonomyEntry:
    """Resolved attributes of one folder, mailbox or label."""

    id: str
    name: str
    parent_id: Optional[str] = None
    role: Optional[str] = None
    kind: Optional[str] = None


class TaxonomyCache:
    """Lazily populated id -> :class:`TaxonomyEntry` mapping."""

    def __init__(self) -> None:
        self._entries: Dict[str, TaxonomyEntry] = {}

    def __contains__(self, entry_id: str) -> bool:
        return entry_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries.values())

    def add(self, entry: TaxonomyEntry) -> None:
        self._entries[entry.id] = entry

    def add_all(self, entries: Iterable[TaxonomyEntry]) -> None:
        for entry in entries:
            self.add(entry)

    def get(self, entry_id: str) -> Optional[TaxonomyEntry]:
        return self._entries.get(entry_id)

    async def get_or_load(
        self, entry_id: str, loader: Callable[[str], Awaitable[TaxonomyEntry]]
    ) -> TaxonomyEntry:
        """Return the cached entry, calling ``loader`` on the first miss only."""
        entry = self._entries.get(entry_id)
        if entry is None:
            entry = await loader(entry_id)
            self._entries[entry_id] = entry
        return entry

    def resolve_path(self, entry_id: str, separator: str = PATH_SEPARATOR) -> str:
        """Join names from the root down to ``entry_id``.

        Walking stops at the first parent that is not cached, so an entry with
        no resolvable parent contributes only its own name. Unknown ids resolve
        to an empty string.
        """
        entry = self._entries.get(entry_id)
        if entry is None:
            return ""
        parts: List[str] = [entry.name]
        seen = {entry.id}
        current = entry
        while current.parent_id:
            parent = self._entries.get(current.parent_id)
            if parent is None or parent.id in seen:
                break
            parts.append(parent.name)
            seen.add(parent.id)
            current = parent
        return separator.join(reversed(parts))

    def ids_with_roles(self, roles: Iterable[str]) -> List[str]:
        wanted = set(roles)
        return [entry.id for entry in self._entries.values() if entry.role in wanted]

    def clear(self) -> None:
        self._entries.clear()
