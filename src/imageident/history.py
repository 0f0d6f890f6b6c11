"""Most-recent-first record of selected images."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from imageident.errors import HistoryIndexError

if TYPE_CHECKING:
    from imageident.sources import ImageReference

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HistoryEntry:
    reference: ImageReference
    sequence: int


class HistoryLedger:
    """Records image selections, newest first.

    Duplicates are kept: selecting the same locator twice yields two entries.
    With ``limit`` set, the oldest entries beyond it are dropped; ``None``
    keeps every entry for the session.
    """

    def __init__(self, limit: int | None = None) -> None:
        if limit is not None and limit < 1:
            raise ValueError("History limit must be at least 1")
        self._limit = limit
        self._lock = threading.Lock()
        self._entries: list[HistoryEntry] = []
        self._sequence = 0

    @property
    def limit(self) -> int | None:
        return self._limit

    def record(self, reference: ImageReference) -> tuple[HistoryEntry, ...]:
        """Prepend a reference and return the entries pushed out by the limit."""
        with self._lock:
            self._sequence += 1
            self._entries.insert(0, HistoryEntry(reference=reference, sequence=self._sequence))
            if self._limit is None or len(self._entries) <= self._limit:
                return ()
            dropped = tuple(self._entries[self._limit :])
            del self._entries[self._limit :]
        logger.debug("History limit %d reached, dropped %d entries", self._limit, len(dropped))
        return dropped

    def __contains__(self, reference: object) -> bool:
        with self._lock:
            return any(entry.reference == reference for entry in self._entries)

    def list(self) -> tuple[HistoryEntry, ...]:
        with self._lock:
            return tuple(self._entries)

    def select(self, index: int) -> ImageReference:
        """Return the reference at ``index`` without changing the ledger."""
        with self._lock:
            if index < 0 or index >= len(self._entries):
                raise HistoryIndexError(f"No history entry at index {index} (size {len(self._entries)})")
            return self._entries[index].reference

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
