"""Linear undo/redo log of span store and comment snapshots."""

from dataclasses import dataclass
from typing import List, Optional

import structlog

from mdfeedback.redline.comments import CommentSnapshot
from mdfeedback.redline.store import SpanStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class HistoryEntry:
    label: str
    store_before: SpanStore
    store_after: SpanStore
    comments_before: CommentSnapshot
    comments_after: CommentSnapshot


class History:
    """
    Undo pops the most recent entry and pushes it onto the redo stack.
    Any new entry clears the redo stack (no branching).
    Stores are immutable, so entries hold references rather than copies.
    """

    def __init__(self, limit: int = 200) -> None:
        self.limit = limit
        self._undo: List[HistoryEntry] = []
        self._redo: List[HistoryEntry] = []

    def push(self, entry: HistoryEntry) -> None:
        self._undo.append(entry)
        self._redo.clear()
        if len(self._undo) > self.limit:
            del self._undo[0 : len(self._undo) - self.limit]

    def can_undo(self) -> bool:
        return bool(self._undo)

    def can_redo(self) -> bool:
        return bool(self._redo)

    def undo(self) -> Optional[HistoryEntry]:
        if not self._undo:
            return None
        entry = self._undo.pop()
        self._redo.append(entry)
        logger.debug("Undo", label=entry.label)
        return entry

    def redo(self) -> Optional[HistoryEntry]:
        if not self._redo:
            return None
        entry = self._redo.pop()
        self._undo.append(entry)
        logger.debug("Redo", label=entry.label)
        return entry

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()

    def __len__(self) -> int:
        return len(self._undo)
