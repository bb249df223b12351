from typing import Any, Callable, Dict, List, Optional, TypeVar

import structlog

from mdfeedback.changes import build_change_index, find_change, live_change_ids, summarize
from mdfeedback.markup import accept_all, export_markup, parse_markup, reject_all, serialize_markup
from mdfeedback.models import ChangeRecord, CommentThread, EditIntent, EngineConfig, SavedSession, new_id
from mdfeedback.redline.comments import CommentStore
from mdfeedback.redline.engine import EditResult, TrackChangesEngine
from mdfeedback.redline.history import History, HistoryEntry
from mdfeedback.redline.store import SpanStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ReviewSession:
    """
    One document under review: the engine (sole writer of the span store), the
    comment threads and the undo log.

    Every mutation goes through `_mutate`, which prunes comments whose change
    vanished and records one history entry when anything changed.
    """

    def __init__(
        self,
        markup: str = "",
        config: Optional[EngineConfig] = None,
        id_factory: Callable[[], str] = new_id,
    ):
        self.config = config or EngineConfig()
        self._id_factory = id_factory
        self.history = History(self.config.history_limit)
        self.engine = TrackChangesEngine(config=self.config, id_factory=id_factory)
        self.comments = CommentStore()
        self.metadata: Dict[str, Any] = {}
        self._changes: Optional[List[ChangeRecord]] = None
        self.import_markup(markup)

    # --- Views ---

    @property
    def store(self) -> SpanStore:
        return self.engine.store

    @property
    def changes(self) -> List[ChangeRecord]:
        if self._changes is None:
            self._changes = build_change_index(self.store, self.comments, self.config.context_words)
        return self._changes

    def summary(self) -> Dict[str, int]:
        return summarize(self.changes)

    def markup(self) -> str:
        return serialize_markup(self.store, self.comments)

    def export(self, edit_date: Optional[str] = None) -> str:
        return export_markup(self.store, self.comments, self.metadata, edit_date)

    def accept_all(self) -> str:
        return accept_all(self.store)

    def reject_all(self) -> str:
        return reject_all(self.store)

    # --- State replacement ---

    def import_markup(self, markup: str) -> None:
        """Replaces the document and its comments wholesale. History starts over."""
        parsed = parse_markup(markup, self._id_factory)
        self.engine.store = parsed.store
        self.comments = parsed.comments
        self.metadata = parsed.metadata
        self.history.clear()
        self._changes = None
        logger.info("Imported markup", blocks=len(parsed.store.blocks), comments=len(parsed.comments))

    def snapshot(self) -> SavedSession:
        return SavedSession(markup=self.export())

    def restore(self, saved: SavedSession) -> None:
        self.import_markup(saved.markup)

    @classmethod
    def from_saved(cls, saved: SavedSession, config: Optional[EngineConfig] = None) -> "ReviewSession":
        return cls(saved.markup, config)

    def toggle_tracking(self, enabled: Optional[bool] = None) -> bool:
        if enabled is None:
            enabled = not self.config.tracking_enabled
        self.config = self.config.model_copy(update={"tracking_enabled": enabled})
        self.engine.config = self.config
        logger.info("Tracking toggled", enabled=enabled)
        return enabled

    # --- Mutations ---

    def _mutate(self, label: str, operation: Callable[[], T]) -> T:
        store_before = self.store
        comments_before = self.comments.snapshot()

        result = operation()

        store_changed = self.store is not store_before and self.store != store_before
        if store_changed:
            self._changes = None
            self.comments.prune(live_change_ids(self.changes))

        comments_after = self.comments.snapshot()
        if store_changed or comments_after != comments_before:
            self._changes = None
            self.history.push(HistoryEntry(label, store_before, self.store, comments_before, comments_after))
        return result

    def apply(self, intent: EditIntent) -> EditResult:
        return self._mutate(intent.kind, lambda: self.engine.apply(intent))

    def insert(self, position: int, text: str) -> EditResult:
        return self._mutate("insert", lambda: self.engine.insert(position, text))

    def delete(self, start: int, end: int, forward: bool = False) -> EditResult:
        if start == end:
            return self._mutate("delete", lambda: self.engine.delete_unit(start, forward))
        return self._mutate("delete", lambda: self.engine.delete_range(start, end))

    def replace(self, start: int, end: int, text: str) -> EditResult:
        return self._mutate("replace", lambda: self.engine.replace(start, end, text))

    def highlight(self, start: int, end: int, comment: Optional[str] = None) -> Optional[str]:
        """Highlights [start, end), optionally attaching a first comment in the same undo step."""

        def operation() -> Optional[str]:
            highlight_id = self.engine.highlight(start, end)
            if highlight_id and comment:
                self.comments.add_comment(highlight_id, comment)
            return highlight_id

        return self._mutate("highlight", operation)

    def revert(self, change_id: str) -> EditResult:
        # A record can merge highlights with different ids; they go together.
        record = find_change(self.changes, change_id)
        linked = [i for i in record.member_ids if i != change_id] if record else []
        return self._mutate("revert", lambda: self.engine.revert(change_id, *linked))

    # --- Comments ---

    def add_comment(self, change_id: str, text: str) -> Optional[CommentThread]:
        record = find_change(self.changes, change_id)
        if record is None:
            logger.warning("Cannot comment on unknown change", change_id=change_id)
            return None
        return self._mutate("comment", lambda: self.comments.add_comment(record.id, text))

    def _thread_key(self, change_id: str, thread_id: str) -> str:
        """Key holding `thread_id`: a merged change may keep threads under any member id."""
        record = find_change(self.changes, change_id)
        candidates = record.member_ids if record else [change_id]
        for key in [change_id] + list(candidates):
            if any(t.id == thread_id for t in self.comments.threads(key)):
                return key
        return change_id

    def edit_comment(self, change_id: str, thread_id: str, text: str) -> bool:
        key = self._thread_key(change_id, thread_id)
        return self._mutate("edit comment", lambda: self.comments.edit_comment(key, thread_id, text))

    def delete_comment(self, change_id: str, thread_id: str) -> bool:
        key = self._thread_key(change_id, thread_id)
        return self._mutate("delete comment", lambda: self.comments.delete_comment(key, thread_id))

    # --- History ---

    def undo(self) -> bool:
        entry = self.history.undo()
        if entry is None:
            return False
        self.engine.store = entry.store_before
        self.comments.restore(entry.comments_before)
        self._changes = None
        return True

    def redo(self) -> bool:
        entry = self.history.redo()
        if entry is None:
            return False
        self.engine.store = entry.store_after
        self.comments.restore(entry.comments_after)
        self._changes = None
        return True
