from typing import Collection, Dict, Iterable, Iterator, List, Optional, Tuple

import structlog

from mdfeedback.models import CommentThread, utc_now

logger = structlog.get_logger(__name__)

CommentSnapshot = Dict[str, Tuple[CommentThread, ...]]


class CommentStore:
    """
    Comment threads keyed by change id, kept in creation order.

    Keys are canonical change ids (the id of a Change Record). The store does not
    look at spans itself: callers hand it the live id set to validate and prune against.
    """

    def __init__(self, threads: Optional[CommentSnapshot] = None):
        self._threads: CommentSnapshot = {k: tuple(v) for k, v in (threads or {}).items() if v}

    def __len__(self) -> int:
        return sum(len(v) for v in self._threads.values())

    def __contains__(self, change_id: str) -> bool:
        return change_id in self._threads

    def __iter__(self) -> Iterator[str]:
        return iter(self._threads)

    def threads(self, change_id: str) -> Tuple[CommentThread, ...]:
        return self._threads.get(change_id, ())

    def threads_for(self, ids: Iterable[str]) -> List[CommentThread]:
        """Threads of several ids (e.g. the members of one merged change), in id order."""
        result: List[CommentThread] = []
        for change_id in ids:
            result.extend(self._threads.get(change_id, ()))
        return result

    def add_comment(
        self, change_id: str, text: str, live_ids: Optional[Collection[str]] = None
    ) -> Optional[CommentThread]:
        if not text or not text.strip():
            logger.debug("Ignoring blank comment", change_id=change_id)
            return None
        if live_ids is not None and change_id not in live_ids:
            logger.warning("Cannot comment on unknown change", change_id=change_id)
            return None

        thread = CommentThread(text=text)
        self._threads[change_id] = self.threads(change_id) + (thread,)
        return thread

    def edit_comment(self, change_id: str, thread_id: str, text: str) -> bool:
        """Replaces a thread's text. Editing to blank text deletes the thread."""
        if not text or not text.strip():
            return self.delete_comment(change_id, thread_id)

        threads = list(self.threads(change_id))
        for i, thread in enumerate(threads):
            if thread.id == thread_id:
                threads[i] = thread.model_copy(update={"text": text, "updated_at": utc_now()})
                self._threads[change_id] = tuple(threads)
                return True

        logger.warning("Comment thread not found", change_id=change_id, thread_id=thread_id)
        return False

    def delete_comment(self, change_id: str, thread_id: str) -> bool:
        threads = self.threads(change_id)
        remaining = tuple(t for t in threads if t.id != thread_id)
        if len(remaining) == len(threads):
            logger.warning("Comment thread not found", change_id=change_id, thread_id=thread_id)
            return False
        if remaining:
            self._threads[change_id] = remaining
        else:
            del self._threads[change_id]
        return True

    def prune(self, live_ids: Collection[str]) -> List[str]:
        """Silently drops threads whose change no longer exists. Returns the dropped keys."""
        orphaned = [change_id for change_id in self._threads if change_id not in live_ids]
        for change_id in orphaned:
            del self._threads[change_id]
        if orphaned:
            logger.info("Pruned orphaned comments", change_ids=orphaned)
        return orphaned

    def snapshot(self) -> CommentSnapshot:
        return dict(self._threads)

    def restore(self, snapshot: CommentSnapshot) -> None:
        self._threads = dict(snapshot)
