import functools
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

import structlog

from mdfeedback.errors import InvalidPositionError
from mdfeedback.models import (
    DeleteIntent,
    EditIntent,
    EngineConfig,
    InsertIntent,
    PasteIntent,
    ReplaceIntent,
    SpanStatus,
    new_id,
)
from mdfeedback.redline.store import (
    UNCHANGED_STATUSES,
    Batch,
    InsertSpan,
    JoinBlocks,
    MarkRange,
    Mutation,
    RemoveRange,
    RestoreIds,
    SpanStore,
    SplitBlock,
    group_spans,
    make_span,
    paired_with,
    split_text_blocks,
)

logger = structlog.get_logger(__name__)

READ_ONLY_STATUSES = frozenset({SpanStatus.DELETED, SpanStatus.HIGHLIGHTED})
INSERTED_ONLY = frozenset({SpanStatus.INSERTED})


@dataclass(frozen=True)
class EditResult:
    """
    Outcome of one intent.
    `handled` is False only when the intent was rejected (invalid position, unknown id).
    `cursor` is where the caret should go afterwards, None when the caller keeps its own.
    """

    handled: bool
    cursor: Optional[int] = None
    changed: bool = False


UNHANDLED = EditResult(handled=False)


def _total(method):
    """Turns invalid input into a logged no-op so edits never raise into the caller."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except InvalidPositionError as e:
            logger.warning("Rejected edit", operation=method.__name__, reason=str(e))
            return UNHANDLED

    return wrapper


class TrackChangesEngine:
    """
    Converts edit intents into span mutations.

    The engine is the only writer of its SpanStore. Each intent becomes one atomic
    Batch, so a caller (or the undo log) sees a single before/after pair per edit.
    """

    def __init__(
        self,
        store: Optional[SpanStore] = None,
        config: Optional[EngineConfig] = None,
        id_factory: Callable[[], str] = new_id,
    ):
        self.store = store if store is not None else SpanStore()
        self.config = config or EngineConfig()
        self._new_id = id_factory

    @property
    def tracking(self) -> bool:
        return self.config.tracking_enabled

    def apply(self, intent: EditIntent) -> EditResult:
        if isinstance(intent, InsertIntent):
            return self.insert(intent.position, intent.text)
        if isinstance(intent, DeleteIntent):
            if intent.start == intent.end:
                return self.delete_unit(intent.start, forward=intent.direction == "forward")
            return self.delete_range(intent.start, intent.end)
        if isinstance(intent, ReplaceIntent):
            return self.replace(intent.start, intent.end, intent.text)
        if isinstance(intent, PasteIntent):
            return self.paste(intent.start, intent.end, intent.text)
        logger.warning("Unsupported intent", intent=type(intent).__name__)
        return UNHANDLED

    # --- Insertion ---

    @_total
    def insert(self, position: int, text: str) -> EditResult:
        self.store.locate(position)
        if not text:
            return EditResult(True, position)

        if not self.tracking:
            steps = self._insert_steps(position, text, SpanStatus.ORIGINAL)
            return self._commit(Batch(tuple(steps), "insert"), kept_after=self.store.size - position)

        position, span_id, partner = self._insertion_target(position)
        steps = self._insert_steps(position, text, SpanStatus.INSERTED, span_id, partner)
        return self._commit(Batch(tuple(steps), "insert"), kept_after=self.store.size - position)

    def paste(self, start: int, end: int, text: str) -> EditResult:
        if start == end:
            return self.insert(start, text)
        return self.replace(start, end, text)

    def _insertion_target(self, position: int) -> Tuple[int, Optional[str], Optional[str]]:
        """
        Decides where typed text lands and which inserted span it extends.
        Returns (position, span id to extend or None, its pairing).
        """
        before, after = self.store.neighbors(position)

        # Deleted and highlighted text is read-only: typing inside it lands after it.
        if before and after and before.start == after.start and before.status in READ_ONLY_STATUSES:
            position = after.end
            before, after = self.store.neighbors(position)

        if before is not None and before.status == SpanStatus.INSERTED:
            return position, before.span.id, paired_with(before.span)

        _, local = self.store.locate(position)
        if local == 0 and after is not None and after.status == SpanStatus.INSERTED:
            return position, after.span.id, paired_with(after.span)

        return position, None, None

    def _insert_steps(
        self,
        position: int,
        text: str,
        status: str,
        span_id: Optional[str] = None,
        partner: Optional[str] = None,
    ) -> List[Mutation]:
        """One span per block part; blank lines and heading lines split the block."""
        steps: List[Mutation] = []
        for number, (part, level) in enumerate(split_text_blocks(text)):
            if number:
                steps.append(SplitBlock(position, level))
                position += 1
            if not part:
                continue
            if number == 0 and span_id:
                span = make_span(status, part, span_id, partner)
            else:
                span = make_span(status, part, self._new_id())
            steps.append(InsertSpan(position, span))
            position += len(part)
        return steps

    # --- Deletion ---

    @_total
    def delete_unit(self, position: int, forward: bool = False) -> EditResult:
        """Backspace (or forward delete) of a single character at a collapsed cursor."""
        index, local = self.store.locate(position)
        at_edge = local == len(self.store.blocks[index].text) if forward else local == 0

        # Block edges join blocks in both modes; the join itself is not tracked.
        if at_edge:
            join = index if forward else index - 1
            if join < 0 or join >= len(self.store.blocks) - 1:
                return EditResult(True, position)
            return self._commit(JoinBlocks(join), position if forward else position - 1)

        start, end = (position, position + 1) if forward else (position - 1, position)

        if not self.tracking:
            return self._commit(RemoveRange(start, end), start)

        piece = self.store.char_at(start)
        if piece.status == SpanStatus.INSERTED:
            return self._commit(RemoveRange(start, end), start)

        if piece.status == SpanStatus.DELETED:
            run_start, run_end = self._deleted_run(start)
            cursor = run_end if forward else run_start
            logger.debug("Skipping over deleted text", cursor=cursor)
            return EditResult(True, cursor)

        change_id = self._reusable_deletion_id(start, end) or self._new_id()
        mark = MarkRange(start, end, SpanStatus.DELETED, change_id=change_id)
        return self._commit(mark, end if forward else start)

    def _deleted_run(self, position: int) -> Tuple[int, int]:
        """Bounds of the consecutive deleted spans around the character at `position`."""
        index, local = self.store.locate(position)
        base = self.store.block_start(index)
        bounds = []
        offset = 0
        for span in self.store.blocks[index].spans:
            bounds.append((offset, offset + len(span.text), span.status))
            offset += len(span.text)

        hit = next(i for i, (lo, hi, _) in enumerate(bounds) if lo <= local < hi)
        first = last = hit
        while first > 0 and bounds[first - 1][2] == SpanStatus.DELETED:
            first -= 1
        while last < len(bounds) - 1 and bounds[last + 1][2] == SpanStatus.DELETED:
            last += 1
        return base + bounds[first][0], base + bounds[last][1]

    def _reusable_deletion_id(self, start: int, end: int) -> Optional[str]:
        """Id of an unpaired deletion touching [start, end), looking left first."""
        before, _ = self.store.neighbors(start)
        _, after = self.store.neighbors(end)
        for piece in (before, after):
            if piece is not None and piece.status == SpanStatus.DELETED and paired_with(piece.span) is None:
                return piece.span.id
        return None

    @_total
    def delete_range(self, start: int, end: int) -> EditResult:
        self.store.check_range(start, end)
        if start == end:
            return EditResult(True, start)

        if not self.tracking:
            return self._commit(Batch(tuple(self._remove_steps(start, end)), "delete"), start)

        steps: List[Mutation] = []
        for index, local_start, local_end in reversed(self.store.segments(start, end)):
            base = self.store.block_start(index)
            steps.extend(self._decompose(base + local_start, base + local_end, self._new_id()))
        return self._commit(Batch(tuple(steps), "delete"), start)

    def _remove_steps(self, start: int, end: int) -> List[Mutation]:
        """Untracked removal, joining every block boundary the range crosses."""
        first, _ = self.store.locate(start)
        last, _ = self.store.locate(end)
        steps: List[Mutation] = [RemoveRange(start, end)]
        steps.extend(JoinBlocks(first) for _ in range(last - first))
        return steps

    @staticmethod
    def _decompose(start: int, end: int, change_id: str, partner: Optional[str] = None) -> List[Mutation]:
        """
        Tracked deletion of a range inside one block: original text is marked deleted,
        own insertions are removed, existing deletions stay as they are.
        """
        return [
            MarkRange(start, end, SpanStatus.DELETED, change_id=change_id, paired_with=partner),
            RemoveRange(start, end, source=INSERTED_ONLY),
        ]

    # --- Replacement ---

    @_total
    def replace(self, start: int, end: int, text: str) -> EditResult:
        self.store.check_range(start, end)
        if start == end:
            return self.insert(start, text)
        if not text:
            return self.delete_range(start, end)

        kept_after = self.store.size - end
        if not self.tracking:
            steps = self._remove_steps(start, end) + self._insert_steps(start, text, SpanStatus.ORIGINAL)
            return self._commit(Batch(tuple(steps), "replace"), kept_after=kept_after)

        pieces = list(self.store.pieces(start, end))
        segments = self.store.segments(start, end)
        marked_blocks = {p.block for p in pieces if p.status in UNCHANGED_STATUSES}
        removed: Dict[int, int] = {}
        for piece in pieces:
            if piece.status == SpanStatus.INSERTED:
                removed[piece.block] = removed.get(piece.block, 0) + (piece.end - piece.start)

        last_block = segments[-1][0]
        deletion_ids = {index: self._new_id() for index in marked_blocks}
        deletion_id = deletion_ids.get(last_block)

        if marked_blocks:
            insertion_id, partner = self._new_id(), deletion_id
        else:
            # Rewriting one's own insertion keeps its identity (and its substitution link).
            own = next((p for p in pieces if p.status == SpanStatus.INSERTED), None)
            if own is not None:
                insertion_id, partner = own.span.id, paired_with(own.span)
            else:
                insertion_id, partner = self._new_id(), None

        steps: List[Mutation] = []
        for index, local_start, local_end in reversed(segments):
            base = self.store.block_start(index)
            if index in deletion_ids:
                link = insertion_id if index == last_block else None
                steps.extend(self._decompose(base + local_start, base + local_end, deletion_ids[index], link))
            else:
                steps.append(RemoveRange(base + local_start, base + local_end, source=INSERTED_ONLY))
            if index == last_block:
                at = base + local_end - removed.get(index, 0)
                steps.extend(self._insert_steps(at, text, SpanStatus.INSERTED, insertion_id, partner))

        logger.debug("Tracked replacement", deletion_id=deletion_id, insertion_id=insertion_id)
        return self._commit(Batch(tuple(steps), "replace"), kept_after=kept_after)

    # --- Highlights and revert ---

    def highlight(self, start: int, end: int) -> Optional[str]:
        """Marks the original text in [start, end) as one read-only highlight. Returns its id."""
        try:
            pieces = list(self.store.pieces(start, end))
        except InvalidPositionError as e:
            logger.warning("Rejected highlight", reason=str(e))
            return None
        if not any(p.status == SpanStatus.ORIGINAL for p in pieces):
            return None

        highlight_id = self._new_id()
        self._commit(
            MarkRange(start, end, SpanStatus.HIGHLIGHTED, change_id=highlight_id, source=frozenset({SpanStatus.ORIGINAL}))
        )
        return highlight_id

    def change_members(self, change_id: str) -> Set[str]:
        """All span ids that make up the change reachable from `change_id`."""
        members: Set[str] = set()
        for block in self.store.blocks:
            for group in group_spans(block.spans):
                if group.is_change and change_id in group.member_ids:
                    members.update(group.member_ids)
        for piece in self.store.find(members):
            partner = paired_with(piece.span)
            if partner:
                members.add(partner)
        return members

    def revert(self, change_id: str, *linked_ids: str) -> EditResult:
        """
        Inverse of the rule that created the change: deleted text is restored, inserted text removed.
        `linked_ids` are reverted in the same step (the parts of one merged change record).
        """
        members: Set[str] = set()
        for member in (change_id,) + linked_ids:
            members.update(self.change_members(member))
        if not members:
            logger.warning("Cannot revert unknown change", change_id=change_id)
            return UNHANDLED
        return self._commit(RestoreIds(frozenset(members)))

    # --- Commit ---

    def _commit(self, mutation: Mutation, cursor: Optional[int] = None, kept_after: Optional[int] = None) -> EditResult:
        """
        Applies one mutation. `kept_after` counts the positions after the edit that it
        leaves untouched; the cursor then lands right before them.
        """
        updated = self.store.apply(mutation)
        changed = updated != self.store
        self.store = updated
        if kept_after is not None:
            cursor = max(updated.size - kept_after, 0)
        return EditResult(True, cursor, changed)
