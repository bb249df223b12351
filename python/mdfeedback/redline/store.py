"""
Span Store: the ordered, immutable representation of a tracked document.

The store is a tuple of blocks (paragraphs and headings), each holding a run of
typed spans. Positions are integer offsets over the concatenated block texts,
deleted text included, with one position consumed between consecutive blocks.

Every mutation returns a new store and is followed by normalization: blocks
holding a line break the markup reader would treat as a block boundary are
split there, empty spans are dropped, dangling substitution links are cleared
and adjacent spans that cannot be told apart are merged.
"""

import re
from bisect import bisect_right
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Union

import structlog

from mdfeedback.errors import InvalidPositionError
from mdfeedback.models import (
    Block,
    ChangeType,
    DeletedSpan,
    HighlightSpan,
    InsertedSpan,
    OriginalSpan,
    Span,
    SpanStatus,
    new_id,
)

logger = structlog.get_logger(__name__)

UNCHANGED_STATUSES = frozenset({SpanStatus.ORIGINAL, SpanStatus.HIGHLIGHTED})
RELABELED_ON_SPLIT = frozenset({SpanStatus.DELETED, SpanStatus.INSERTED})

HEADING_RE = re.compile(r"^(#{1,6}) (.*)$", re.DOTALL)


# --- Block breaks ---


def block_breaks(text: str, heading: bool = False) -> List[Tuple[int, int, int]]:
    """
    Finds where the markup reader would start a new block inside `text`: at a run
    of whitespace-only lines, before a heading line and after one. Inside a heading
    every line break starts a new block.

    Returns (cut start, cut end, heading level of the block that follows) triples.
    A cut covers the separator characters plus the "#" prefix of a heading line.
    """
    if "\n" not in text:
        return []

    cuts: List[Tuple[int, int, int]] = []
    in_heading = heading
    pending: Optional[int] = None
    offset = 0
    for number, line in enumerate(text.split("\n")):
        start, offset = offset, offset + len(line) + 1
        if not line.strip():
            if pending is None:
                pending = max(start - 1, 0)
            continue
        if number == 0:
            continue
        match = HEADING_RE.match(line)
        if pending is not None or in_heading or match:
            level = len(match.group(1)) if match else 0
            cut_start = pending if pending is not None else start - 1
            cuts.append((cut_start, start + (level + 1 if level else 0), level))
            pending = None
        in_heading = match is not None

    if pending is not None:
        cuts.append((pending, len(text), 0))
    return cuts


def split_text_blocks(text: str) -> List[Tuple[str, int]]:
    """
    Cuts text typed mid-line into the parts that land in separate blocks, as
    (text, heading level) pairs. The first part continues the current block.
    """
    # Padding keeps the first and last line from reading as blank lines of their own.
    padded = f"x{text}x"
    parts: List[List] = []
    previous, level = 0, 0
    for start, end, next_level in block_breaks(padded):
        parts.append([padded[previous:start], level])
        previous, level = end, next_level
    parts.append([padded[previous:], level])
    parts[0][0] = parts[0][0][1:]
    parts[-1][0] = parts[-1][0][:-1]
    return [(part, part_level) for part, part_level in parts]


def make_span(status: str, text: str, span_id: Optional[str] = None, paired_with: Optional[str] = None) -> Span:
    """Builds the span variant for `status`. Pairing only applies to deleted/inserted spans."""
    span_id = span_id or new_id()
    if status == SpanStatus.DELETED:
        return DeletedSpan(id=span_id, text=text, paired_with=paired_with)
    if status == SpanStatus.INSERTED:
        return InsertedSpan(id=span_id, text=text, paired_with=paired_with)
    if status == SpanStatus.HIGHLIGHTED:
        return HighlightSpan(id=span_id, text=text)
    return OriginalSpan(id=span_id, text=text)


def paired_with(span: Span) -> Optional[str]:
    return getattr(span, "paired_with", None)


# --- Mutations ---


@dataclass(frozen=True)
class InsertSpan:
    """Insert `span` at a boundary, splitting the span under `position` if needed."""

    position: int
    span: Span


@dataclass(frozen=True)
class MarkRange:
    """Re-tag the text in [start, end) whose status is in `source` as `status`."""

    start: int
    end: int
    status: str
    change_id: Optional[str] = None
    paired_with: Optional[str] = None
    source: FrozenSet[str] = UNCHANGED_STATUSES


@dataclass(frozen=True)
class RemoveRange:
    """Truly remove the text in [start, end). `source=None` removes text of any status."""

    start: int
    end: int
    source: Optional[FrozenSet[str]] = None


@dataclass(frozen=True)
class RestoreIds:
    """Undo the changes carrying `ids`: deleted and highlighted text becomes original, inserted text is removed."""

    ids: FrozenSet[str]


@dataclass(frozen=True)
class SplitBlock:
    """Split the block at `position`. The new block is a heading when `level` is set."""

    position: int
    level: int = 0


@dataclass(frozen=True)
class JoinBlocks:
    """Join block `block` with the block following it."""

    block: int


@dataclass(frozen=True)
class Batch:
    """Steps applied in order and normalized once, as one atomic mutation."""

    steps: Tuple["Mutation", ...]
    label: str = ""


Mutation = Union[InsertSpan, MarkRange, RemoveRange, RestoreIds, SplitBlock, JoinBlocks, Batch]


@dataclass(frozen=True)
class Piece:
    """The part of one span that overlaps a queried range, in global positions."""

    block: int
    span: Span
    start: int
    end: int

    @property
    def status(self) -> str:
        return self.span.status

    @property
    def text(self) -> str:
        return self.span.text


class SpanStore:
    __slots__ = ("blocks", "_starts", "size")

    def __init__(self, blocks: Iterable[Block] = ()):
        self.blocks: Tuple[Block, ...] = tuple(blocks) or (Block(),)
        starts = []
        offset = 0
        for block in self.blocks:
            starts.append(offset)
            offset += len(block.text) + 1
        self._starts: Tuple[int, ...] = tuple(starts)
        self.size: int = offset - 1

    @classmethod
    def from_paragraphs(cls, paragraphs: Sequence[str]) -> "SpanStore":
        blocks = [Block(spans=(OriginalSpan(text=p),) if p else ()) for p in paragraphs]
        return cls(blocks)

    def __eq__(self, other) -> bool:
        if not isinstance(other, SpanStore):
            return NotImplemented
        return self.blocks == other.blocks

    def __hash__(self) -> int:
        return hash(tuple(tuple((s.status, s.text) for s in b.spans) for b in self.blocks))

    def __repr__(self) -> str:
        return f"SpanStore(blocks={len(self.blocks)}, size={self.size})"

    @property
    def text(self) -> str:
        """Concatenated span text of all blocks (one newline between blocks)."""
        return "\n".join(block.text for block in self.blocks)

    @property
    def spans(self) -> List[Span]:
        return [span for block in self.blocks for span in block.spans]

    def block_start(self, index: int) -> int:
        return self._starts[index]

    def block_end(self, index: int) -> int:
        return self._starts[index] + len(self.blocks[index].text)

    # --- Position resolution ---

    def locate(self, position: int) -> Tuple[int, int]:
        """Maps a global position to (block index, offset inside the block)."""
        if position < 0 or position > self.size:
            raise InvalidPositionError(position, self.size)
        index = bisect_right(self._starts, position) - 1
        return index, position - self._starts[index]

    def check_range(self, start: int, end: int) -> None:
        if start < 0 or end > self.size or start > end:
            raise InvalidPositionError(start, self.size, end)

    def segments(self, start: int, end: int) -> List[Tuple[int, int, int]]:
        """Splits [start, end) into non-empty per-block (block, local_start, local_end) ranges."""
        self.check_range(start, end)
        result = []
        first, _ = self.locate(start)
        last, _ = self.locate(end)
        for index in range(first, last + 1):
            block_start = self._starts[index]
            local_start = max(start, block_start) - block_start
            local_end = min(end, self.block_end(index)) - block_start
            if local_start < local_end:
                result.append((index, local_start, local_end))
        return result

    def pieces(self, start: int, end: int) -> Iterator[Piece]:
        """Yields the span portions overlapping [start, end), in document order."""
        for index, local_start, local_end in self.segments(start, end):
            base = self._starts[index]
            offset = 0
            for span in self.blocks[index].spans:
                span_end = offset + len(span.text)
                lo = max(offset, local_start)
                hi = min(span_end, local_end)
                if lo < hi:
                    if lo == offset and hi == span_end:
                        piece_span = span
                    else:
                        piece_span = span.model_copy(update={"text": span.text[lo - offset : hi - offset]})
                    yield Piece(index, piece_span, base + lo, base + hi)
                if span_end >= local_end:
                    break
                offset = span_end

    def neighbors(self, position: int) -> Tuple[Optional[Piece], Optional[Piece]]:
        """Returns the whole spans touching `position` on its left and right inside the same block."""
        index, local = self.locate(position)
        before = after = None
        offset = 0
        base = self._starts[index]
        for span in self.blocks[index].spans:
            span_end = offset + len(span.text)
            if offset < local <= span_end:
                before = Piece(index, span, base + offset, base + span_end)
            if offset <= local < span_end:
                after = Piece(index, span, base + offset, base + span_end)
                break
            offset = span_end
        return before, after

    def char_at(self, position: int) -> Optional[Piece]:
        """The whole span holding the character at `position`, or None at a block end."""
        return self.neighbors(position)[1]

    def find(self, ids: Iterable[str]) -> List[Piece]:
        wanted = set(ids)
        found = []
        for index, block in enumerate(self.blocks):
            offset = self._starts[index]
            for span in block.spans:
                if span.id in wanted:
                    found.append(Piece(index, span, offset, offset + len(span.text)))
                offset += len(span.text)
        return found

    # --- Mutation ---

    def apply(self, mutation: Mutation) -> "SpanStore":
        steps = mutation.steps if isinstance(mutation, Batch) else (mutation,)
        store = self
        for step in steps:
            store = store._apply_step(step)
        result = store.normalized()
        logger.debug(
            "Applied span mutation",
            label=getattr(mutation, "label", type(mutation).__name__),
            steps=len(steps),
            size=result.size,
        )
        return result

    def normalized(self) -> "SpanStore":
        return SpanStore(normalize_blocks(self.blocks))

    def _apply_step(self, step: Mutation) -> "SpanStore":
        if isinstance(step, Batch):
            return self.apply(step)

        blocks = list(self.blocks)

        if isinstance(step, InsertSpan):
            index, local = self.locate(step.position)
            left, right = _split_spans(blocks[index].spans, local)
            blocks[index] = _with_spans(blocks[index], left + [step.span] + right)

        elif isinstance(step, MarkRange):

            def mark(span: Span) -> Optional[Span]:
                if span.status not in step.source:
                    return span
                return make_span(step.status, span.text, step.change_id or span.id, step.paired_with)

            for index, local_start, local_end in self.segments(step.start, step.end):
                blocks[index] = _with_spans(blocks[index], _rewrite(blocks[index].spans, local_start, local_end, mark))

        elif isinstance(step, RemoveRange):

            def remove(span: Span) -> Optional[Span]:
                if step.source is None or span.status in step.source:
                    return None
                return span

            for index, local_start, local_end in self.segments(step.start, step.end):
                blocks[index] = _with_spans(blocks[index], _rewrite(blocks[index].spans, local_start, local_end, remove))

        elif isinstance(step, RestoreIds):
            for index, block in enumerate(blocks):
                restored = []
                for span in block.spans:
                    if span.id not in step.ids:
                        restored.append(span)
                    elif span.status != SpanStatus.INSERTED:
                        restored.append(OriginalSpan(id=span.id, text=span.text))
                blocks[index] = _with_spans(block, restored)

        elif isinstance(step, SplitBlock):
            index, local = self.locate(step.position)
            left, right = _split_spans(blocks[index].spans, local)
            blocks[index : index + 1] = [_with_spans(blocks[index], left), _new_block(step.level, right)]

        elif isinstance(step, JoinBlocks):
            if not 0 <= step.block < len(blocks) - 1:
                raise InvalidPositionError(step.block, len(blocks) - 1)
            head, tail = blocks[step.block], blocks[step.block + 1]
            blocks[step.block : step.block + 2] = [_with_spans(head, list(head.spans) + list(tail.spans))]

        else:
            raise TypeError(f"Unsupported mutation: {type(step).__name__}")

        return SpanStore(blocks)


def _with_spans(block: Block, spans: Sequence[Span]) -> Block:
    return block.model_copy(update={"spans": tuple(spans)})


def _new_block(level: int, spans: Sequence[Span]) -> Block:
    if level:
        return Block(kind="heading", level=level, spans=tuple(spans))
    return Block(spans=tuple(spans))


def _split_spans(spans: Sequence[Span], offset: int) -> Tuple[List[Span], List[Span]]:
    left: List[Span] = []
    right: List[Span] = []
    position = 0
    for span in spans:
        end = position + len(span.text)
        if end <= offset:
            left.append(span)
        elif position >= offset:
            right.append(span)
        else:
            cut = offset - position
            left.append(span.model_copy(update={"text": span.text[:cut]}))
            right.append(span.model_copy(update={"text": span.text[cut:]}))
        position = end
    return left, right


def _rewrite(spans: Sequence[Span], start: int, end: int, fn: Callable[[Span], Optional[Span]]) -> List[Span]:
    left, rest = _split_spans(spans, start)
    middle, right = _split_spans(rest, end - start)
    rewritten = [result for result in (fn(span) for span in middle) if result is not None]
    return left + rewritten + right


# --- Normalization ---


def _mergeable(a: Span, b: Span) -> bool:
    if a.status != b.status:
        return False
    if a.status == SpanStatus.ORIGINAL:
        return True
    return a.id == b.id and paired_with(a) == paired_with(b)


def normalize_spans(spans: Iterable[Span]) -> List[Span]:
    """Drops empty spans and merges adjacent spans that carry nothing to tell them apart."""
    merged: List[Span] = []
    for span in spans:
        if not span.text:
            continue
        if merged and _mergeable(merged[-1], span):
            merged[-1] = merged[-1].model_copy(update={"text": merged[-1].text + span.text})
        else:
            merged.append(span)
    return merged


def _split_at_breaks(block: Block) -> List[Block]:
    """
    Splits a block wherever its text holds a block break, dropping the separator.
    A deletion or insertion cut in two keeps its id on the first fragment only.
    """
    cuts = block_breaks(block.text, block.kind == "heading")
    if not cuts:
        return [block]

    result = []
    current = block
    rest = list(block.spans)
    consumed = 0
    for start, end, level in cuts:
        head, tail = _split_spans(rest, start - consumed)
        _, rest = _split_spans(tail, end - start)
        if head and rest and rest[0].status in RELABELED_ON_SPLIT and rest[0].id == head[-1].id:
            rest[0] = rest[0].model_copy(update={"id": new_id(), "paired_with": None})
        result.append(_with_spans(current, head))
        current = _new_block(level, ())
        consumed = end
    result.append(_with_spans(current, rest))
    logger.debug("Split block at line breaks", parts=len(result))
    return result


def _valid_links(blocks: Sequence[Block]) -> Set[Tuple[str, str, int]]:
    """Returns the (deleted id, inserted id, block) links present on both sides within one block."""
    deleted: Set[Tuple[str, str, int]] = set()
    inserted: Set[Tuple[str, str, int]] = set()
    for index, block in enumerate(blocks):
        for span in block.spans:
            partner = paired_with(span)
            if partner is None:
                continue
            if span.status == SpanStatus.DELETED:
                deleted.add((span.id, partner, index))
            elif span.status == SpanStatus.INSERTED:
                inserted.add((partner, span.id, index))
    return deleted & inserted


def normalize_blocks(blocks: Sequence[Block]) -> List[Block]:
    blocks = [part for block in blocks for part in _split_at_breaks(block)]
    links = _valid_links(blocks)
    result = []
    for index, block in enumerate(blocks):
        repaired = []
        for span in block.spans:
            partner = paired_with(span)
            if partner is not None:
                key = (span.id, partner, index) if span.status == SpanStatus.DELETED else (partner, span.id, index)
                if key not in links:
                    logger.debug("Dropping dangling substitution link", span_id=span.id, paired_with=partner)
                    span = span.model_copy(update={"paired_with": None})
            repaired.append(span)
        result.append(_with_spans(block, normalize_spans(repaired)))
    return result


# --- Grouping ---


@dataclass
class SpanGroup:
    """
    A run of spans within one block that reads as one unit: plain original text,
    or one change token. Shared by the markup serializer and the change index so
    both agree on what a single change is.
    """

    kind: str
    spans: List[Span]
    inserted: List[Span] = field(default_factory=list)
    start: int = 0
    end: int = 0
    change_id: Optional[str] = None

    @property
    def text(self) -> str:
        return "".join(s.text for s in self.spans) + "".join(s.text for s in self.inserted)

    @property
    def deleted_text(self) -> str:
        return "".join(s.text for s in self.spans if s.status == SpanStatus.DELETED)

    @property
    def inserted_text(self) -> str:
        own = self.inserted if self.kind == ChangeType.SUBSTITUTION else self.spans
        return "".join(s.text for s in own if s.status == SpanStatus.INSERTED)

    @property
    def member_ids(self) -> List[str]:
        ids: List[str] = []
        if self.change_id:
            ids.append(self.change_id)
        for span in self.spans + self.inserted:
            if span.id not in ids:
                ids.append(span.id)
        return ids

    @property
    def is_change(self) -> bool:
        return self.kind != SpanStatus.ORIGINAL


def group_spans(spans: Sequence[Span]) -> List[SpanGroup]:
    """
    Groups one block's spans in a single pass.

    Consecutive deleted spans form one deletion. When the inserted spans directly
    after such a run hold the partner of one of its spans, the run and those
    insertions form a substitution. Consecutive inserted spans form one insertion,
    consecutive highlight spans sharing an id form one highlight.
    """
    groups: List[SpanGroup] = []
    offset = 0
    i = 0
    n = len(spans)

    def run_end(start: int, predicate: Callable[[Span], bool]) -> int:
        j = start
        while j < n and predicate(spans[j]):
            j += 1
        return j

    while i < n:
        span = spans[i]
        if span.status == SpanStatus.ORIGINAL:
            j = run_end(i, lambda s: s.status == SpanStatus.ORIGINAL)
            group = SpanGroup(SpanStatus.ORIGINAL, list(spans[i:j]))
        elif span.status == SpanStatus.HIGHLIGHTED:
            j = run_end(i, lambda s: s.status == SpanStatus.HIGHLIGHTED and s.id == span.id)
            group = SpanGroup(ChangeType.HIGHLIGHT, list(spans[i:j]), change_id=span.id)
        elif span.status == SpanStatus.DELETED:
            j = run_end(i, lambda s: s.status == SpanStatus.DELETED)
            k = run_end(j, lambda s: s.status == SpanStatus.INSERTED)
            following = {s.id for s in spans[j:k]}
            anchor = next((s for s in spans[i:j] if paired_with(s) in following), None)
            if anchor is not None:
                group = SpanGroup(ChangeType.SUBSTITUTION, list(spans[i:j]), list(spans[j:k]), change_id=anchor.id)
                j = k
            else:
                group = SpanGroup(ChangeType.DELETION, list(spans[i:j]), change_id=span.id)
        else:
            j = run_end(i, lambda s: s.status == SpanStatus.INSERTED)
            group = SpanGroup(ChangeType.INSERTION, list(spans[i:j]), change_id=span.id)

        group.start = offset
        offset += len(group.text)
        group.end = offset
        groups.append(group)
        i = j

    return groups
