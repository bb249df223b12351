"""
Change Index: a read-only projection of the span store into discrete change records.
"""

import re
from typing import Dict, Iterable, List, Optional, Set

import structlog

from mdfeedback.models import ChangeRecord, ChangeType, SpanStatus
from mdfeedback.redline.comments import CommentStore
from mdfeedback.redline.store import SpanStore, group_spans

logger = structlog.get_logger(__name__)

ELLIPSIS = "..."
_WHITESPACE = re.compile(r"\s+")


def _last_words(text: str, count: int) -> str:
    words = _WHITESPACE.split(text.strip()) if count > 0 and text.strip() else []
    if len(words) <= count:
        return text.strip() if words else ""
    return ELLIPSIS + " ".join(words[-count:])


def _first_words(text: str, count: int) -> str:
    words = _WHITESPACE.split(text.strip()) if count > 0 and text.strip() else []
    if len(words) <= count:
        return text.strip() if words else ""
    return " ".join(words[:count]) + ELLIPSIS


def _reads_as_one(previous: ChangeRecord, trailing: Optional[ChangeRecord], comments: CommentStore) -> bool:
    return previous is trailing and not comments.threads_for(previous.member_ids)


def build_change_index(
    store: SpanStore, comments: Optional[CommentStore] = None, context_words: int = 5
) -> List[ChangeRecord]:
    """
    Groups spans into change records in one pass over the blocks.

    Context is the unmarked original text of the same block on each side of the
    change, cut to `context_words` words. Highlight fragments that continue from
    one block into the next share an id and are merged into one record. So are two
    highlights meeting across a block boundary when the first has no comments,
    since the markup cannot tell them apart from one.
    """
    comments = comments or CommentStore()
    records: List[ChangeRecord] = []
    # Highlight record that ends the last non-empty block.
    trailing: Optional[ChangeRecord] = None

    for index, block in enumerate(store.blocks):
        groups = group_spans(block.spans)
        base = store.block_start(index)

        # Original text after each group, built back to front.
        after: List[str] = [""] * (len(groups) + 1)
        for k in range(len(groups) - 1, -1, -1):
            own = groups[k].text if groups[k].kind == SpanStatus.ORIGINAL else ""
            after[k] = own + after[k + 1]

        before = ""
        for k, group in enumerate(groups):
            if not group.is_change:
                before += group.text
                continue

            record = ChangeRecord(
                type=group.kind,
                id=group.change_id,
                member_ids=group.member_ids,
                context_before=_last_words(before, context_words),
                context_after=_first_words(after[k + 1], context_words),
                start=base + group.start,
                end=base + group.end,
            )
            if group.kind == ChangeType.HIGHLIGHT:
                record.highlighted_text = group.text
            if group.kind in (ChangeType.DELETION, ChangeType.SUBSTITUTION):
                record.deleted_text = group.deleted_text
            if group.kind in (ChangeType.INSERTION, ChangeType.SUBSTITUTION):
                record.inserted_text = group.inserted_text

            previous = records[-1] if records else None
            if (
                previous is not None
                and record.type == ChangeType.HIGHLIGHT
                and previous.type == ChangeType.HIGHLIGHT
                and (previous.id == record.id or (k == 0 and _reads_as_one(previous, trailing, comments)))
            ):
                previous.highlighted_text = f"{previous.highlighted_text}\n{record.highlighted_text}"
                previous.end = record.end
                previous.context_after = record.context_after
                if previous.id != record.id:
                    # Comments follow the last fragment in markup, so the merged record takes its id.
                    previous.id = record.id
                    previous.member_ids = previous.member_ids + [i for i in record.member_ids if i not in previous.member_ids]
                continue

            records.append(record)

        if groups:
            trailing = records[-1] if groups[-1].kind == ChangeType.HIGHLIGHT else None

    for record in records:
        record.comments = comments.threads_for(record.member_ids)

    logger.debug("Built change index", records=len(records))
    return records


def live_change_ids(records: Iterable[ChangeRecord]) -> Set[str]:
    """Every id a comment may be keyed by: record ids and the ids of all their member spans."""
    ids: Set[str] = set()
    for record in records:
        ids.add(record.id)
        ids.update(record.member_ids)
    return ids


def find_change(records: Iterable[ChangeRecord], change_id: str) -> Optional[ChangeRecord]:
    """Finds the record a change id belongs to, by its own id or any member span id."""
    for record in records:
        if record.id == change_id or change_id in record.member_ids:
            return record
    return None


def summarize(records: Iterable[ChangeRecord]) -> Dict[str, int]:
    """Totals used by the export front matter and the command line report."""
    counts = {"total": 0, "commented": 0, "uncommented": 0}
    counts.update({t: 0 for t in (ChangeType.DELETION, ChangeType.INSERTION, ChangeType.SUBSTITUTION, ChangeType.HIGHLIGHT)})
    for record in records:
        counts["total"] += 1
        counts[record.type] += 1
        counts["commented" if record.comments else "uncommented"] += 1
    return counts
