"""
CriticMarkup codec.

Serializes a SpanStore (plus comment threads) to the bracketed-token dialect and
parses it back:

    {++inserted++}  {--deleted--}  {~~old~>new~~}  {>>comment<<}  {==highlight==}

Also hosts the YAML front matter handling and the accept-all / reject-all derivations.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

import structlog
import yaml

from mdfeedback.changes import build_change_index, summarize
from mdfeedback.models import Block, ChangeType, Span, SpanStatus, new_id, utc_now
from mdfeedback.redline.comments import CommentStore
from mdfeedback.redline.store import HEADING_RE, SpanGroup, SpanStore, block_breaks, group_spans, make_span

logger = structlog.get_logger(__name__)

# Order matters: the substitution delimiter starts like no other, but must win over
# deletion/insertion when a token contains "--" or "++".
TOKEN_RE = re.compile(
    r"\{~~(?P<old>[\s\S]+?)~>(?P<new>[\s\S]*?)~~\}"
    r"|\{--(?P<deleted>[\s\S]+?)--\}"
    r"|\{\+\+(?P<inserted>[\s\S]+?)\+\+\}"
    r"|\{>>(?P<comment>[\s\S]+?)<<\}"
    r"|\{==(?P<highlighted>[\s\S]+?)==\}"
)

FRONT_MATTER_RE = re.compile(r"^---\n([\s\S]*?)\n---\n*")
COMMENT_RE = re.compile(r"\{>>[\s\S]+?<<\}")
BLOCK_SEPARATOR = "\n\n"
METADATA_KEY = "criticmark"

ACCEPT_STATUSES = frozenset({SpanStatus.ORIGINAL, SpanStatus.INSERTED, SpanStatus.HIGHLIGHTED})
REJECT_STATUSES = frozenset({SpanStatus.ORIGINAL, SpanStatus.DELETED, SpanStatus.HIGHLIGHTED})


@dataclass
class ParsedMarkup:
    store: SpanStore
    comments: CommentStore
    metadata: Dict[str, Any] = field(default_factory=dict)


# --- Serialize ---


def _token(group: SpanGroup) -> str:
    if group.kind == ChangeType.SUBSTITUTION:
        return f"{{~~{group.deleted_text}~>{group.inserted_text}~~}}"
    if group.kind == ChangeType.DELETION:
        return f"{{--{group.deleted_text}--}}"
    if group.kind == ChangeType.INSERTION:
        return f"{{++{group.inserted_text}++}}"
    if group.kind == ChangeType.HIGHLIGHT:
        return f"{{=={group.text}==}}"
    return group.text


def serialize_markup(store: SpanStore, comments: Optional[CommentStore] = None) -> str:
    """
    Walks the blocks in order and emits one token per change group, followed by
    its comment threads in creation order. Empty blocks are skipped.
    """
    comments = comments or CommentStore()
    blocks = [block for block in store.blocks if block.spans]
    grouped = [group_spans(block.spans) for block in blocks]

    output = []
    for i, (block, groups) in enumerate(zip(blocks, grouped)):
        parts = [block.prefix]
        for j, group in enumerate(groups):
            parts.append(_token(group))
            if not group.is_change:
                continue
            # A highlight continuing into the next block carries its comments on its last fragment.
            if group.kind == ChangeType.HIGHLIGHT and j == len(groups) - 1 and i + 1 < len(grouped):
                following = grouped[i + 1][0]
                if following.kind == ChangeType.HIGHLIGHT and following.change_id == group.change_id:
                    continue
            for thread in comments.threads_for(group.member_ids):
                parts.append(f"{{>>{thread.text}<<}}")
        output.append("".join(parts))

    return BLOCK_SEPARATOR.join(output)


# --- Parse ---


def strip_front_matter(text: str) -> Tuple[Dict[str, Any], str]:
    """Splits a leading `---` ... `---` block from the body. Returns (metadata, body)."""
    match = FRONT_MATTER_RE.match(text)
    if not match:
        return {}, text

    body = text[match.end() :]
    try:
        metadata = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        logger.warning("Ignoring unreadable front matter", error=str(e))
        return {}, body

    if not isinstance(metadata, dict):
        return {}, body
    return metadata, body


def split_blocks(text: str) -> List[str]:
    """
    Blank lines separate blocks. A heading line is always a block of its own,
    even when only a single newline follows it. Line breaks inside a comment
    token never end a block.
    """
    masked = COMMENT_RE.sub(lambda m: m.group(0).replace("\n", " "), text)
    first_line = masked.split("\n", 1)[0]

    blocks: List[str] = []
    previous, prefix = 0, ""
    for start, end, level in block_breaks(masked, heading=HEADING_RE.match(first_line) is not None):
        blocks.append(prefix + text[previous:start])
        previous, prefix = end, ("#" * level + " " if level else "")
    blocks.append(prefix + text[previous:])
    return [block for block in blocks if block.strip()]


class _ParseState:
    def __init__(self, id_factory: Callable[[], str]):
        self.new_id = id_factory
        self.comments = CommentStore()
        self.last_change_id: Optional[str] = None
        # Highlight that ended the previous block with no comment after it.
        self.trailing_highlight: Optional[str] = None


def _parse_block(content: str, state: _ParseState) -> List[Span]:
    spans: List[Span] = []
    position = 0
    carried = state.trailing_highlight
    state.trailing_highlight = None
    last_kind = None
    last_end = 0

    for match in TOKEN_RE.finditer(content):
        if match.start() > position:
            spans.append(make_span(SpanStatus.ORIGINAL, content[position : match.start()], state.new_id()))

        if match.group("old") is not None:
            deletion_id = state.new_id()
            new_text = match.group("new")
            if new_text:
                insertion_id = state.new_id()
                spans.append(make_span(SpanStatus.DELETED, match.group("old"), deletion_id, insertion_id))
                spans.append(make_span(SpanStatus.INSERTED, new_text, insertion_id, deletion_id))
            else:
                spans.append(make_span(SpanStatus.DELETED, match.group("old"), deletion_id))
            state.last_change_id = deletion_id
            last_kind = ChangeType.SUBSTITUTION
        elif match.group("deleted") is not None:
            state.last_change_id = state.new_id()
            spans.append(make_span(SpanStatus.DELETED, match.group("deleted"), state.last_change_id))
            last_kind = ChangeType.DELETION
        elif match.group("inserted") is not None:
            state.last_change_id = state.new_id()
            spans.append(make_span(SpanStatus.INSERTED, match.group("inserted"), state.last_change_id))
            last_kind = ChangeType.INSERTION
        elif match.group("highlighted") is not None:
            if match.start() == 0 and carried:
                highlight_id = carried
            else:
                highlight_id = state.new_id()
            spans.append(make_span(SpanStatus.HIGHLIGHTED, match.group("highlighted"), highlight_id))
            state.last_change_id = highlight_id
            last_kind = ChangeType.HIGHLIGHT
        else:
            if state.last_change_id is None:
                logger.warning("Dropping comment with no preceding change", comment=match.group("comment")[:40])
            else:
                state.comments.add_comment(state.last_change_id, match.group("comment"))
            last_kind = "comment"

        position = last_end = match.end()

    if position < len(content):
        spans.append(make_span(SpanStatus.ORIGINAL, content[position:], state.new_id()))

    if last_kind == ChangeType.HIGHLIGHT and last_end == len(content):
        state.trailing_highlight = state.last_change_id

    return spans


def parse_markup(text: str, id_factory: Callable[[], str] = new_id) -> ParsedMarkup:
    """
    Parses CriticMarkup into a SpanStore and its comment threads.
    Never fails: unterminated or malformed tokens stay literal original text.
    """
    metadata, body = strip_front_matter(text)
    state = _ParseState(id_factory)

    blocks = []
    for raw in split_blocks(body):
        heading = HEADING_RE.match(raw)
        if heading:
            kind, level, content = "heading", len(heading.group(1)), heading.group(2)
        else:
            kind, level, content = "paragraph", 0, raw
        blocks.append(Block(kind=kind, level=level, spans=tuple(_parse_block(content, state))))

    store = SpanStore(blocks).normalized()
    logger.debug("Parsed markup", blocks=len(store.blocks), comments=len(state.comments))
    return ParsedMarkup(store=store, comments=state.comments, metadata=metadata)


# --- Derivations ---


def _derive(store: SpanStore, keep: FrozenSet[str]) -> str:
    blocks = []
    for block in store.blocks:
        text = "".join(span.text for span in block.spans if span.status in keep)
        if text:
            blocks.append(block.prefix + text)
    return BLOCK_SEPARATOR.join(blocks)


def accept_all(store: SpanStore) -> str:
    """Clean text with every change accepted: insertions kept, deletions and comments dropped."""
    return _derive(store, ACCEPT_STATUSES)


def reject_all(store: SpanStore) -> str:
    """Clean text with every change rejected: deletions restored, insertions and comments dropped."""
    return _derive(store, REJECT_STATUSES)


def accept_markup(markup: str) -> str:
    return accept_all(parse_markup(markup).store)


def reject_markup(markup: str) -> str:
    return reject_all(parse_markup(markup).store)


# --- Export ---


def build_front_matter(metadata: Dict[str, Any]) -> str:
    dumped = yaml.safe_dump(metadata, sort_keys=False, default_flow_style=False, allow_unicode=True)
    return f"---\n{dumped}---\n"


def export_markup(
    store: SpanStore,
    comments: Optional[CommentStore] = None,
    metadata: Optional[Dict[str, Any]] = None,
    edit_date: Optional[str] = None,
) -> str:
    """
    Serialized markup prefixed with regenerated front matter. Existing metadata keys
    are carried over; the `criticmark` section is rebuilt from the current changes.
    """
    comments = comments or CommentStore()
    counts = summarize(build_change_index(store, comments))
    header = dict(metadata or {})
    header[METADATA_KEY] = {
        "edit_date": edit_date or utc_now().isoformat().replace("+00:00", "Z"),
        "changes_total": counts["total"],
        "changes_commented": counts["commented"],
        "changes_uncommented": counts["uncommented"],
    }
    return build_front_matter(header) + serialize_markup(store, comments) + "\n"
