import io
from typing import Dict, List, Optional

import structlog
from docx import Document
from docx.oxml.ns import qn
from docx.text.paragraph import Paragraph
from docx.text.run import Run
from pydantic import BaseModel

from mdfeedback.utils.docx import (
    MARKER_TAGS,
    get_formatted_run_text,
    get_paragraph_prefix,
    is_reference_run,
    iter_body_paragraphs,
    read_comments,
    referenced_comment_ids,
)

logger = structlog.get_logger(__name__)

DEL = qn("w:del")
INS = qn("w:ins")
RUN = qn("w:r")
HYPERLINK = qn("w:hyperlink")


class IngestResult(BaseModel):
    markup: str
    change_count: int = 0
    comment_count: int = 0


class _WalkContext:
    def __init__(self, comment_map: Dict[str, str]):
        self.comment_map = comment_map
        self.change_count = 0
        self.comment_count = 0


def extract_markup_from_stream(file_stream: io.BytesIO) -> IngestResult:
    """
    Converts a DOCX file into CriticMarkup.

    Tracked insertions and deletions become change tokens (an adjacent deletion and
    insertion become one substitution). Comments anchored on a change follow its
    token; comments on untouched text wrap that text in a highlight.
    """
    try:
        # Ensure stream is at start
        file_stream.seek(0)
        doc = Document(file_stream)

        comment_map = _build_comment_map(read_comments(doc), referenced_comment_ids(doc))
        ctx = _WalkContext(comment_map)

        entries = []
        for paragraph in iter_body_paragraphs(doc):
            prefix = get_paragraph_prefix(paragraph)
            content = _walk_paragraph(paragraph, ctx)
            if content.strip():
                entries.append(prefix + content)

        result = IngestResult(
            markup="\n\n".join(entries),
            change_count=ctx.change_count,
            comment_count=ctx.comment_count,
        )
        logger.info("Imported DOCX", changes=result.change_count, comments=result.comment_count)
        return result

    except Exception as e:
        logger.error(f"Text extraction failed: {e}", exc_info=True)
        raise ValueError(f"Could not extract text: {str(e)}") from e


def _build_comment_map(comments: Dict[str, dict], referenced: set) -> Dict[str, str]:
    """
    Maps anchored comment ids to "Author: text".
    Comments with no anchor in the body are replies: they are appended, one per line,
    to the closest preceding anchored comment.
    """
    result: Dict[str, str] = {}
    last_anchored: Optional[str] = None
    for c_id, data in comments.items():
        if not data["text"]:
            continue
        entry = f"{data['author']}: {data['text']}" if data["author"] else data["text"]
        if c_id in referenced:
            result[c_id] = entry
            last_anchored = c_id
        elif last_anchored:
            result[last_anchored] = f"{result[last_anchored]}\n{entry}"
    return result


def _tracked_text(element, paragraph: Paragraph) -> str:
    return "".join(get_formatted_run_text(Run(r, paragraph)) for r in element.findall(RUN))


def _comment_refs(element, ctx: _WalkContext) -> List[str]:
    refs = []
    for ref in element.iter(qn("w:commentReference")):
        c_id = ref.get(qn("w:id"))
        if c_id in ctx.comment_map:
            refs.append(c_id)
    return refs


def _next_content(children: list, index: int) -> Optional[int]:
    """Index of the next element carrying content, skipping range markers and reference runs."""
    for j in range(index + 1, len(children)):
        child = children[j]
        if child.tag in MARKER_TAGS or is_reference_run(child):
            continue
        return j
    return None


def _comments_on_changes(children: list, ctx: _WalkContext) -> set:
    """Ids of comment ranges in this paragraph that contain a tracked change."""
    open_ranges: set = set()
    on_change: set = set()
    for child in children:
        markers = [child] if child.tag in MARKER_TAGS else []
        if child.tag in (DEL, INS):
            markers = list(child)
        for marker in markers:
            c_id = marker.get(qn("w:id"))
            if marker.tag == qn("w:commentRangeStart") and c_id in ctx.comment_map:
                open_ranges.add(c_id)
            elif marker.tag == qn("w:commentRangeEnd"):
                open_ranges.discard(c_id)
        if child.tag in (DEL, INS):
            on_change |= open_ranges
    return on_change


def _walk_paragraph(paragraph: Paragraph, ctx: _WalkContext) -> str:
    children = list(paragraph._element.iterchildren())
    on_change = _comments_on_changes(children, ctx)

    parts: List[str] = []
    # Plain-text comment ranges collect their text for {==...==} wrapping
    plain_ranges: Dict[str, List[str]] = {}

    def emit_text(text: str):
        if plain_ranges:
            for collected in plain_ranges.values():
                collected.append(text)
        else:
            parts.append(text)

    def emit_comments(refs: List[str], author: Optional[str]):
        if refs:
            for c_id in refs:
                parts.append(f"{{>>{ctx.comment_map[c_id]}<<}}")
                ctx.comment_count += 1
        elif author:
            # Attribution for changes that carry no comment
            parts.append(f"{{>>{author}<<}}")
            ctx.comment_count += 1

    i = 0
    while i < len(children):
        child = children[i]
        tag = child.tag

        if tag == qn("w:commentRangeStart"):
            c_id = child.get(qn("w:id"))
            if c_id in ctx.comment_map and c_id not in on_change:
                plain_ranges[c_id] = []

        elif tag == qn("w:commentRangeEnd"):
            collected = plain_ranges.pop(child.get(qn("w:id")), None)
            if collected:
                parts.append(f"{{=={''.join(collected)}==}}")

        elif tag == RUN:
            if is_reference_run(child):
                for c_id in _comment_refs(child, ctx):
                    parts.append(f"{{>>{ctx.comment_map[c_id]}<<}}")
                    ctx.comment_count += 1
            else:
                text = get_formatted_run_text(Run(child, paragraph))
                if text:
                    emit_text(text)

        elif tag == HYPERLINK:
            text = _tracked_text(child, paragraph)
            if text:
                emit_text(text)

        elif tag in (DEL, INS):
            j = _next_content(children, i)
            partner = children[j] if j is not None else None

            if partner is not None and {tag, partner.tag} == {DEL, INS}:
                # Word writes del+ins, Google Docs ins+del: both are one substitution
                deleted, inserted = (child, partner) if tag == DEL else (partner, child)
                old = _tracked_text(deleted, paragraph)
                new = _tracked_text(inserted, paragraph)
                if old and new:
                    parts.append(f"{{~~{old}~>{new}~~}}")
                elif old or new:
                    parts.append(f"{{--{old}--}}" if old else f"{{++{new}++}}")
                if old or new:
                    ctx.change_count += 1
                    emit_comments(_comment_refs(child, ctx) + _comment_refs(partner, ctx), child.get(qn("w:author")))
                i = j
            else:
                text = _tracked_text(child, paragraph)
                if text:
                    parts.append(f"{{--{text}--}}" if tag == DEL else f"{{++{text}++}}")
                    ctx.change_count += 1
                    emit_comments(_comment_refs(child, ctx), child.get(qn("w:author")))

        # Other elements (bookmarks, proofErr, fields) carry no reviewable text
        i += 1

    return "".join(parts)
