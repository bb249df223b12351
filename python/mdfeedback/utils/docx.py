"""
Low-level helpers for reading DOCX XML structures with python-docx.
"""

import re
from typing import Dict, Iterator, Set

import structlog
from docx.document import Document as DocumentObject
from docx.opc.constants import RELATIONSHIP_TYPE as RT
from docx.oxml.ns import qn
from docx.text.paragraph import Paragraph
from docx.text.run import Run
from lxml import etree

logger = structlog.get_logger(__name__)

MAX_HEADING_LEVEL = 6
HEADING_STYLE_RE = re.compile(r"^heading\s*(\d+)$", re.IGNORECASE)

# Elements that sit between tracked changes without carrying content.
MARKER_TAGS = {
    qn("w:commentRangeStart"),
    qn("w:commentRangeEnd"),
    qn("w:bookmarkStart"),
    qn("w:bookmarkEnd"),
    qn("w:proofErr"),
}


def get_heading_level(paragraph: Paragraph) -> int:
    """
    Heading level from the paragraph style: 'Heading 2' -> 2, 'Title' -> 1, body text -> 0.
    Levels past 6 are clamped since Markdown stops there.
    """
    style = paragraph.style
    name = (style.name if style is not None else "") or ""
    if name == "Title":
        return 1
    match = HEADING_STYLE_RE.match(name)
    if not match:
        return 0
    return min(int(match.group(1)), MAX_HEADING_LEVEL)


def get_paragraph_prefix(paragraph: Paragraph) -> str:
    level = get_heading_level(paragraph)
    return "#" * level + " " if level else ""


def get_run_style_marker(run: Run) -> str:
    """Emphasis marker for explicit run formatting, bold outside italic: '**_'."""
    return ("**" if run.bold else "") + ("_" if run.italic else "")


def apply_formatting(text: str, marker: str) -> str:
    """
    Wraps each line of `text` in `marker`. Line breaks and edge whitespace stay outside
    the markers, otherwise Markdown does not read them as emphasis.
    Example: ' A\\nB' with '**' -> ' **A**\\n**B**'
    """
    if not marker:
        return text
    closing = marker[::-1]
    lines = []
    for line in text.split("\n"):
        core = line.strip()
        if core:
            lead = line[: len(line) - len(line.lstrip())]
            trail = line[len(line.rstrip()) :]
            line = f"{lead}{marker}{core}{closing}{trail}"
        lines.append(line)
    return "\n".join(lines)


def get_run_text(run: Run) -> str:
    """
    Extracts text from a run (inserted or deleted), converting <w:tab/> to spaces
    and <w:br/> to newlines. Standard run.text ignores delText.
    """
    text = ""
    for child in run._element:
        if child.tag in (qn("w:t"), qn("w:delText")):
            text += child.text or ""
        elif child.tag == qn("w:tab"):
            text += " "
        elif child.tag in (qn("w:br"), qn("w:cr")):
            text += "\n"
    return text


def get_formatted_run_text(run: Run) -> str:
    return apply_formatting(get_run_text(run), get_run_style_marker(run))


def is_reference_run(element) -> bool:
    """A run holding only a comment reference mark (no visible text)."""
    return element.tag == qn("w:r") and element.find(qn("w:commentReference")) is not None


def iter_body_paragraphs(doc: DocumentObject) -> Iterator[Paragraph]:
    """
    Yields body paragraphs in document order.
    Tables are skipped: they have no representation in the markup.
    """
    for child in doc.element.body.iterchildren():
        if child.tag == qn("w:p"):
            yield Paragraph(child, doc)
        elif child.tag == qn("w:tbl"):
            logger.debug("Skipping table")


def referenced_comment_ids(doc: DocumentObject) -> Set[str]:
    return {ref.get(qn("w:id")) for ref in doc.element.xpath("//w:commentReference")}


def read_comments(doc: DocumentObject) -> Dict[str, dict]:
    """
    Reads word/comments.xml into {comment_id: {author, text, date}}, in file order.
    Returns an empty map when the document has no comments part.
    """
    data: Dict[str, dict] = {}
    comments_part = None
    for rel in doc.part.rels.values():
        if rel.reltype == RT.COMMENTS:
            comments_part = rel.target_part
            break
    if comments_part is None:
        return data

    # Older python-docx versions load comments.xml as a generic Part: read the raw blob.
    element = etree.fromstring(comments_part.blob)

    for c in element.findall(qn("w:comment")):
        c_id = c.get(qn("w:id"))
        text_parts = []
        for t in c.iter(qn("w:t")):
            if t.text:
                text_parts.append(t.text)

        data[c_id] = {
            "author": c.get(qn("w:author")) or "",
            "text": " ".join(text_parts).strip(),
            "date": c.get(qn("w:date")) or "",
        }

    return data
