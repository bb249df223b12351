"""
Mini tests for DOCX import: tracked changes, comments, headings.

Run: python3 test_ingest.py
From: python/
"""

import io
import sys

from docx import Document
from docx.oxml import parse_xml
from docx.oxml.ns import nsdecls

sys.path.insert(0, '.')

from mdfeedback.ingest import extract_markup_from_stream
from mdfeedback.utils.docx import read_comments


def _tracked(tag, text, change_id, author=None):
    """Builds a <w:del> or <w:ins> wrapping one run."""
    text_tag = "w:delText" if tag == "w:del" else "w:t"
    author_attr = f' w:author="{author}"' if author else ""
    return parse_xml(
        f'<{tag} {nsdecls("w")} w:id="{change_id}"{author_attr}>'
        f'<w:r><{text_tag} xml:space="preserve">{text}</{text_tag}></w:r>'
        f"</{tag}>"
    )


def _substitution_docx(author=None, google_order=False):
    doc = Document()
    doc.add_heading("Title", level=1)
    p = doc.add_paragraph("The ")
    deletion = _tracked("w:del", "lazy", 1, author)
    insertion = _tracked("w:ins", "sleeping", 2, author)
    for element in (insertion, deletion) if google_order else (deletion, insertion):
        p._p.append(element)
    p.add_run(" dog")
    p2 = doc.add_paragraph("Keep ")
    p2._p.append(_tracked("w:ins", "this", 3, author))
    return doc


def _extract(doc):
    stream = io.BytesIO()
    doc.save(stream)
    return extract_markup_from_stream(stream)


def test_substitution_and_heading():
    result = _extract(_substitution_docx())
    assert result.markup == "# Title\n\nThe {~~lazy~>sleeping~~} dog\n\nKeep {++this++}"
    assert result.change_count == 2
    assert result.comment_count == 0
    print("PASS: substitution and heading")


def test_insertion_before_deletion_is_one_substitution():
    result = _extract(_substitution_docx(google_order=True))
    assert "The {~~lazy~>sleeping~~} dog" in result.markup
    print("PASS: ins+del order")


def test_author_attribution_without_comments():
    result = _extract(_substitution_docx(author="Ann"))
    assert "The {~~lazy~>sleeping~~}{>>Ann<<} dog" in result.markup
    assert "Keep {++this++}{>>Ann<<}" in result.markup
    assert result.comment_count == 2
    print("PASS: author attribution")


def test_comment_on_plain_text_becomes_highlight():
    doc = Document()
    p = doc.add_paragraph()
    anchor = p.add_run("Important")
    p.add_run(" clause")
    doc.add_comment(anchor, text="Check this", author="Ann")

    result = _extract(doc)
    assert result.markup == "{==Important==}{>>Ann: Check this<<} clause"
    assert result.comment_count == 1
    print("PASS: plain-text comment")


def test_bold_and_italic_runs():
    doc = Document()
    p = doc.add_paragraph("Plain ")
    p.add_run("strong").bold = True
    p.add_run(" and ")
    p.add_run("soft").italic = True
    result = _extract(doc)
    assert result.markup == "Plain **strong** and _soft_"
    print("PASS: run formatting")


def test_read_comments_from_saved_part():
    doc = Document()
    first = doc.add_paragraph().add_run("One")
    second = doc.add_paragraph().add_run("Two")
    doc.add_comment(first, text="First note", author="Ann")
    doc.add_comment(second, text="Second note", author="Bo")
    stream = io.BytesIO()
    doc.save(stream)

    comments = read_comments(Document(stream))
    assert [(c["author"], c["text"]) for c in comments.values()] == [("Ann", "First note"), ("Bo", "Second note")]
    assert read_comments(Document()) == {}
    print("PASS: comments part read")


def test_invalid_file_raises_value_error():
    try:
        extract_markup_from_stream(io.BytesIO(b"not a docx"))
        assert False, "expected ValueError"
    except ValueError as e:
        assert "Could not extract text" in str(e)
    print("PASS: invalid file")


if __name__ == "__main__":
    tests = [
        test_substitution_and_heading,
        test_insertion_before_deletion_is_one_substitution,
        test_author_attribution_without_comments,
        test_comment_on_plain_text_becomes_highlight,
        test_bold_and_italic_runs,
        test_read_comments_from_saved_part,
        test_invalid_file_raises_value_error,
    ]

    passed = 0
    failed = 0
    for t in tests:
        try:
            t()
            passed += 1
        except Exception as e:
            print(f"FAIL: {t.__name__} — {e}")
            failed += 1

    print(f"\n{'=' * 50}")
    print(f"Results: {passed} passed, {failed} failed out of {len(tests)} tests")
    if failed > 0:
        sys.exit(1)
    else:
        print("All tests passed!")
