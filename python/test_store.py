"""
Mini tests for the span store: positions, mutations, normalization, grouping.

Run: python3 test_store.py
From: python/
"""

import sys

sys.path.insert(0, '.')

from mdfeedback.errors import InvalidPositionError
from mdfeedback.models import Block, DeletedSpan, HighlightSpan, InsertedSpan, OriginalSpan
from mdfeedback.redline.store import (
    Batch,
    InsertSpan,
    JoinBlocks,
    MarkRange,
    RemoveRange,
    RestoreIds,
    SpanStore,
    SplitBlock,
    block_breaks,
    group_spans,
    split_text_blocks,
)


def _store(*spans):
    return SpanStore([Block(spans=tuple(spans))])


def test_positions_span_blocks():
    store = SpanStore.from_paragraphs(["abc", "de"])
    assert store.size == 6
    assert store.text == "abc\nde"
    assert store.locate(0) == (0, 0)
    assert store.locate(3) == (0, 3)
    assert store.locate(4) == (1, 0)
    assert store.locate(6) == (1, 2)
    for bad in (-1, 7):
        try:
            store.locate(bad)
            assert False, f"position {bad} should be rejected"
        except InvalidPositionError as e:
            assert e.size == 6
    print("PASS: positions span blocks")


def test_empty_store_has_one_block():
    store = SpanStore()
    assert len(store.blocks) == 1
    assert store.size == 0
    assert store.locate(0) == (0, 0)
    print("PASS: empty store")


def test_segments_cut_ranges_per_block():
    store = SpanStore.from_paragraphs(["one", "two", "three"])
    assert store.segments(1, 6) == [(0, 1, 3), (1, 0, 2)]
    # A range covering only the separator yields nothing
    assert store.segments(3, 4) == []
    print("PASS: segments per block")


def test_mark_range_keeps_text():
    store = SpanStore.from_paragraphs(["abcdef"])
    marked = store.apply(MarkRange(1, 3, "deleted", change_id="d1"))
    assert marked.text == store.text
    statuses = [(s.status, s.text) for s in marked.blocks[0].spans]
    assert statuses == [("original", "a"), ("deleted", "bc"), ("original", "def")]
    print("PASS: marking keeps text")


def test_remove_range_respects_source():
    store = _store(OriginalSpan(text="a"), InsertedSpan(id="i1", text="XY"), OriginalSpan(text="b"))
    result = store.apply(RemoveRange(0, 4, source=frozenset({"inserted"})))
    assert result.text == "ab"
    # Original spans on both sides merge once the insertion is gone
    assert len(result.blocks[0].spans) == 1
    print("PASS: remove range by status")


def test_insert_span_splits_original():
    store = SpanStore.from_paragraphs(["Hello world"])
    result = store.apply(InsertSpan(5, InsertedSpan(id="i1", text=" there")))
    assert [s.text for s in result.blocks[0].spans] == ["Hello", " there", " world"]
    print("PASS: insert splits original")


def test_normalize_merges_and_is_idempotent():
    store = _store(
        OriginalSpan(text="a"),
        OriginalSpan(text="b"),
        DeletedSpan(id="d1", text="c"),
        DeletedSpan(id="d1", text="d"),
        DeletedSpan(id="d2", text="e"),
    )
    once = store.normalized()
    assert [(s.status, s.text) for s in once.blocks[0].spans] == [
        ("original", "ab"),
        ("deleted", "cd"),
        ("deleted", "e"),
    ]
    assert once.normalized() == once
    print("PASS: normalization idempotent")


def test_dangling_pair_is_dropped():
    store = _store(DeletedSpan(id="d1", text="old", paired_with="gone"), OriginalSpan(text=" rest"))
    result = store.normalized()
    assert result.blocks[0].spans[0].paired_with is None

    linked = _store(
        DeletedSpan(id="d1", text="old", paired_with="i1"),
        InsertedSpan(id="i1", text="new", paired_with="d1"),
    ).normalized()
    assert linked.blocks[0].spans[0].paired_with == "i1"
    assert linked.blocks[0].spans[1].paired_with == "d1"
    print("PASS: pairing repair")


def test_split_and_join_blocks():
    store = SpanStore.from_paragraphs(["abcd"])
    split = store.apply(SplitBlock(2))
    assert [b.text for b in split.blocks] == ["ab", "cd"]
    joined = split.apply(JoinBlocks(0))
    assert [b.text for b in joined.blocks] == ["abcd"]
    print("PASS: split and join")


def test_block_breaks_follow_markup_lines():
    assert block_breaks("a\nb") == []
    assert block_breaks("a\n  \nb") == [(1, 5, 0)]
    assert block_breaks("a\n## b\nc") == [(1, 5, 2), (6, 7, 0)]
    assert block_breaks("Title\nmore", heading=True) == [(5, 6, 0)]

    assert split_text_blocks("x\n\ny") == [("x", 0), ("y", 0)]
    assert split_text_blocks("a\n# b") == [("a", 0), ("b", 1)]
    # Line breaks at either end only end or start a line of the current block
    assert split_text_blocks("\nx") == [("\nx", 0)]
    print("PASS: block breaks")


def test_normalize_splits_block_text_at_breaks():
    store = _store(
        OriginalSpan(text="The "),
        DeletedSpan(id="d1", text="la\n\nzy", paired_with="i1"),
        InsertedSpan(id="i1", text="sleeping", paired_with="d1"),
    )
    result = store.normalized()
    assert [b.text for b in result.blocks] == ["The la", "zysleeping"]
    head, tail = result.blocks
    assert head.spans[1].id == "d1"
    assert tail.spans[0].id != "d1"
    # A pair split over two blocks is no longer a substitution
    assert head.spans[1].paired_with is None
    assert tail.spans[1].paired_with is None
    assert result.normalized() == result
    print("PASS: normalization splits at breaks")


def test_restore_ids_inverts_changes():
    store = _store(
        OriginalSpan(text="The "),
        DeletedSpan(id="d1", text="lazy", paired_with="i1"),
        InsertedSpan(id="i1", text="sleeping", paired_with="d1"),
        OriginalSpan(text=" dog"),
    )
    result = store.apply(RestoreIds(frozenset({"d1", "i1"})))
    assert len(result.blocks[0].spans) == 1
    assert result.text == "The lazy dog"
    print("PASS: restore ids")


def test_batch_applies_in_order():
    store = SpanStore.from_paragraphs(["ab"])
    batch = Batch((InsertSpan(1, InsertedSpan(id="i1", text="X")), SplitBlock(2), InsertSpan(3, InsertedSpan(id="i2", text="Y"))))
    result = store.apply(batch)
    assert [b.text for b in result.blocks] == ["aX", "Yb"]
    print("PASS: batch")


def test_group_spans_substitution():
    spans = (
        OriginalSpan(text="The "),
        DeletedSpan(id="d1", text="lazy", paired_with="i1"),
        InsertedSpan(id="i1", text="sleeping", paired_with="d1"),
        OriginalSpan(text=" dog"),
    )
    groups = group_spans(spans)
    assert [g.kind for g in groups] == ["original", "substitution", "original"]
    sub = groups[1]
    assert sub.change_id == "d1"
    assert sub.member_ids == ["d1", "i1"]
    assert (sub.deleted_text, sub.inserted_text) == ("lazy", "sleeping")
    assert (sub.start, sub.end) == (4, 16)
    print("PASS: substitution grouping")


def test_group_spans_adjacent_changes():
    spans = (
        DeletedSpan(id="d1", text="a"),
        DeletedSpan(id="d2", text="b"),
        InsertedSpan(id="i1", text="c"),
        HighlightSpan(id="h1", text="d"),
        HighlightSpan(id="h2", text="e"),
    )
    groups = group_spans(spans)
    assert [g.kind for g in groups] == ["deletion", "insertion", "highlight", "highlight"]
    assert groups[0].member_ids == ["d1", "d2"]
    assert groups[0].deleted_text == "ab"
    print("PASS: adjacent grouping")


if __name__ == "__main__":
    tests = [
        test_positions_span_blocks,
        test_empty_store_has_one_block,
        test_segments_cut_ranges_per_block,
        test_mark_range_keeps_text,
        test_remove_range_respects_source,
        test_insert_span_splits_original,
        test_normalize_merges_and_is_idempotent,
        test_dangling_pair_is_dropped,
        test_split_and_join_blocks,
        test_block_breaks_follow_markup_lines,
        test_normalize_splits_block_text_at_breaks,
        test_restore_ids_inverts_changes,
        test_batch_applies_in_order,
        test_group_spans_substitution,
        test_group_spans_adjacent_changes,
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
