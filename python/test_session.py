"""
Mini tests for the review session: comments through edits, undo/redo, save/resume.

Run: python3 test_session.py
From: python/
"""

import itertools
import os
import sys

import yaml

sys.path.insert(0, '.')

from mdfeedback.models import EngineConfig, InsertIntent
from mdfeedback.session import ReviewSession


def _ids():
    counter = itertools.count(1)
    return lambda: f"id{next(counter)}"


def _substitution_session():
    session = ReviewSession("The lazy dog", id_factory=_ids())
    session.replace(4, 8, "sleeping")
    return session


def test_revert_prunes_comment_and_undo_restores_it():
    session = _substitution_session()
    record = session.changes[0]
    insertion_id = record.member_ids[1]

    # Commenting via the insertion side lands on the change itself
    thread = session.add_comment(insertion_id, "why?")
    assert thread is not None
    assert session.markup() == "The {~~lazy~>sleeping~~}{>>why?<<} dog"
    assert session.comments.threads(record.id)[0].id == thread.id

    result = session.revert(record.id)
    assert result.changed
    assert session.markup() == "The lazy dog"
    assert len(session.store.blocks[0].spans) == 1
    assert len(session.comments) == 0

    assert session.undo()
    assert session.markup() == "The {~~lazy~>sleeping~~}{>>why?<<} dog"
    assert session.redo()
    assert session.markup() == "The lazy dog"
    assert len(session.comments) == 0
    print("PASS: revert drops comment, undo brings it back")


def test_history_records_only_real_changes():
    session = _substitution_session()
    assert len(session.history) == 1

    assert not session.insert(99, "x").handled
    assert not session.revert("missing").handled
    assert session.add_comment("missing", "text") is None
    assert session.add_comment(session.changes[0].id, "  ") is None
    assert len(session.history) == 1

    assert session.undo()
    assert session.markup() == "The lazy dog"
    assert not session.undo()
    assert session.redo()
    assert not session.redo()
    print("PASS: history only for real changes")


def test_new_edit_clears_redo():
    session = _substitution_session()
    session.undo()
    session.insert(0, "X")
    assert not session.history.can_redo()
    assert session.markup() == "{++X++}The lazy dog"
    print("PASS: new edit clears redo")


def test_edit_and_delete_comment():
    session = ReviewSession("{--a--}{>>c<<} b")
    record = session.changes[0]
    thread = record.comments[0]

    assert session.edit_comment(record.id, thread.id, "d")
    assert session.markup() == "{--a--}{>>d<<} b"
    assert session.delete_comment(record.id, thread.id)
    assert session.markup() == "{--a--} b"

    session.undo()
    assert session.markup() == "{--a--}{>>d<<} b"
    print("PASS: edit and delete comment")


def test_comment_on_merged_change_keeps_all_threads():
    session = ReviewSession("{--a--}{>>c1<<}{--b--}{>>c2<<}")
    record = session.changes[0]
    second = record.comments[1]
    assert session.delete_comment(record.id, second.id)
    assert session.markup() == "{--ab--}{>>c1<<}"
    print("PASS: threads on member ids")


def test_highlight_with_comment_is_one_step():
    session = ReviewSession("one two three")
    highlight_id = session.highlight(4, 7, comment="check")
    assert highlight_id
    assert session.markup() == "one {==two==}{>>check<<} three"
    assert len(session.history) == 1
    session.undo()
    assert session.markup() == "one two three"
    print("PASS: highlight with comment")


def test_comment_with_blank_line_survives_reload():
    session = _substitution_session()
    session.add_comment(session.changes[0].id, "first para\n\nsecond para")
    markup = session.markup()
    assert markup == "The {~~lazy~>sleeping~~}{>>first para\n\nsecond para<<} dog"

    reloaded = ReviewSession(markup)
    assert len(reloaded.store.blocks) == 1
    assert [c.text for c in reloaded.changes[0].comments] == ["first para\n\nsecond para"]
    assert reloaded.accept_all() == "The sleeping dog"
    print("PASS: multi-paragraph comment reload")


def test_highlights_meeting_across_blocks_stay_one_change():
    session = ReviewSession("one two\n\nthree four", id_factory=_ids())
    session.highlight(4, 7)
    session.highlight(8, 13, comment="note")
    assert [(r.highlighted_text, [c.text for c in r.comments]) for r in session.changes] == [("two\nthree", ["note"])]

    reloaded = ReviewSession(session.markup())
    assert [(r.highlighted_text, [c.text for c in r.comments]) for r in reloaded.changes] == [("two\nthree", ["note"])]

    # Reverting the merged change clears both highlights and its comment
    assert session.revert(session.changes[0].id).changed
    assert session.markup() == "one two\n\nthree four"
    assert len(session.comments) == 0
    print("PASS: touching highlights")


def test_toggle_tracking():
    session = ReviewSession("Hello world")
    assert session.toggle_tracking() is False
    session.insert(5, " there")
    assert session.markup() == "Hello there world"
    assert session.toggle_tracking() is True
    session.insert(0, ">")
    assert session.markup() == "{++>++}Hello there world"
    print("PASS: toggle tracking")


def test_reject_all_restores_original_after_tracked_edits():
    original = "The quick brown fox\n\njumps over"
    session = ReviewSession(original)
    session.replace(4, 9, "slow")
    session.delete(0, 3)
    session.insert(session.store.size, "!")
    session.delete(20, 20)
    session.delete(24, 29)
    session.apply(InsertIntent(position=24, text="leaps and "))
    assert session.reject_all() == original
    assert session.accept_all() != original
    print("PASS: reject all restores original")


def test_snapshot_resumes_session():
    session = _substitution_session()
    session.add_comment(session.changes[0].id, "why?")
    saved = session.snapshot()

    metadata = yaml.safe_load(saved.markup.split("---\n")[1])
    assert metadata["criticmark"]["changes_total"] == 1
    assert metadata["criticmark"]["changes_commented"] == 1

    resumed = ReviewSession.from_saved(saved)
    assert resumed.markup() == session.markup()
    assert resumed.metadata["criticmark"]["changes_total"] == 1
    assert len(resumed.history) == 0

    other = ReviewSession("Unrelated text")
    other.restore(saved)
    assert other.markup() == session.markup()
    print("PASS: snapshot and resume")


def test_import_replaces_document_and_history():
    session = _substitution_session()
    session.import_markup("Fresh {++start++}")
    assert len(session.history) == 0
    assert not session.history.can_undo()
    assert [r.type for r in session.changes] == ["insertion"]
    print("PASS: import resets history")


def test_config_from_env():
    keys = ("MDFEEDBACK_TRACKING", "MDFEEDBACK_CONTEXT_WORDS", "MDFEEDBACK_HISTORY_LIMIT")
    try:
        os.environ["MDFEEDBACK_TRACKING"] = "off"
        os.environ["MDFEEDBACK_CONTEXT_WORDS"] = "3"
        os.environ["MDFEEDBACK_HISTORY_LIMIT"] = "2"
        config = EngineConfig.from_env()
        assert config.tracking_enabled is False
        assert config.context_words == 3

        session = ReviewSession("abc", EngineConfig(history_limit=2))
        for position in (0, 1, 2):
            session.insert(position, "x")
        assert len(session.history) == 2
    finally:
        for key in keys:
            os.environ.pop(key, None)
    print("PASS: config from env")


if __name__ == "__main__":
    tests = [
        test_revert_prunes_comment_and_undo_restores_it,
        test_history_records_only_real_changes,
        test_new_edit_clears_redo,
        test_edit_and_delete_comment,
        test_comment_on_merged_change_keeps_all_threads,
        test_highlight_with_comment_is_one_step,
        test_comment_with_blank_line_survives_reload,
        test_highlights_meeting_across_blocks_stay_one_change,
        test_toggle_tracking,
        test_reject_all_restores_original_after_tracked_edits,
        test_snapshot_resumes_session,
        test_import_replaces_document_and_history,
        test_config_from_env,
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
