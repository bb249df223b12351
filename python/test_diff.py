"""
Mini tests for comparing two texts into CriticMarkup.

Run: python3 test_diff.py
From: python/
"""

import sys

sys.path.insert(0, '.')

from mdfeedback.diff import diff_texts
from mdfeedback.markup import accept_markup, parse_markup, reject_markup


def test_word_substitution():
    markup = diff_texts("The lazy dog", "The sleeping dog")
    assert markup == "The {~~lazy~>sleeping~~} dog"
    print("PASS: word substitution")


def test_derivations_reproduce_inputs():
    original = "The contract ends in May.\n\nPayment is due monthly."
    modified = "The agreement ends in June.\n\nPayment is due monthly in advance."
    markup = diff_texts(original, modified)
    assert accept_markup(markup) == modified
    assert reject_markup(markup) == original
    print("PASS: accept/reject reproduce inputs")


def test_paragraph_deletion_stays_outside_tokens():
    markup = diff_texts("A\n\nB", "A")
    assert markup == "A\n\n{--B--}"
    parsed = parse_markup(markup)
    assert [b.text for b in parsed.store.blocks] == ["A", "B"]
    print("PASS: paragraph deletion")


def test_identical_texts_have_no_tokens():
    text = "Nothing changed here."
    assert diff_texts(text, text) == text
    print("PASS: identical texts")


if __name__ == "__main__":
    tests = [
        test_word_substitution,
        test_derivations_reproduce_inputs,
        test_paragraph_deletion_stays_outside_tokens,
        test_identical_texts_have_no_tokens,
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
