from __future__ import annotations

from memkeep.linediff import compute_line_diff, new_text, old_text, summarize_diff


def test_identical_texts_are_all_same() -> None:
    lines = compute_line_diff("a\nb", "a\nb")
    assert [line["type"] for line in lines] == ["same", "same"]
    assert [line["line_number"] for line in lines] == [1, 2]


def test_inserted_line_numbers_follow_new_text() -> None:
    lines = compute_line_diff("a\nb", "a\nx\nb")
    assert lines == [
        {"type": "same", "line": "a", "line_number": 1},
        {"type": "add", "line": "x", "line_number": 2},
        {"type": "same", "line": "b", "line_number": 3},
    ]


def test_removed_line_numbers_follow_old_text() -> None:
    lines = compute_line_diff("a\nb\nc", "a\nc")
    assert lines == [
        {"type": "same", "line": "a", "line_number": 1},
        {"type": "remove", "line": "b", "line_number": 2},
        {"type": "same", "line": "c", "line_number": 2},
    ]


def test_diff_reconstructs_both_sides() -> None:
    old = "title\nstep one\nstep two\n\nfooter"
    new = "title\nstep 1\nstep two\nstep three\n\nfooter"
    lines = compute_line_diff(old, new)

    assert old_text(lines) == old
    assert new_text(lines) == new
    assert summarize_diff(lines) == {"added": 2, "removed": 1, "unchanged": 4}


def test_empty_texts() -> None:
    assert compute_line_diff("", "") == [{"type": "same", "line": "", "line_number": 1}]
    lines = compute_line_diff("", "x")
    assert summarize_diff(lines) == {"added": 1, "removed": 1, "unchanged": 0}
