from __future__ import annotations

from collections.abc import Iterable
from typing import Literal, TypedDict


class DiffLine(TypedDict):
    type: Literal["add", "remove", "same"]
    line: str
    line_number: int


def compute_line_diff(old: str, new: str) -> list[DiffLine]:
    """Longest-common-subsequence diff of two texts, line by line.

    `line_number` is 1-based: the position in `new` for "same" and "add"
    lines, and the position in `old` for "remove" lines.
    """
    a = old.split("\n")
    b = new.split("\n")
    m, n = len(a), len(b)
    dp = [[0] * (n + 1) for _ in range(m + 1)]
    for i in range(1, m + 1):
        for j in range(1, n + 1):
            if a[i - 1] == b[j - 1]:
                dp[i][j] = dp[i - 1][j - 1] + 1
            else:
                dp[i][j] = max(dp[i - 1][j], dp[i][j - 1])

    result: list[DiffLine] = []
    i, j = m, n
    while i > 0 or j > 0:
        if i > 0 and j > 0 and a[i - 1] == b[j - 1]:
            result.append({"type": "same", "line": b[j - 1], "line_number": j})
            i -= 1
            j -= 1
        elif j > 0 and (i == 0 or dp[i][j - 1] >= dp[i - 1][j]):
            result.append({"type": "add", "line": b[j - 1], "line_number": j})
            j -= 1
        else:
            result.append({"type": "remove", "line": a[i - 1], "line_number": i})
            i -= 1
    result.reverse()
    return result


def old_text(lines: Iterable[DiffLine]) -> str:
    return "\n".join(line["line"] for line in lines if line["type"] != "add")


def new_text(lines: Iterable[DiffLine]) -> str:
    return "\n".join(line["line"] for line in lines if line["type"] != "remove")


def summarize_diff(lines: Iterable[DiffLine]) -> dict[str, int]:
    summary = {"added": 0, "removed": 0, "unchanged": 0}
    for line in lines:
        if line["type"] == "add":
            summary["added"] += 1
        elif line["type"] == "remove":
            summary["removed"] += 1
        else:
            summary["unchanged"] += 1
    return summary
