"""
Line diff engine.

LCS-based classification of lines as context/addition/deletion, grouping into
unified-diff style hunks, and a file-level wrapper for JSON diff payloads.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

CONTEXT = "context"
ADDITION = "addition"
DELETION = "deletion"

FILE_STATUSES = ("added", "modified", "deleted", "renamed")

DEFAULT_CONTEXT = 3


@dataclass
class DiffLine:
    kind: str  # context | addition | deletion
    content: str
    old_line: Optional[int] = None
    new_line: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.kind, "content": self.content}
        if self.old_line is not None:
            data["oldLineNum"] = self.old_line
        if self.new_line is not None:
            data["newLineNum"] = self.new_line
        return data


@dataclass
class DiffHunk:
    header: str
    lines: List[DiffLine] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"header": self.header, "lines": [ln.to_dict() for ln in self.lines]}


@dataclass
class DiffFile:
    path: str
    status: str = "modified"
    hunks: List[DiffHunk] = field(default_factory=list)
    old_path: Optional[str] = None

    @property
    def additions(self) -> int:
        return sum(1 for h in self.hunks for ln in h.lines if ln.kind == ADDITION)

    @property
    def deletions(self) -> int:
        return sum(1 for h in self.hunks for ln in h.lines if ln.kind == DELETION)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "path": self.path,
            "status": self.status,
            "hunks": [h.to_dict() for h in self.hunks],
            "additions": self.additions,
            "deletions": self.deletions,
        }
        if self.old_path and self.old_path != self.path:
            data["oldPath"] = self.old_path
        return data


def split_lines(text: Optional[str]) -> List[str]:
    """Split text on ``\\n`` without terminators; a trailing newline adds no empty line."""
    if not text:
        return []
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return lines


# ============================================================
# LCS diff
# ============================================================

def compute_diff(old_lines: Sequence[str], new_lines: Sequence[str]) -> List[DiffLine]:
    """Classify every line of ``old_lines``/``new_lines`` as context, addition or deletion.

    Builds the LCS length table in forward order, then backtracks from the
    end: equal lines are matched first, otherwise the new line is consumed
    (addition) while ``dp[i][j-1] >= dp[i-1][j]``, else the old line
    (deletion). Read forwards, each changed region lists its deletions
    before its additions. Output is deterministic for identical inputs.
    """
    m = len(old_lines)
    n = len(new_lines)

    # The backtrack always matches a shared tail, so it never needs the table.
    suffix = 0
    while suffix < m and suffix < n and old_lines[m - 1 - suffix] == new_lines[n - 1 - suffix]:
        suffix += 1
    m -= suffix
    n -= suffix

    dp = [[0] * (n + 1) for _ in range(m + 1)]
    for i in range(1, m + 1):
        old = old_lines[i - 1]
        row, prev = dp[i], dp[i - 1]
        for j in range(1, n + 1):
            if old == new_lines[j - 1]:
                row[j] = prev[j - 1] + 1
            else:
                row[j] = row[j - 1] if row[j - 1] >= prev[j] else prev[j]

    ops: List[DiffLine] = []
    i, j = m, n
    while i > 0 or j > 0:
        if i > 0 and j > 0 and old_lines[i - 1] == new_lines[j - 1]:
            ops.append(DiffLine(CONTEXT, old_lines[i - 1], i, j))
            i -= 1
            j -= 1
        elif j > 0 and (i == 0 or dp[i][j - 1] >= dp[i - 1][j]):
            ops.append(DiffLine(ADDITION, new_lines[j - 1], None, j))
            j -= 1
        else:
            ops.append(DiffLine(DELETION, old_lines[i - 1], i, None))
            i -= 1
    ops.reverse()

    for k in range(suffix):
        ops.append(DiffLine(CONTEXT, old_lines[m + k], m + k + 1, n + k + 1))
    return ops


def apply_diff(old_lines: Sequence[str], diff: Sequence[DiffLine]) -> List[str]:
    """Replay ``diff`` against ``old_lines`` and return the new document.

    Raises ValueError if the diff does not describe ``old_lines``.
    """
    result: List[str] = []
    pos = 0
    for line in diff:
        if line.kind == ADDITION:
            result.append(line.content)
            continue
        if pos >= len(old_lines) or old_lines[pos] != line.content:
            raise ValueError(f"diff does not match old line {pos + 1}")
        pos += 1
        if line.kind == CONTEXT:
            result.append(line.content)
    if pos != len(old_lines):
        raise ValueError(f"diff leaves {len(old_lines) - pos} old lines unaccounted for")
    return result


# ============================================================
# Hunks
# ============================================================

def _hunk_header(lines: Sequence[DiffLine], start: int, end: int) -> str:
    old_before = sum(1 for ln in lines[:start] if ln.old_line is not None)
    new_before = sum(1 for ln in lines[:start] if ln.new_line is not None)
    old_count = sum(1 for ln in lines[start:end] if ln.old_line is not None)
    new_count = sum(1 for ln in lines[start:end] if ln.new_line is not None)
    old_start = old_before + 1 if old_count else old_before
    new_start = new_before + 1 if new_count else new_before
    return f"@@ -{old_start},{old_count} +{new_start},{new_count} @@"


def group_hunks(lines: Sequence[DiffLine], context: int = DEFAULT_CONTEXT) -> List[DiffHunk]:
    """Group runs of changed lines with up to ``context`` lines on each side.

    Changes separated by at most ``2 * context`` unchanged lines share a
    hunk, so neighbouring hunks never touch. No changes means no hunks.
    """
    context = max(0, context)
    changed = [idx for idx, ln in enumerate(lines) if ln.kind != CONTEXT]
    if not changed:
        return []

    ranges: List[List[int]] = []
    run_start = run_end = changed[0]
    for idx in changed[1:]:
        gap = idx - run_end - 1
        if gap <= 2 * context:
            run_end = idx
            continue
        ranges.append([run_start, run_end])
        run_start = run_end = idx
    ranges.append([run_start, run_end])

    hunks: List[DiffHunk] = []
    for first, last in ranges:
        start = max(0, first - context)
        end = min(len(lines), last + context + 1)
        hunks.append(DiffHunk(_hunk_header(lines, start, end), list(lines[start:end])))
    return hunks


def diff_file(
    path: str,
    old_text: Optional[str],
    new_text: Optional[str],
    context: int = DEFAULT_CONTEXT,
    old_path: Optional[str] = None,
) -> DiffFile:
    """Diff two versions of a file. ``None`` on one side marks it added/deleted.

    An empty ``hunks`` list means the versions are identical.
    """
    if old_text is None:
        status = "added"
    elif new_text is None:
        status = "deleted"
    elif old_path and old_path != path:
        status = "renamed"
    else:
        status = "modified"
    lines = compute_diff(split_lines(old_text), split_lines(new_text))
    return DiffFile(path=path, status=status, hunks=group_hunks(lines, context), old_path=old_path)
