"""
Git working-tree diffs.

Parses ``git diff`` output into DiffFile structures and renders untracked files
and single-file HEAD comparisons through the local diff engine.
"""

import asyncio
import logging
import os
import re
import subprocess
from typing import Any, Dict, List, Optional, Tuple

from diff import (
    ADDITION,
    CONTEXT,
    DELETION,
    DEFAULT_CONTEXT,
    DiffFile,
    DiffHunk,
    DiffLine,
    diff_file,
    split_lines,
)
from errors import GitError

logger = logging.getLogger(__name__)

_DIFF_GIT_RE = re.compile(r"^diff --git ", re.MULTILINE)
_PATHS_RE = re.compile(r"a/(.+) b/(.+)")
_HUNK_RE = re.compile(r"^@@ -(\d+)(?:,\d+)? \+(\d+)(?:,\d+)? @@")

_MAX_UNTRACKED_BYTES = 1024 * 1024  # skip huge untracked files


def _run_git(args: List[str], cwd: str, timeout: int) -> Tuple[str, str, int]:
    r = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        timeout=timeout,
    )
    return r.stdout, r.stderr, r.returncode


async def _git(args: List[str], cwd: str, timeout: int = 15) -> Tuple[str, str, int]:
    try:
        return await asyncio.to_thread(_run_git, args, cwd, timeout)
    except FileNotFoundError as e:
        raise GitError(f"git not available or directory missing: {e}") from e
    except subprocess.TimeoutExpired as e:
        raise GitError(f"git {args[0]} timed out after {timeout}s") from e


def _check_relative(path: str) -> str:
    path = (path or "").strip().replace("\\", "/")
    if not path or ".." in path.split("/") or path.startswith("/"):
        raise GitError(f"Invalid path: {path!r}")
    return path


# ============================================================
# Parsers
# ============================================================

def parse_diff(raw_diff: str) -> List[DiffFile]:
    """Parse ``git diff`` output into one DiffFile per ``diff --git`` section."""
    files: List[DiffFile] = []
    for chunk in _DIFF_GIT_RE.split(raw_diff or ""):
        if not chunk.strip():
            continue
        lines = chunk.split("\n")
        match = _PATHS_RE.search(lines[0])
        if not match:
            continue
        current = DiffFile(path=match.group(2), status="modified")

        hunk: Optional[DiffHunk] = None
        old_num = new_num = 0
        for line in lines[1:]:
            if line.startswith("@@"):
                m = _HUNK_RE.match(line)
                if m:
                    old_num, new_num = int(m.group(1)), int(m.group(2))
                    hunk = DiffHunk(header=line)
                    current.hunks.append(hunk)
                continue
            if hunk is None:
                if line.startswith("new file"):
                    current.status = "added"
                elif line.startswith("deleted file"):
                    current.status = "deleted"
                elif line.startswith("rename from "):
                    current.status = "renamed"
                    current.old_path = line[len("rename from "):]
                continue
            if line.startswith("+"):
                hunk.lines.append(DiffLine(ADDITION, line[1:], None, new_num))
                new_num += 1
            elif line.startswith("-"):
                hunk.lines.append(DiffLine(DELETION, line[1:], old_num, None))
                old_num += 1
            elif line.startswith(" "):
                hunk.lines.append(DiffLine(CONTEXT, line[1:], old_num, new_num))
                old_num += 1
                new_num += 1
        files.append(current)
    return files


def parse_numstat(stdout: str) -> List[Dict[str, Any]]:
    """Parse 'git diff --numstat' output. Returns list of {path, additions, deletions}."""
    rows = []
    for line in (stdout or "").strip().splitlines():
        parts = line.split("\t", 2)
        if len(parts) < 3:
            continue
        add_s, del_s, path = parts
        path = path.replace("\\", "/").strip()
        if not path:
            continue
        try:
            additions = int(add_s) if add_s != "-" else 0
            deletions = int(del_s) if del_s != "-" else 0
        except ValueError:
            additions = deletions = 0
        rows.append({"path": path, "additions": additions, "deletions": deletions})
    return rows


# ============================================================
# Working tree queries
# ============================================================

def _read_text(cwd: str, path: str) -> Optional[str]:
    full = os.path.join(cwd, path)
    try:
        if os.path.getsize(full) > _MAX_UNTRACKED_BYTES:
            return None
        with open(full, "r", encoding="utf-8") as f:
            return f.read()
    except (OSError, UnicodeDecodeError):
        return None


async def _untracked(cwd: str) -> List[str]:
    out, _, rc = await _git(["ls-files", "--others", "--exclude-standard"], cwd, 10)
    if rc != 0:
        return []
    return [p for p in out.splitlines() if p.strip()]


async def working_tree_diff(cwd: str, context: int = DEFAULT_CONTEXT) -> List[DiffFile]:
    """Tracked changes from ``git diff`` plus untracked files shown as added."""
    out, err, rc = await _git(["diff", "--no-color", "--no-ext-diff", f"-U{context}"], cwd)
    if rc != 0:
        raise GitError((err or "").strip() or f"git diff exited with {rc}")
    files = parse_diff(out)
    for path in await _untracked(cwd):
        text = await asyncio.to_thread(_read_text, cwd, path)
        if text is None:
            continue
        files.append(diff_file(path, None, text, context))
    return files


async def diff_stats(cwd: str) -> Dict[str, Any]:
    """Totals for the change indicator: untracked files count every line as inserted."""
    out, err, rc = await _git(["diff", "--numstat"], cwd)
    if rc != 0:
        raise GitError((err or "").strip() or f"git diff exited with {rc}")
    rows = parse_numstat(out)
    insertions = sum(r["additions"] for r in rows)
    deletions = sum(r["deletions"] for r in rows)
    files_changed = len(rows)
    for path in await _untracked(cwd):
        files_changed += 1
        text = await asyncio.to_thread(_read_text, cwd, path)
        if text is not None:
            insertions += len(split_lines(text))
    return {
        "hasChanges": files_changed > 0,
        "insertions": insertions,
        "deletions": deletions,
        "filesChanged": files_changed,
    }


async def head_version(cwd: str, path: str) -> Optional[str]:
    """Content of ``path`` at HEAD, or None if it is not tracked there."""
    path = _check_relative(path)
    out, _, rc = await _git(["show", f"HEAD:{path}"], cwd, 5)
    return out if rc == 0 else None


async def file_diff(cwd: str, path: str, context: int = DEFAULT_CONTEXT) -> DiffFile:
    """HEAD vs working tree for one file."""
    path = _check_relative(path)
    original = await head_version(cwd, path)
    current = await asyncio.to_thread(_read_text, cwd, path)
    if original is None and current is None:
        raise GitError(f"File not found: {path}")
    return diff_file(path, original, current, context)
