"""
Diff REST API endpoints.

Structured diffs of two text blobs, of the git working tree, and of one file vs HEAD.
"""

import logging
import os
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from config import app_config
from diff import diff_file
from errors import GitError
from git_diff import diff_stats, file_diff, working_tree_diff
import web.state as _state

logger = logging.getLogger(__name__)

router = APIRouter()


def _context(value) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return app_config.diff_context


def _project_dir() -> str:
    return os.path.abspath(_state._working_directory)


@router.post("/api/diff")
async def api_diff(request: Request):
    """Diff two versions of a file.

    Body: { "path", "old", "new", "oldPath"?, "context"? }. A null "old" marks
    the file added, a null "new" deleted. No hunks means no changes.
    """
    try:
        body = await request.json()
    except Exception as e:
        return JSONResponse({"error": f"Invalid request: {e!s}"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Invalid request"}, status_code=400)
    old, new = body.get("old"), body.get("new")
    if old is None and new is None:
        return JSONResponse({"error": "old or new required"}, status_code=400)
    if (old is not None and not isinstance(old, str)) or (new is not None and not isinstance(new, str)):
        return JSONResponse({"error": "old and new must be strings"}, status_code=400)
    result = diff_file(
        str(body.get("path") or ""),
        old,
        new,
        context=_context(body.get("context", app_config.diff_context)),
        old_path=body.get("oldPath") or None,
    )
    return result.to_dict()


@router.get("/api/git/diff")
async def api_git_diff(context: Optional[int] = Query(None)):
    """All working-tree changes (untracked files included) as structured files."""
    try:
        files = await working_tree_diff(_project_dir(), _context(context))
    except GitError as e:
        logger.warning("git diff failed: %s", e)
        return JSONResponse({"error": str(e)}, status_code=400)
    return {"files": [f.to_dict() for f in files]}


@router.get("/api/git/status")
async def api_git_status():
    """Change indicator: {hasChanges, insertions, deletions, filesChanged}."""
    try:
        return await diff_stats(_project_dir())
    except GitError as e:
        logger.warning("git status failed: %s", e)
        return JSONResponse({"error": str(e)}, status_code=400)


@router.get("/api/git/file-diff")
async def api_git_file_diff(path: str = Query(...), context: Optional[int] = Query(None)):
    """HEAD vs working tree for a single file."""
    try:
        result = await file_diff(_project_dir(), path, _context(context))
    except GitError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return result.to_dict()
