"""
Session REST API endpoints.

Create/list/destroy agent sessions and stream message turns as Server-Sent Events.
"""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from config import MESSAGE_MODES, agent_config
from errors import SessionNotFound, SpawnError
from relay import run_once, sse_stream
import web.state as _state

logger = logging.getLogger(__name__)

router = APIRouter()

_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


async def _read_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except Exception:
        return {}
    return body if isinstance(body, dict) else {}


def _not_found() -> JSONResponse:
    return JSONResponse({"error": "Session not found"}, status_code=404)


def _images(body: Dict[str, Any]) -> Optional[List[str]]:
    images = body.get("images")
    if not isinstance(images, list):
        return None
    return [str(i) for i in images if i]


async def _oneshot_records(cwd: str, message: str) -> AsyncIterator[str]:
    result = await run_once(agent_config, cwd, message)
    logger.info("One-shot in %s: %d records, exit %s", cwd, len(result.records), result.returncode)
    for record in result.records:
        yield record


def _event_stream(records: AsyncIterator[str]) -> StreamingResponse:
    return StreamingResponse(sse_stream(records), media_type="text/event-stream", headers=_SSE_HEADERS)


@router.post("/api/sessions")
async def create_session(request: Request):
    """Spawn a persistent agent. Body: { "cwd"?: "..." } (default: server working directory)."""
    body = await _read_body(request)
    cwd = str(body.get("cwd") or "").strip() or _state._working_directory
    try:
        session = await _state.registry.create(cwd)
    except SpawnError as e:
        logger.error("Session create failed: %s", e)
        return JSONResponse({"error": str(e)}, status_code=400)
    return session.to_dict()


@router.get("/api/sessions")
async def list_sessions():
    return [s.to_dict() for s in _state.registry.list()]


@router.get("/api/sessions/{session_id}")
async def get_session(session_id: str):
    session = _state.registry.get(session_id)
    if session is None:
        return _not_found()
    return session.to_dict()


@router.delete("/api/sessions/{session_id}")
async def delete_session(session_id: str):
    """Idempotent: unknown ids also answer 204."""
    await _state.registry.destroy(session_id)
    return Response(status_code=204)


@router.get("/api/sessions/{session_id}/status")
async def session_status(session_id: str):
    session = _state.registry.get(session_id)
    if session is None:
        return _not_found()
    return {"busy": session.busy, "state": session.state.value}


@router.post("/api/sessions/{session_id}/cancel")
async def cancel_turn(session_id: str):
    """End the in-flight turn's stream. The agent keeps running; its late reply is dropped."""
    try:
        cancelled = _state.registry.cancel_turn(session_id)
    except SessionNotFound:
        return _not_found()
    return {"cancelled": cancelled}


@router.get("/api/sessions/{session_id}/history")
async def session_history(session_id: str):
    """Recent turns of a persistent session, oldest first."""
    session = _state.registry.get(session_id)
    if session is None:
        return _not_found()
    turns = _state.registry.history(session_id)
    return {"sessionId": session_id, "cwd": session.working_directory, "turns": turns}


@router.post("/api/sessions/{session_id}/messages")
async def send_message(session_id: str, request: Request):
    """Send a message and stream the agent's records as SSE, ending with [DONE].

    Body: { "message": "...", "images"?: [data URLs], "mode"?: "persistent"|"oneshot" }
    """
    session = _state.registry.get(session_id)
    if session is None:
        return _not_found()
    body = await _read_body(request)
    message = str(body.get("message") or "")
    images = _images(body)
    if not message and not images:
        return JSONResponse({"error": "message required"}, status_code=400)
    mode = str(body.get("mode") or _state._message_mode).lower()
    if mode not in MESSAGE_MODES:
        return JSONResponse({"error": f"mode must be one of {', '.join(MESSAGE_MODES)}"}, status_code=400)
    if mode == "oneshot" and images:
        return JSONResponse({"error": "images are only supported in persistent mode"}, status_code=400)
    logger.debug("POST /api/sessions/%s/messages (%s): %s", session_id, mode, message[:50])

    if mode == "oneshot":
        return _event_stream(_oneshot_records(session.working_directory, message))
    return _event_stream(_state.registry.send_message(session_id, message, images))


@router.post("/api/run")
async def run_stateless(request: Request):
    """One-shot invocation without a session. Body: { "message": "...", "cwd"?: "..." }."""
    body = await _read_body(request)
    message = str(body.get("message") or "")
    if not message:
        return JSONResponse({"error": "message required"}, status_code=400)
    cwd = str(body.get("cwd") or "").strip() or _state._working_directory
    return _event_stream(_oneshot_records(cwd, message))
