"""
Session WebSocket endpoint.

One connection per session view. Text frames carry JSON messages; each message
starts a turn whose records are forwarded as they arrive.
"""

import asyncio
import json
import logging
from contextlib import aclosing
from typing import List, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from errors import RelayError
from web.state import _WSRef
import web.state as _state

logger = logging.getLogger(__name__)

router = APIRouter()


async def _relay_turn(wsr: _WSRef, session_id: str, message: str, images: Optional[List[str]]) -> None:
    """Forward one turn's records; a relay error becomes an error frame."""
    try:
        records = _state.registry.send_message(session_id, message, images)
        async with aclosing(records):
            async for record in records:
                if not wsr.connected:
                    return
                await wsr.send_json({"type": "record", "data": record})
    except RelayError as e:
        logger.warning("session ws %s: %s", session_id, e)
        await wsr.send_json({"type": "error", "message": str(e)})
        return
    await wsr.send_json({"type": "done"})


@router.websocket("/ws/sessions/{session_id}")
async def websocket_session(ws: WebSocket, session_id: str):
    """Client frames: {"message": "...", "images"?: [...]}.
    Server frames: {"type": "ready"|"record"|"done"|"error", ...}."""
    await ws.accept()

    async def _send_error_and_close(message: str) -> None:
        await ws.send_json({"type": "error", "message": message})
        await asyncio.sleep(0.05)
        await ws.close(code=4404)

    session = _state.registry.get(session_id)
    if session is None:
        logger.warning("session ws: rejected unknown session %s", session_id)
        await _send_error_and_close("Session not found")
        return

    wsr = _WSRef(ws)
    turn_task: Optional[asyncio.Task] = None

    try:
        logger.info("session ws: connected to %s", session_id)
        await ws.send_json({"type": "ready", "session": session.to_dict()})
        while True:
            msg = await ws.receive()
            if msg.get("type") == "websocket.disconnect":
                break
            text = msg.get("text")
            if text is None:
                continue
            try:
                obj = json.loads(text)
            except (json.JSONDecodeError, ValueError) as e:
                await wsr.send_json({"type": "error", "message": f"Invalid JSON: {e}"})
                continue
            if not isinstance(obj, dict):
                await wsr.send_json({"type": "error", "message": "Expected a JSON object"})
                continue
            if obj.get("type") == "cancel":
                if turn_task is not None and not turn_task.done():
                    turn_task.cancel()
                continue
            message = str(obj.get("message") or "")
            images = obj.get("images") if isinstance(obj.get("images"), list) else None
            if not message and not images:
                await wsr.send_json({"type": "error", "message": "message required"})
                continue
            if turn_task is not None and not turn_task.done():
                await wsr.send_json({"type": "error", "message": "A turn is already in progress"})
                continue
            turn_task = asyncio.create_task(_relay_turn(wsr, session_id, message, images))
    except WebSocketDisconnect:
        logger.debug("session ws: client disconnected")
    finally:
        logger.info("session ws: closing %s", session_id)
        wsr.ws = None
        if turn_task is not None and not turn_task.done():
            # Stops forwarding only; the session's process keeps running.
            turn_task.cancel()
            try:
                await turn_task
            except (asyncio.CancelledError, Exception):
                pass
