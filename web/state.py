"""
Shared mutable state for the web server.

All globals accessed across route modules live here.
Import from web.state to read/write them.
"""

import logging
import os
from typing import Any, Dict, Optional

from fastapi import WebSocket

from config import agent_config, app_config
from sessions import SessionRegistry

logger = logging.getLogger(__name__)

# ============================================================
# Globals
# ============================================================

_working_directory: str = os.path.abspath(os.path.expanduser(app_config.default_cwd))
_message_mode: str = app_config.message_mode  # persistent | oneshot

registry = SessionRegistry(
    agent_config,
    app_config.stderr_tail_bytes,
    app_config.history_turns,
    app_config.history_records,
)


# ============================================================
# WebSocket reference wrapper (for disconnect-safe sends)
# ============================================================

class _WSRef:
    """WebSocket reference that silently drops sends once disconnected.

    Relay tasks use ``wsr.send_json()`` instead of ``ws.send_json()`` so a
    client vanishing mid-turn never raises inside the forwarding loop; the
    receive loop notices the disconnect and cancels the turn.
    """
    __slots__ = ("ws",)

    def __init__(self, ws: Optional[WebSocket]):
        self.ws: Optional[WebSocket] = ws

    @property
    def connected(self) -> bool:
        return self.ws is not None

    async def send_json(self, data: Dict[str, Any]) -> None:
        _ws = self.ws
        if _ws is None:
            return
        try:
            await _ws.send_json(data)
        except Exception as e:
            logger.debug("ws send failed, marking disconnected: %s", e)
            self.ws = None          # mark disconnected on first failure
