"""
Agent Relay web server.
FastAPI bridge exposing agent sessions over HTTP, Server-Sent Events and WebSocket.

Run:  python -m web [--port 3001] [--dir /path/to/project]
"""

import logging

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import app_config
import web.state as _state
from web import api_diff, api_sessions, ws_sessions

logger = logging.getLogger(__name__)

# ============================================================
# FastAPI application
# ============================================================

app = FastAPI(title=app_config.title)
app.add_middleware(
    CORSMiddleware,
    allow_origins=app_config.cors_origins,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type"],
)


@app.on_event("shutdown")
async def _on_shutdown():
    """Terminate every live agent process before the server exits (e.g. Ctrl+C)."""
    count = len(_state.registry.list())
    await _state.registry.destroy_all()
    if count:
        logger.info("Shutdown: destroyed %d session(s)", count)


# ============================================================
# Include routers from submodules
# ============================================================

app.include_router(api_sessions.router)
app.include_router(api_diff.router)
app.include_router(ws_sessions.router)
