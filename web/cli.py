"""
CLI entry point for the Agent Relay web server.

Run:  python -m web [--port 3001] [--dir /path/to/project]
"""

import argparse
import logging
import os

from config import MESSAGE_MODES, agent_config, app_config
import web.state as _state


def main():
    import uvicorn

    parser = argparse.ArgumentParser(description="Agent Relay: web bridge for a command-line agent")
    parser.add_argument("--port", type=int, default=app_config.port, help=f"Server port (default: {app_config.port})")
    parser.add_argument("--host", default=app_config.host, help=f"Server host (default: {app_config.host})")
    parser.add_argument("--dir", default=app_config.default_cwd, help="Default working directory for new sessions")
    parser.add_argument(
        "--mode",
        choices=MESSAGE_MODES,
        default=app_config.message_mode if app_config.message_mode in MESSAGE_MODES else "persistent",
        help="How session messages reach the agent (default: persistent)",
    )
    args = parser.parse_args()

    _state._working_directory = os.path.abspath(os.path.expanduser(args.dir))
    _state._message_mode = args.mode

    if not os.path.isdir(_state._working_directory):
        print(f"\n  Error: directory not found: {_state._working_directory}\n")
        raise SystemExit(1)

    # uvicorn's log_level only affects its own loggers; make ours visible
    level = getattr(logging, app_config.log_level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)
    if not root.handlers:
        h = logging.StreamHandler()
        h.setLevel(level)
        h.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [relay] %(message)s"))
        root.addHandler(h)

    print(f"\n  {app_config.title}")
    print(f"  http://{args.host}:{args.port}")
    print(f"  Agent: {agent_config.command} ({args.mode} mode)")
    print(f"  Working directory: {_state._working_directory}\n")

    from web import app
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning")
