"""
Argument sets and input encoding for the external agent CLI.

Persistent sessions read one JSON message per line on stdin; one-shot runs take
the message as the trailing argument.
"""

import json
import re
from typing import Any, Dict, List, Optional, Union

from config import AgentConfig

_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)


def _with_system_prompt(args: List[str], config: AgentConfig) -> List[str]:
    if config.system_prompt:
        return args + ["--append-system-prompt", config.system_prompt]
    return args


def persistent_argv(config: AgentConfig) -> List[str]:
    return _with_system_prompt(list(config.persistent_args), config)


def oneshot_argv(config: AgentConfig, message: str) -> List[str]:
    return _with_system_prompt(list(config.oneshot_args), config) + [message]


def build_message_content(
    message: str,
    images: Optional[List[str]] = None,
) -> Union[str, List[Dict[str, Any]]]:
    """Plain text, or content blocks when images are attached.

    Images are data URLs (``data:image/png;base64,...``); anything that does
    not parse as one is skipped. Image blocks come before the text block.
    """
    if not images:
        return message
    content: List[Dict[str, Any]] = []
    for img in images:
        match = _DATA_URL_RE.match(img or "")
        if not match:
            continue
        content.append({
            "type": "image",
            "source": {"type": "base64", "media_type": match.group(1), "data": match.group(2)},
        })
    if message:
        content.append({"type": "text", "text": message})
    return content


def encode_user_message(message: str, images: Optional[List[str]] = None) -> bytes:
    """One newline-terminated JSON line for the agent's stream-json input."""
    payload = {
        "type": "user",
        "session_id": "",
        "message": {"role": "user", "content": build_message_content(message, images)},
        "parent_tool_use_id": None,
    }
    return (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")


def is_turn_end(record: str, turn_end_type: str) -> bool:
    """True if ``record`` is a JSON object whose ``type`` is ``turn_end_type``."""
    if not turn_end_type or turn_end_type not in record:
        return False
    try:
        obj = json.loads(record)
    except ValueError:
        return False
    return isinstance(obj, dict) and obj.get("type") == turn_end_type
