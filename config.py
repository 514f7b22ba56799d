"""
Configuration module for Agent Relay.
Handles environment variables for the external agent process and the web server.
"""

import os
import shlex
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


DEFAULT_PERSISTENT_ARGS = (
    "-p --verbose --output-format stream-json "
    "--input-format stream-json --dangerously-skip-permissions"
)
DEFAULT_ONESHOT_ARGS = "-p --verbose --output-format stream-json --dangerously-skip-permissions"


def _split_env(name: str, default: str) -> List[str]:
    return shlex.split(os.getenv(name, default))


@dataclass
class AgentConfig:
    """External agent process configuration"""
    command: str = os.getenv("AGENT_COMMAND", "claude")
    persistent_args: List[str] = field(
        default_factory=lambda: _split_env("AGENT_PERSISTENT_ARGS", DEFAULT_PERSISTENT_ARGS)
    )
    oneshot_args: List[str] = field(
        default_factory=lambda: _split_env("AGENT_ONESHOT_ARGS", DEFAULT_ONESHOT_ARGS)
    )
    system_prompt: Optional[str] = os.getenv("AGENT_APPEND_SYSTEM_PROMPT") or None
    # A record that is a JSON object with this "type" closes a persistent turn.
    # Empty string disables turn framing.
    turn_end_type: str = os.getenv("AGENT_TURN_END_TYPE", "result")
    terminate_grace: float = float(os.getenv("AGENT_TERMINATE_GRACE", "5"))
    read_chunk_size: int = int(os.getenv("AGENT_READ_CHUNK_SIZE", "65536"))
    # Records held for a session while no turn is reading; the oldest are dropped.
    max_pending_records: int = int(os.getenv("AGENT_MAX_PENDING_RECORDS", "10000"))


@dataclass
class AppConfig:
    """Application-specific configuration"""
    title: str = "Agent Relay"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    host: str = os.getenv("RELAY_HOST", "127.0.0.1")
    port: int = int(os.getenv("RELAY_PORT", "3001"))
    default_cwd: str = os.getenv("WORKING_DIRECTORY", ".")
    # persistent | oneshot
    message_mode: str = os.getenv("MESSAGE_MODE", "persistent").lower()
    diff_context: int = int(os.getenv("DIFF_CONTEXT", "3"))
    stderr_tail_bytes: int = int(os.getenv("STDERR_TAIL_BYTES", "65536"))
    history_turns: int = int(os.getenv("HISTORY_TURNS", "20"))
    history_records: int = int(os.getenv("HISTORY_RECORDS", "1000"))  # per turn
    cors_origins: List[str] = field(
        default_factory=lambda: [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    )


MESSAGE_MODES = ("persistent", "oneshot")


# Create global config instances
agent_config = AgentConfig()
app_config = AppConfig()
