"""Shared fixtures: stand-in agent processes run with the current interpreter."""

import sys

import pytest

from config import AgentConfig

# Persistent agent: one JSON message per stdin line, answers with an
# assistant record and a closing result record. "crash" exits with status 3.
ECHO_AGENT = r"""
import json, sys
for line in sys.stdin:
    msg = json.loads(line)
    content = msg["message"]["content"]
    if content == "crash":
        sys.stderr.write("agent crashed\n")
        sys.exit(3)
    print(json.dumps({"type": "assistant", "text": content}), flush=True)
    print(json.dumps({"type": "result", "text": content}), flush=True)
"""

# One-shot agent: prints the trailing argument line by line.
PRINT_ARG_AGENT = r"""
import sys
sys.stdout.write(sys.argv[-1])
"""


def make_config(persistent_script: str = ECHO_AGENT, oneshot_script: str = PRINT_ARG_AGENT, **kwargs) -> AgentConfig:
    return AgentConfig(
        command=sys.executable,
        persistent_args=["-c", persistent_script],
        oneshot_args=["-c", oneshot_script],
        system_prompt=None,
        turn_end_type=kwargs.pop("turn_end_type", "result"),
        terminate_grace=kwargs.pop("terminate_grace", 2.0),
        **kwargs,
    )


@pytest.fixture
def agent_config() -> AgentConfig:
    return make_config()
