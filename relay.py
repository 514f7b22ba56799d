"""
Stream relay: turns an agent's stdout byte stream into newline-delimited records.

Two consumption modes share the same framing:
  * ``stream_records`` yields each record as soon as its terminator arrives
    (persistent sessions, live SSE/WebSocket forwarding);
  * ``collect_all`` drains stdout and stderr to exhaustion, waits for exit, and
    hands back everything at once (one-shot invocations).
"""

import asyncio
import json
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional, Set

from agent_cli import oneshot_argv
from config import AgentConfig
from errors import ProcessFailedError, RelayError, StreamError
from process import ProcessHandle

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 65536

SSE_DONE = "data: [DONE]\n\n"

# One-shot processes abandoned by a disconnected client; held so the reaper
# tasks are not garbage collected before the process exits.
_reapers: Set["asyncio.Task[None]"] = set()


@dataclass
class OneShotResult:
    """Everything a one-shot invocation produced."""
    records: List[str] = field(default_factory=list)
    stderr: str = ""
    returncode: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _decode_record(raw: bytes) -> Optional[str]:
    text = raw.decode("utf-8", errors="replace")
    if text.endswith("\r"):
        text = text[:-1]
    if not text.strip():
        return None
    return text


async def stream_records(reader, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[str]:
    """Yield newline-delimited records from ``reader`` in arrival order.

    ``reader`` is anything with an awaitable ``read(n)`` returning bytes
    (``b""`` at EOF), normally an ``asyncio.StreamReader``. Blank records are
    dropped and a final unterminated record is emitted at EOF. A read failure
    raises ``StreamError`` after every record completed before it.
    """
    pending = bytearray()
    while True:
        try:
            chunk = await reader.read(chunk_size)
        except Exception as e:
            raise StreamError(f"Output stream failed: {e}") from e
        if not chunk:
            break
        if b"\n" not in chunk:
            pending.extend(chunk)
            continue
        parts = chunk.split(b"\n")
        parts[0] = bytes(pending) + parts[0]
        pending = bytearray(parts.pop())
        for raw in parts:
            record = _decode_record(raw)
            if record is not None:
                yield record
    record = _decode_record(bytes(pending))
    if record is not None:
        yield record


async def collect_records(reader, chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[str]:
    return [record async for record in stream_records(reader, chunk_size)]


async def collect_all(handle: ProcessHandle, chunk_size: int = DEFAULT_CHUNK_SIZE) -> OneShotResult:
    """Read stdout and stderr concurrently to EOF, then wait for exit.

    Non-zero exit and stderr output are returned as metadata. Only a process
    that produced no records and exited non-zero raises ``ProcessFailedError``.
    """
    stderr_task = asyncio.ensure_future(handle.stderr.read())
    try:
        records = await collect_records(handle.stdout, chunk_size)
        stderr_bytes = await stderr_task
    finally:
        if not stderr_task.done():
            stderr_task.cancel()
    returncode = await handle.wait()
    stderr = stderr_bytes.decode("utf-8", errors="replace")

    if not records and returncode != 0:
        logger.warning("pid %s exited with %s and no output: %s", handle.pid, returncode, stderr.strip()[:500])
        raise ProcessFailedError(returncode, stderr)
    if returncode != 0:
        logger.warning("pid %s exited with %s after %d records", handle.pid, returncode, len(records))
    elif stderr.strip():
        logger.info("pid %s stderr: %s", handle.pid, stderr.strip()[:500])
    return OneShotResult(records=records, stderr=stderr, returncode=returncode)


async def _drain_and_reap(handle: ProcessHandle) -> None:
    """Let an abandoned one-shot process finish: keep its pipes empty and reap it."""
    async def _drain(reader) -> None:
        while await reader.read(DEFAULT_CHUNK_SIZE):
            pass

    try:
        await asyncio.gather(_drain(handle.stdout), _drain(handle.stderr))
    except Exception as e:
        logger.debug("Draining pid %s failed: %s", handle.pid, e)
    returncode = await handle.wait()
    logger.info("Abandoned one-shot pid %s exited with %s", handle.pid, returncode)


async def run_once(config: AgentConfig, cwd: str, message: str) -> OneShotResult:
    """Spawn the agent with ``message`` as its trailing argument and collect all output."""
    handle = await ProcessHandle.spawn(config.command, oneshot_argv(config, message), cwd, stdin=False)
    try:
        result = await collect_all(handle, config.read_chunk_size)
    except asyncio.CancelledError:
        task = asyncio.ensure_future(_drain_and_reap(handle))
        _reapers.add(task)
        task.add_done_callback(_reapers.discard)
        raise
    except BaseException:
        await handle.close(grace=config.terminate_grace)
        raise
    await handle.close(grace=config.terminate_grace)
    return result


# ============================================================
# Server-Sent Events framing
# ============================================================

def sse_event(data: str) -> str:
    return f"data: {data}\n\n"


def sse_error(message: str) -> str:
    return sse_event(json.dumps({"error": message}))


async def sse_stream(records: AsyncIterator[str]) -> AsyncIterator[str]:
    """One ``data:`` event per record, then ``[DONE]``.

    A relay error ends the record sequence with an error event before the
    sentinel.
    """
    try:
        async with aclosing(records):
            async for record in records:
                yield sse_event(record)
    except RelayError as e:
        logger.warning("Relay stream ended with error: %s", e)
        yield sse_error(str(e))
    yield SSE_DONE
