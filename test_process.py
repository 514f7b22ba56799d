"""Tests for ProcessHandle spawn, input, termination and reaping."""

import asyncio
import os
import signal
import sys

import pytest

from errors import SpawnError, WriteAfterExitError
from process import ProcessHandle

SLEEPER = "import time; print('ready', flush=True); time.sleep(60)"
STUBBORN = (
    "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
    "print('ready', flush=True); time.sleep(60)"
)


async def _spawn(script, tmp_path, stdin=True):
    return await ProcessHandle.spawn(sys.executable, ["-c", script], str(tmp_path), stdin=stdin)


def _pid_gone(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    return False


@pytest.mark.asyncio
async def test_spawn_missing_binary(tmp_path):
    with pytest.raises(SpawnError) as exc_info:
        await ProcessHandle.spawn(str(tmp_path / "missing"), [], str(tmp_path))
    assert "missing" in str(exc_info.value)


@pytest.mark.asyncio
async def test_spawn_missing_working_directory(tmp_path):
    with pytest.raises(SpawnError):
        await ProcessHandle.spawn(sys.executable, ["-c", "pass"], str(tmp_path / "nope"))


@pytest.mark.asyncio
async def test_spawn_not_executable(tmp_path):
    script = tmp_path / "agent.sh"
    script.write_text("#!/bin/sh\necho hi\n")
    os.chmod(script, 0o644)
    with pytest.raises(SpawnError):
        await ProcessHandle.spawn(str(script), [], str(tmp_path))


@pytest.mark.asyncio
async def test_write_reaches_process(tmp_path):
    handle = await _spawn("import sys; print(sys.stdin.readline().strip().upper())", tmp_path)
    await handle.write(b"ping\n")
    handle.close_input()
    assert (await handle.stdout.readline()).strip() == b"PING"
    assert await handle.wait() == 0


@pytest.mark.asyncio
async def test_write_after_exit_raises(tmp_path):
    handle = await _spawn("pass", tmp_path)
    assert await handle.wait() == 0
    with pytest.raises(WriteAfterExitError):
        await handle.write(b"too late\n")


@pytest.mark.asyncio
async def test_write_without_stdin_raises(tmp_path):
    handle = await _spawn(SLEEPER, tmp_path, stdin=False)
    assert handle.stdin is None
    with pytest.raises(WriteAfterExitError):
        await handle.write(b"x")
    await handle.close(grace=2)


@pytest.mark.asyncio
async def test_terminate_signals_once_and_all_waiters_see_status(tmp_path):
    handle = await _spawn(SLEEPER, tmp_path)
    await handle.stdout.readline()
    handle.terminate()
    handle.terminate()
    first, second = await asyncio.gather(handle.wait(), handle.wait())
    assert first == second == -signal.SIGTERM
    assert handle.returncode == -signal.SIGTERM
    assert not handle.running


@pytest.mark.asyncio
async def test_close_reaps_process(tmp_path):
    handle = await _spawn(SLEEPER, tmp_path)
    pid = handle.pid
    await handle.stdout.readline()
    await handle.close(grace=2)
    assert _pid_gone(pid)


@pytest.mark.asyncio
async def test_close_escalates_to_kill(tmp_path):
    handle = await _spawn(STUBBORN, tmp_path)
    await handle.stdout.readline()
    returncode = await handle.close(grace=0.3)
    assert returncode == -signal.SIGKILL


@pytest.mark.asyncio
async def test_close_after_exit_is_harmless(tmp_path):
    handle = await _spawn("pass", tmp_path)
    await handle.wait()
    assert await handle.close() == 0
    handle.terminate()
