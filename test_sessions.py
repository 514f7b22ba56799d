"""Tests for the session registry: lifecycle, concurrency and message turns."""

import asyncio
import json
import os

import pytest

from conftest import make_config
from errors import SessionNotFound, SpawnError, WriteAfterExitError
from sessions import SessionRegistry, SessionState


def _pid_gone(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    return False


async def _eventually(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            return False
        await asyncio.sleep(0.02)
    return True


async def _turn(registry, session_id, message):
    return [json.loads(r) async for r in registry.send_message(session_id, message)]


@pytest.mark.asyncio
async def test_create_then_destroy_leaves_nothing(tmp_path, agent_config):
    registry = SessionRegistry(agent_config)
    session = await registry.create(str(tmp_path))
    pid = session.process.pid

    assert session.state is SessionState.RUNNING
    assert session.working_directory == str(tmp_path)
    assert registry.get(session.session_id) is session
    assert registry.list() == [session]

    assert await registry.destroy(session.session_id) is True
    assert registry.list() == []
    assert registry.get(session.session_id) is None
    assert session.state is SessionState.TERMINATED
    assert _pid_gone(pid)


@pytest.mark.asyncio
async def test_list_in_creation_order_and_unique_ids(tmp_path, agent_config):
    registry = SessionRegistry(agent_config)
    sessions = [await registry.create(str(tmp_path)) for _ in range(3)]
    assert registry.list() == sessions
    assert len({s.session_id for s in sessions}) == 3
    await registry.destroy_all()
    assert registry.list() == []


@pytest.mark.asyncio
async def test_relative_working_directory_made_absolute(tmp_path, agent_config, monkeypatch):
    monkeypatch.chdir(tmp_path)
    registry = SessionRegistry(agent_config)
    session = await registry.create(".")
    assert os.path.isabs(session.working_directory)
    assert session.to_dict()["cwd"] == str(tmp_path)
    await registry.destroy_all()


@pytest.mark.asyncio
async def test_destroy_unknown_is_noop(agent_config):
    registry = SessionRegistry(agent_config)
    assert await registry.destroy("does-not-exist") is False


@pytest.mark.asyncio
async def test_concurrent_destroy_tears_down_once(tmp_path, agent_config):
    registry = SessionRegistry(agent_config)
    session = await registry.create(str(tmp_path))
    results = await asyncio.gather(*(registry.destroy(session.session_id) for _ in range(5)))
    assert results.count(True) == 1
    assert registry.list() == []
    assert _pid_gone(session.process.pid)


@pytest.mark.asyncio
async def test_spawn_failure_registers_nothing(tmp_path):
    config = make_config()
    config.command = str(tmp_path / "no-such-agent")
    registry = SessionRegistry(config)
    with pytest.raises(SpawnError):
        await registry.create(str(tmp_path))
    assert registry.list() == []


@pytest.mark.asyncio
async def test_missing_working_directory_is_spawn_error(tmp_path, agent_config):
    registry = SessionRegistry(agent_config)
    with pytest.raises(SpawnError):
        await registry.create(str(tmp_path / "gone"))
    assert registry.list() == []


@pytest.mark.asyncio
async def test_message_turn_streams_until_result(tmp_path, agent_config):
    registry = SessionRegistry(agent_config)
    session = await registry.create(str(tmp_path))
    try:
        first = await _turn(registry, session.session_id, "hello")
        assert first == [{"type": "assistant", "text": "hello"}, {"type": "result", "text": "hello"}]
        second = await _turn(registry, session.session_id, "again")
        assert [r["text"] for r in second] == ["again", "again"]
    finally:
        await registry.destroy_all()


@pytest.mark.asyncio
async def test_busy_while_turn_in_flight(tmp_path, agent_config):
    registry = SessionRegistry(agent_config)
    session = await registry.create(str(tmp_path))
    try:
        assert not session.busy
        records = registry.send_message(session.session_id, "hi")
        await records.__anext__()
        assert session.busy
        async for _ in records:
            pass
        assert not session.busy
    finally:
        await registry.destroy_all()


@pytest.mark.asyncio
async def test_send_to_unknown_session_fails_immediately(agent_config):
    registry = SessionRegistry(agent_config)
    with pytest.raises(SessionNotFound):
        registry.send_message("nope", "hi")


@pytest.mark.asyncio
async def test_abandoned_turn_does_not_leak_into_next(tmp_path, agent_config):
    registry = SessionRegistry(agent_config)
    session = await registry.create(str(tmp_path))
    try:
        records = registry.send_message(session.session_id, "first")
        assert json.loads(await records.__anext__())["text"] == "first"
        await records.aclose()
        assert not session.busy
        # The abandoned turn's result record still lands in the channel.
        assert await _eventually(lambda: session.records.qsize() >= 1)

        second = await _turn(registry, session.session_id, "second")
        assert [r["text"] for r in second] == ["second", "second"]
        assert session.process.running
    finally:
        await registry.destroy_all()


@pytest.mark.asyncio
async def test_cancelled_consumer_leaves_process_running(tmp_path):
    # No turn framing: the turn runs until the consumer goes away.
    registry = SessionRegistry(make_config(turn_end_type=""))
    session = await registry.create(str(tmp_path))
    try:
        received = []

        async def consume():
            async for record in registry.send_message(session.session_id, "x"):
                received.append(record)

        task = asyncio.create_task(consume())
        assert await _eventually(lambda: len(received) == 2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not session.busy
        assert session.process.running
        assert registry.get(session.session_id) is session
    finally:
        await registry.destroy_all()


@pytest.mark.asyncio
async def test_agent_exit_destroys_session(tmp_path, agent_config):
    registry = SessionRegistry(agent_config)
    session = await registry.create(str(tmp_path))
    records = await _turn(registry, session.session_id, "crash")
    assert records == []
    assert await _eventually(lambda: registry.get(session.session_id) is None)
    assert session.state is SessionState.TERMINATED
    assert "agent crashed" in SessionRegistry.stderr_text(session)


@pytest.mark.asyncio
async def test_write_after_exit_terminates_session(tmp_path, agent_config):
    registry = SessionRegistry(agent_config)
    session = await registry.create(str(tmp_path))
    await session.process.close(grace=2)
    with pytest.raises((WriteAfterExitError, SessionNotFound)):
        async for _ in registry.send_message(session.session_id, "hi"):
            pass
    assert await _eventually(lambda: registry.get(session.session_id) is None)


@pytest.mark.asyncio
async def test_destroy_while_turn_waiting(tmp_path):
    # Agent that never answers: the turn is parked on the channel.
    silent = "import sys, time\nfor line in sys.stdin:\n    time.sleep(60)\n"
    registry = SessionRegistry(make_config(persistent_script=silent))
    session = await registry.create(str(tmp_path))

    async def consume():
        return [r async for r in registry.send_message(session.session_id, "hi")]

    task = asyncio.create_task(consume())
    assert await _eventually(lambda: session.busy)
    assert await asyncio.wait_for(registry.destroy(session.session_id), timeout=10) is True
    assert await asyncio.wait_for(task, timeout=5) == []
    assert registry.list() == []


@pytest.mark.asyncio
async def test_sessions_are_independent(tmp_path, agent_config):
    registry = SessionRegistry(agent_config)
    a = await registry.create(str(tmp_path))
    b = await registry.create(str(tmp_path))
    try:
        results = await asyncio.gather(
            _turn(registry, a.session_id, "for a"),
            _turn(registry, b.session_id, "for b"),
        )
        assert [r["text"] for r in results[0]] == ["for a", "for a"]
        assert [r["text"] for r in results[1]] == ["for b", "for b"]
        await registry.destroy(a.session_id)
        assert [r["text"] for r in await _turn(registry, b.session_id, "still")] == ["still", "still"]
    finally:
        await registry.destroy_all()


@pytest.mark.asyncio
async def test_to_dict_shape(tmp_path, agent_config):
    registry = SessionRegistry(agent_config)
    session = await registry.create(str(tmp_path))
    try:
        data = session.to_dict()
        assert data["id"] == session.session_id
        assert data["cwd"] == str(tmp_path)
        assert data["createdAt"] == session.created_at
        assert data["state"] == "running"
        assert data["pid"] == session.process.pid
        assert data["busy"] is False
    finally:
        await registry.destroy_all()


# ============================================================
# Abandoned and cancelled turns
# ============================================================

# Echo agent that takes half a second per reply.
SLOW_AGENT = r"""
import json, sys, time
for line in sys.stdin:
    content = json.loads(line)["message"]["content"]
    time.sleep(0.5)
    print(json.dumps({"type": "assistant", "text": content}), flush=True)
    print(json.dumps({"type": "result", "text": content}), flush=True)
"""


@pytest.mark.asyncio
async def test_reply_to_cancelled_turn_is_not_delivered_to_next(tmp_path):
    registry = SessionRegistry(make_config(persistent_script=SLOW_AGENT))
    session = await registry.create(str(tmp_path))
    try:
        first = asyncio.create_task(_turn(registry, session.session_id, "first"))
        await asyncio.sleep(0.1)
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        assert session.unfinished_turns == 1

        # The agent is still working on "first" when this turn is written.
        second = await _turn(registry, session.session_id, "second")
        assert [r["text"] for r in second] == ["second", "second"]
        assert session.unfinished_turns == 0

        third = await _turn(registry, session.session_id, "third")
        assert [r["text"] for r in third] == ["third", "third"]
    finally:
        await registry.destroy_all()


@pytest.mark.asyncio
async def test_two_abandoned_turns_are_both_skipped(tmp_path):
    registry = SessionRegistry(make_config(persistent_script=SLOW_AGENT))
    session = await registry.create(str(tmp_path))
    try:
        for message in ("one", "two"):
            records = registry.send_message(session.session_id, message)
            task = asyncio.create_task(records.__anext__())
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            await records.aclose()
        assert session.unfinished_turns == 2

        result = await _turn(registry, session.session_id, "three")
        assert [r["text"] for r in result] == ["three", "three"]
        assert session.unfinished_turns == 0
    finally:
        await registry.destroy_all()


@pytest.mark.asyncio
async def test_cancel_turn_ends_stream_and_keeps_process(tmp_path):
    registry = SessionRegistry(make_config(persistent_script=SLOW_AGENT))
    session = await registry.create(str(tmp_path))
    try:
        assert registry.cancel_turn(session.session_id) is False

        task = asyncio.create_task(_turn(registry, session.session_id, "first"))
        assert await _eventually(lambda: session.busy)
        await asyncio.sleep(0.1)
        assert registry.cancel_turn(session.session_id) is True
        assert await asyncio.wait_for(task, timeout=5) == []
        assert not session.busy
        assert session.process.running

        second = await _turn(registry, session.session_id, "second")
        assert [r["text"] for r in second] == ["second", "second"]

        statuses = [(t["message"], t["status"]) for t in registry.history(session.session_id)]
        assert statuses == [("first", "cancelled"), ("second", "completed")]
    finally:
        await registry.destroy_all()


@pytest.mark.asyncio
async def test_cancel_turn_unknown_session(agent_config):
    registry = SessionRegistry(agent_config)
    with pytest.raises(SessionNotFound):
        registry.cancel_turn("nope")


# ============================================================
# History and channel bounds
# ============================================================

@pytest.mark.asyncio
async def test_history_keeps_recent_turns(tmp_path, agent_config):
    registry = SessionRegistry(agent_config, history_turns=2)
    session = await registry.create(str(tmp_path))
    try:
        for message in ("one", "two", "three"):
            await _turn(registry, session.session_id, message)
        history = registry.history(session.session_id)
        assert [t["message"] for t in history] == ["two", "three"]
        assert all(t["status"] == "completed" for t in history)
        assert [json.loads(r)["type"] for r in history[-1]["records"]] == ["assistant", "result"]
        assert history[0]["turn"] < history[1]["turn"]
    finally:
        await registry.destroy_all()


@pytest.mark.asyncio
async def test_history_records_are_capped_per_turn(tmp_path, agent_config):
    registry = SessionRegistry(agent_config, history_records=1)
    session = await registry.create(str(tmp_path))
    try:
        assert len(await _turn(registry, session.session_id, "hi")) == 2
        (entry,) = registry.history(session.session_id)
        assert len(entry["records"]) == 1
        assert entry["truncated"] is True
    finally:
        await registry.destroy_all()


# Prints unsolicited records before reading any input.
NOISY_AGENT = r"""
import json, sys
for i in range(20):
    print(json.dumps({"type": "noise", "n": i}), flush=True)
for line in sys.stdin:
    content = json.loads(line)["message"]["content"]
    print(json.dumps({"type": "assistant", "text": content}), flush=True)
    print(json.dumps({"type": "result", "text": content}), flush=True)
"""

# Thirty records per reply, then the closing record.
CHATTY_AGENT = r"""
import json, sys
for line in sys.stdin:
    for i in range(30):
        print(json.dumps({"type": "assistant", "n": i}), flush=True)
    print(json.dumps({"type": "result"}), flush=True)
"""


@pytest.mark.asyncio
async def test_output_between_turns_is_bounded(tmp_path):
    registry = SessionRegistry(make_config(persistent_script=NOISY_AGENT, max_pending_records=5))
    session = await registry.create(str(tmp_path))
    try:
        assert await _eventually(lambda: session.records.qsize() == 5)
        await asyncio.sleep(0.2)
        assert session.records.qsize() == 5

        result = await _turn(registry, session.session_id, "hi")
        assert [r["text"] for r in result] == ["hi", "hi"]
    finally:
        await registry.destroy_all()


@pytest.mark.asyncio
async def test_slow_reader_loses_no_records(tmp_path):
    registry = SessionRegistry(make_config(persistent_script=CHATTY_AGENT, max_pending_records=5))
    session = await registry.create(str(tmp_path))
    try:
        received = []
        async for record in registry.send_message(session.session_id, "go"):
            received.append(json.loads(record))
            await asyncio.sleep(0.01)
        assert [r["n"] for r in received[:-1]] == list(range(30))
        assert received[-1] == {"type": "result"}
    finally:
        await registry.destroy_all()
