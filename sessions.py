"""
In-memory session registry for Agent Relay.

Each session owns one long-lived agent process. A single pump task per session
reads the process's stdout into a channel (an ``asyncio.Queue``); message turns
consume from that channel, so a client going away never tears down the read
loop. Create/destroy are serialized per session id; different ids never wait
on each other.

A turn that ends before its closing record (client gone, cancel) is counted in
``Session.unfinished_turns``. Later turns drop records from the channel until
that many closing records have gone by, so a late reply never reaches the
wrong request.
"""

import asyncio
import logging
import os
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Set

from agent_cli import encode_user_message, is_turn_end, persistent_argv
from config import AgentConfig, agent_config as default_agent_config, app_config
from errors import SessionNotFound, SpawnError, StreamError, WriteAfterExitError
from process import ProcessHandle
from relay import stream_records

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    DRAINING = "draining"
    TERMINATED = "terminated"


@dataclass
class _EndOfOutput:
    """Channel marker: the process's stdout closed (``error`` set if it failed)."""
    error: Optional[StreamError] = None


@dataclass
class _CancelTurn:
    """Channel marker: wake turn number ``turn`` so it can stop."""
    turn: int


@dataclass
class Session:
    """A live agent session."""
    session_id: str
    working_directory: str
    created_at: str
    process: ProcessHandle = field(repr=False)
    state: SessionState = SessionState.STARTING
    records: "asyncio.Queue[Any]" = field(default_factory=asyncio.Queue, repr=False)
    turn_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    turn_seq: int = 0
    cancel_requested: int = 0
    unfinished_turns: int = 0
    history: Deque[Dict[str, Any]] = field(default_factory=deque, repr=False)
    stderr_tail: bytearray = field(default_factory=bytearray, repr=False)
    pump_task: Optional["asyncio.Task[None]"] = field(default=None, repr=False)
    stderr_task: Optional["asyncio.Task[None]"] = field(default=None, repr=False)

    @property
    def busy(self) -> bool:
        """True while a message turn is in flight."""
        return self.turn_lock.locked()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.session_id,
            "cwd": self.working_directory,
            "createdAt": self.created_at,
            "state": self.state.value,
            "pid": self.process.pid,
            "busy": self.busy,
        }


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionRegistry:
    """
    Owns every live session and its process.

    ``get`` and ``list`` take no lock; ``create`` and ``destroy`` hold the
    per-id lock for the duration of spawn or teardown.
    """

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        stderr_tail_bytes: Optional[int] = None,
        history_turns: Optional[int] = None,
        history_records: Optional[int] = None,
    ):
        self.config = config or default_agent_config
        self.stderr_tail_bytes = stderr_tail_bytes or app_config.stderr_tail_bytes
        self.history_turns = history_turns or app_config.history_turns
        self.history_records = history_records or app_config.history_records
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._background: Set["asyncio.Task[Any]"] = set()

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def create(self, working_directory: str) -> Session:
        """Spawn an agent rooted at ``working_directory`` and register it.

        Raises ``SpawnError`` if the agent cannot be launched; nothing is
        registered in that case.
        """
        cwd = os.path.abspath(os.path.expanduser(working_directory))
        session_id = uuid.uuid4().hex
        lock = self._lock_for(session_id)
        async with lock:
            try:
                process = await ProcessHandle.spawn(
                    self.config.command, persistent_argv(self.config), cwd, stdin=True,
                )
            except SpawnError:
                self._locks.pop(session_id, None)
                raise
            session = Session(
                session_id=session_id,
                working_directory=cwd,
                created_at=_now_iso(),
                process=process,
                records=asyncio.Queue(maxsize=max(1, self.config.max_pending_records)),
                history=deque(maxlen=self.history_turns),
            )
            self._sessions[session_id] = session
            session.pump_task = asyncio.create_task(self._pump(session))
            session.stderr_task = asyncio.create_task(self._collect_stderr(session))
            session.state = SessionState.RUNNING
        logger.info("Session %s created (pid %s, cwd %s)", session_id, process.pid, cwd)
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def list(self) -> List[Session]:
        """All live sessions in creation order."""
        return list(self._sessions.values())

    async def destroy(self, session_id: str) -> bool:
        """Terminate and forget a session.

        Idempotent: unknown or already destroyed ids are a no-op. Returns True
        only for the call that actually tore the session down.
        """
        lock = self._locks.get(session_id)
        if lock is None:
            return False
        async with lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.state = SessionState.DRAINING
            try:
                await asyncio.shield(self._teardown(session))
            finally:
                session.state = SessionState.TERMINATED
                self._sessions.pop(session_id, None)
                self._locks.pop(session_id, None)
        logger.info("Session %s destroyed", session_id)
        return True

    async def destroy_all(self) -> None:
        ids = [s.session_id for s in self.list()]
        if ids:
            await asyncio.gather(*(self.destroy(sid) for sid in ids))

    def send_message(
        self,
        session_id: str,
        message: str,
        images: Optional[List[str]] = None,
    ) -> AsyncIterator[str]:
        """Write a message to the session's agent and return the records of that turn.

        Raises ``SessionNotFound`` immediately for unknown ids. Iterating the
        result raises ``WriteAfterExitError`` (and destroys the session) if
        the process is gone, or ``StreamError`` if its output fails.
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return self._turn(session, message, images)

    def cancel_turn(self, session_id: str) -> bool:
        """Stop forwarding the in-flight turn. The agent process keeps running.

        Returns False when no turn is in flight.
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if not session.busy or session.turn_seq == 0:
            return False
        session.cancel_requested = session.turn_seq
        # A full channel already has records to wake the turn with.
        if not session.records.full():
            session.records.put_nowait(_CancelTurn(session.turn_seq))
        logger.info("Session %s: turn %d cancelled", session_id, session.turn_seq)
        return True

    def history(self, session_id: str) -> List[Dict[str, Any]]:
        """Recent turns, oldest first: message, status and the records relayed."""
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return [dict(entry, records=list(entry["records"])) for entry in session.history]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    def _spawn_background(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _turn(
        self,
        session: Session,
        message: str,
        images: Optional[List[str]],
    ) -> AsyncIterator[str]:
        async with session.turn_lock:
            session.turn_seq += 1
            seq = session.turn_seq
            end = self._discard_stale(session)
            if end is not None or session.state is not SessionState.RUNNING:
                await self.destroy(session.session_id)
                raise WriteAfterExitError(session.process.pid, session.process.returncode)
            try:
                await session.process.write(encode_user_message(message, images))
            except WriteAfterExitError:
                logger.warning("Session %s: write after exit, terminating session", session.session_id)
                await self.destroy(session.session_id)
                raise
            logger.debug("Session %s: message written (%d chars)", session.session_id, len(message))

            entry = self._start_history(session, seq, message, images)
            finished = False
            try:
                while True:
                    item = await session.records.get()
                    if isinstance(item, _EndOfOutput):
                        # Leave the marker for whoever reads next; the get above made room.
                        session.records.put_nowait(item)
                        finished = True
                        entry["status"] = "failed" if item.error is not None else "ended"
                        if item.error is not None:
                            raise item.error
                        return
                    if isinstance(item, _CancelTurn):
                        if item.turn == seq:
                            return
                        continue
                    if session.unfinished_turns:
                        self._forget(session, item)
                        continue
                    finished = is_turn_end(item, self.config.turn_end_type)
                    if session.cancel_requested == seq:
                        return
                    if len(entry["records"]) < self.history_records:
                        entry["records"].append(item)
                    else:
                        entry["truncated"] = True
                    yield item
                    if finished:
                        entry["status"] = "completed"
                        return
            finally:
                if entry["status"] == "running":
                    entry["status"] = "cancelled"
                if not finished and self.config.turn_end_type:
                    session.unfinished_turns += 1
                    logger.debug(
                        "Session %s: turn %d left before its end record (%d unfinished)",
                        session.session_id, seq, session.unfinished_turns,
                    )

    def _start_history(
        self,
        session: Session,
        seq: int,
        message: str,
        images: Optional[List[str]],
    ) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "turn": seq,
            "message": message,
            "images": len(images or []),
            "startedAt": _now_iso(),
            "status": "running",
            "records": [],
            "truncated": False,
        }
        session.history.append(entry)
        return entry

    def _forget(self, session: Session, item: Any) -> None:
        """Drop a channel item, settling one unfinished turn if it was a closing record."""
        if (
            isinstance(item, str)
            and session.unfinished_turns
            and is_turn_end(item, self.config.turn_end_type)
        ):
            session.unfinished_turns -= 1

    def _discard_stale(self, session: Session) -> Optional[_EndOfOutput]:
        """Drop records left over from abandoned turns; keep an end marker if present."""
        end = None
        dropped = 0
        while True:
            try:
                item = session.records.get_nowait()
            except asyncio.QueueEmpty:
                break
            if isinstance(item, _EndOfOutput):
                end = item
                continue
            if isinstance(item, str):
                dropped += 1
            self._forget(session, item)
        if end is not None:
            session.records.put_nowait(end)
        if dropped:
            logger.debug("Session %s: discarded %d stale records", session.session_id, dropped)
        return end

    async def _enqueue(self, session: Session, record: str) -> None:
        """Hand a record to the channel.

        While a turn is reading, a full channel makes the pump wait for room.
        With no turn in flight the oldest item is dropped instead.
        """
        queue = session.records
        while True:
            try:
                queue.put_nowait(record)
                return
            except asyncio.QueueFull:
                pass
            if session.busy:
                try:
                    await asyncio.wait_for(queue.put(record), timeout=0.5)
                    return
                except asyncio.TimeoutError:
                    continue
            self._drop_oldest(session)

    def _drop_oldest(self, session: Session) -> None:
        try:
            item = session.records.get_nowait()
        except asyncio.QueueEmpty:
            return
        self._forget(session, item)

    def _end_output(self, session: Session, error: Optional[StreamError]) -> None:
        if session.records.full():
            logger.warning("Session %s: channel full at end of output, dropping oldest record", session.session_id)
            self._drop_oldest(session)
        session.records.put_nowait(_EndOfOutput(error))

    async def _pump(self, session: Session) -> None:
        """The session's only stdout read loop."""
        error: Optional[StreamError] = None
        try:
            async for record in stream_records(session.process.stdout, self.config.read_chunk_size):
                await self._enqueue(session, record)
        except StreamError as e:
            error = e
            logger.warning("Session %s: %s", session.session_id, e)
        finally:
            self._end_output(session, error)

        returncode = await session.process.wait()
        if session.stderr_task is not None:
            # Let the last stderr bytes land before they are logged.
            await asyncio.wait([session.stderr_task], timeout=1.0)
        if session.state is SessionState.RUNNING:
            if returncode != 0:
                logger.warning(
                    "Session %s: agent exited with %s: %s",
                    session.session_id, returncode, self.stderr_text(session)[-500:],
                )
            else:
                logger.info("Session %s: agent exited", session.session_id)
            self._spawn_background(self.destroy(session.session_id))

    async def _collect_stderr(self, session: Session) -> None:
        """Keep the pipe empty and remember the tail for diagnostics."""
        reader = session.process.stderr
        while True:
            chunk = await reader.read(self.config.read_chunk_size)
            if not chunk:
                return
            session.stderr_tail.extend(chunk)
            overflow = len(session.stderr_tail) - self.stderr_tail_bytes
            if overflow > 0:
                del session.stderr_tail[:overflow]

    async def _teardown(self, session: Session) -> None:
        current = asyncio.current_task()
        tasks = [t for t in (session.pump_task, session.stderr_task) if t is not None and t is not current]
        for task in tasks:
            task.cancel()
        await session.process.close(grace=self.config.terminate_grace)
        await asyncio.gather(*tasks, return_exceptions=True)

    @staticmethod
    def stderr_text(session: Session) -> str:
        return session.stderr_tail.decode("utf-8", errors="replace")
