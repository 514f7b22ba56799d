"""
Process handle for the external agent.
Wraps one asyncio subprocess: its three pipes, its pid, and its termination.
"""

import asyncio
import logging
import os
import signal
from typing import List, Optional

from errors import SpawnError, WriteAfterExitError

logger = logging.getLogger(__name__)


class ProcessHandle:
    """One spawned agent process.

    The child runs in its own session (``start_new_session=True``) so the
    whole process group can be signaled; the agent CLI typically forks
    helpers of its own.  ``terminate()`` signals at most once, ``wait()`` may
    be awaited by any number of tasks, and ``close()`` always reaps.
    """

    def __init__(self, proc: asyncio.subprocess.Process, command: str):
        self._proc = proc
        self.command = command
        self._terminated = False
        self._killed = False

    @classmethod
    async def spawn(
        cls,
        command: str,
        args: List[str],
        cwd: str,
        stdin: bool = True,
    ) -> "ProcessHandle":
        """Start ``command`` with stdout/stderr piped. stdin is /dev/null when ``stdin`` is False."""
        if not os.path.isdir(cwd):
            raise SpawnError(command, f"working directory not found: {cwd}")
        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=cwd,
                stdin=asyncio.subprocess.PIPE if stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(command, e.strerror or str(e)) from e
        logger.info("Spawned %s (pid %s) in %s", command, proc.pid, cwd)
        return cls(proc, command)

    # ------------------------------------------------------------------
    # Streams and status
    # ------------------------------------------------------------------

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def stdin(self) -> Optional[asyncio.StreamWriter]:
        return self._proc.stdin

    @property
    def stdout(self) -> asyncio.StreamReader:
        return self._proc.stdout

    @property
    def stderr(self) -> asyncio.StreamReader:
        return self._proc.stderr

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    @property
    def running(self) -> bool:
        return self._proc.returncode is None

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    async def write(self, data: bytes) -> None:
        stdin = self._proc.stdin
        if stdin is None or self.returncode is not None or stdin.is_closing():
            raise WriteAfterExitError(self.pid, self.returncode)
        try:
            stdin.write(data)
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise WriteAfterExitError(self.pid, self.returncode) from e

    def close_input(self) -> None:
        stdin = self._proc.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def terminate(self) -> None:
        """Send SIGTERM to the process group. Never blocks; repeated calls are no-ops."""
        if self._terminated:
            return
        self._terminated = True
        self._signal(signal.SIGTERM)

    def kill(self) -> None:
        if self._killed:
            return
        self._killed = True
        self._signal(signal.SIGKILL)

    def _signal(self, sig: int) -> None:
        if self.returncode is not None:
            return
        try:
            os.killpg(self.pid, sig)
        except (ProcessLookupError, PermissionError):
            try:
                self._proc.send_signal(sig)
            except ProcessLookupError:
                pass
        logger.debug("Sent signal %s to pid %s", sig, self.pid)

    async def wait(self) -> int:
        """Suspend until the process exits and return its exit status."""
        return await self._proc.wait()

    async def close(self, grace: float = 5.0) -> int:
        """Terminate, escalate to SIGKILL after ``grace`` seconds, and reap."""
        self.close_input()
        if self.running:
            self.terminate()
            try:
                await asyncio.wait_for(self._proc.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("pid %s ignored SIGTERM for %.1fs, killing", self.pid, grace)
                self.kill()
        returncode = await self._proc.wait()
        logger.info("Process %s (pid %s) exited with %s", self.command, self.pid, returncode)
        return returncode
