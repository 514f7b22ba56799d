"""Typed failures reported by the relay core to its callers."""

from typing import Optional


class RelayError(Exception):
    """Base class for relay errors"""
    pass


class SpawnError(RelayError):
    """The agent process could not be launched."""

    def __init__(self, command: str, reason: str):
        super().__init__(f"Failed to spawn {command!r}: {reason}")
        self.command = command
        self.reason = reason


class WriteAfterExitError(RelayError):
    """Write attempted on a process whose input is gone."""

    def __init__(self, pid: Optional[int], returncode: Optional[int] = None):
        detail = f"exit status {returncode}" if returncode is not None else "input closed"
        super().__init__(f"Process {pid} can no longer accept input ({detail})")
        self.pid = pid
        self.returncode = returncode


class ProcessFailedError(RelayError):
    """A one-shot process exited non-zero without producing any records."""

    def __init__(self, returncode: int, stderr: str = ""):
        message = stderr.strip() or f"Exit code: {returncode}"
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class StreamError(RelayError):
    """Reading the process output failed part way through."""
    pass


class SessionNotFound(RelayError):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class GitError(RelayError):
    """A git command failed (not a repository, git missing, bad path)."""
    pass
