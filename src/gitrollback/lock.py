"""Per-repository session lock.

Only one rollback session may touch a repository at a time. The lock is an
fcntl.flock() on <state dir>/rollback.lock, which the kernel drops when the
holding process exits, so a crashed run never leaves the repository locked.
The file body only describes the holder for error messages.
"""

from __future__ import annotations

import fcntl
import json
import os
import socket
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

__all__ = [
    "LOCK_FILE_NAME",
    "LockHolder",
    "SessionLock",
    "get_local_hostname",
]

LOCK_FILE_NAME = "rollback.lock"


def get_local_hostname() -> str:
    return socket.gethostname()


@dataclass(frozen=True)
class LockHolder:
    """Who holds the lock, as recorded in the lock file."""

    hostname: str
    pid: int
    acquired_at: datetime
    session_id: str | None = None

    @classmethod
    def current(cls, session_id: str | None = None) -> LockHolder:
        return cls(
            hostname=get_local_hostname(),
            pid=os.getpid(),
            acquired_at=datetime.now(UTC),
            session_id=session_id,
        )

    def __str__(self) -> str:
        since = self.acquired_at.astimezone(UTC).strftime("%Y-%m-%d %H:%M:%S UTC")
        return f"pid {self.pid} on {self.hostname} since {since}"

    def to_json(self) -> str:
        return json.dumps(
            {
                "hostname": self.hostname,
                "pid": self.pid,
                "acquiredAt": self.acquired_at.isoformat(),
                "sessionId": self.session_id,
            }
        )

    @classmethod
    def from_json(cls, text: str) -> LockHolder:
        data = json.loads(text)
        return cls(
            hostname=data["hostname"],
            pid=int(data["pid"]),
            acquired_at=datetime.fromisoformat(data["acquiredAt"]),
            session_id=data.get("sessionId"),
        )


class SessionLock:
    """Exclusive, non-blocking lock on one repository's state directory."""

    def __init__(self, lock_path: Path) -> None:
        self._lock_path = lock_path
        self._fd: int | None = None

    @property
    def path(self) -> Path:
        return self._lock_path

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self, holder: LockHolder | None = None) -> bool:
        """Try to take the lock without waiting.

        Returns:
            True if this instance now holds the lock, False if someone else does
        """
        if self._fd is not None:
            raise RuntimeError(f"Lock {self._lock_path} is already held by this instance")

        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._lock_path, os.O_CREAT | os.O_RDWR, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return False

        os.ftruncate(fd, 0)
        os.write(fd, (holder or LockHolder.current()).to_json().encode())
        self._fd = fd
        return True

    def holder(self) -> LockHolder | None:
        """The holder recorded in the lock file, or None if unknown.

        The record is informational; a stale or unreadable file is not an error.
        """
        try:
            return LockHolder.from_json(self._lock_path.read_text())
        except FileNotFoundError:
            return None
        except (ValueError, KeyError, TypeError):
            return None

    def release(self) -> None:
        """Release the lock. Safe to call when not held."""
        if self._fd is None:
            return
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None
