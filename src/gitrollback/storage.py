"""Atomic file writes and the on-disk session stores."""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from gitrollback.session import RollbackSession

__all__ = [
    "PendingSessionStore",
    "SessionJournal",
    "SessionStore",
    "atomic_write_text",
]


def atomic_write_text(path: Path, content: str) -> None:
    """Write content to path so readers see either the old file or the new one.

    Writes a temp file in the same directory, fsyncs it, then renames it over
    path. A crash never leaves a half-written file under the final name.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}-",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        Path(temp_path).replace(path)
    except BaseException:
        with contextlib.suppress(OSError):
            Path(temp_path).unlink()
        raise


class SessionStore:
    """Sessions persisted as one JSON file each, keyed by session ID."""

    def __init__(self, directory: Path, clock: Callable[[], datetime] | None = None) -> None:
        self._directory = directory
        self._clock = clock

    @property
    def directory(self) -> Path:
        return self._directory

    def _path(self, session_id: str) -> Path:
        return self._directory / f"{session_id}.json"

    def _decode(self, text: str) -> RollbackSession:
        return RollbackSession.from_dict(json.loads(text), clock=self._clock)

    def save(self, session: RollbackSession) -> Path:
        path = self._path(session.session_id)
        atomic_write_text(path, json.dumps(session.to_dict(), indent=2))
        return path

    def load(self, session_id: str) -> RollbackSession | None:
        path = self._path(session_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return self._decode(text)

    def list(self) -> list[RollbackSession]:
        """All stored sessions, oldest first."""
        if not self._directory.exists():
            return []
        sessions = [self._decode(p.read_text(encoding="utf-8")) for p in self._directory.glob("*.json")]
        return sorted(sessions, key=lambda s: s.session_id)

    def remove(self, session_id: str) -> None:
        self._path(session_id).unlink(missing_ok=True)


class PendingSessionStore(SessionStore):
    """Sessions parked in AwaitingApproval.

    A pending session is the repository's active session until it is
    approved or expires.
    """


class SessionJournal(SessionStore):
    """Sessions that have started executing and are not yet reported.

    Rewritten after every step. A file left behind means the process died
    part way through; the next run closes that session before doing anything
    else.
    """
