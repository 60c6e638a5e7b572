"""Pre-rollback backups: git bundles published atomically under a backup ID.

Layout of the backups directory:

    <backup_id>.bundle   git bundle with the pinned refs
    <backup_id>.json     metadata; its presence marks the backup as complete

The objects are additionally pinned in the repository under
refs/rollback-backups/<backup_id>/{head,worktree} so a restore does not
depend on reading the bundle back unless the objects were pruned.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from gitrollback.git import BACKUP_REF_PREFIX, GitCommandError, GitRepository
from gitrollback.logger import get_logger
from gitrollback.models import BackupSnapshot
from gitrollback.storage import atomic_write_text

__all__ = [
    "BackupError",
    "BackupManager",
    "BackupResult",
]

logger = get_logger(__name__)


class BackupError(Exception):
    """A backup could not be created, loaded or restored."""


@dataclass(frozen=True)
class BackupResult:
    """Outcome of BackupManager.create()."""

    snapshot: BackupSnapshot | None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.snapshot is not None


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1 << 16), b""):
            digest.update(chunk)
    return digest.hexdigest()


class BackupManager:
    """Create, load and restore BackupSnapshots for one repository."""

    def __init__(
        self,
        repo: GitRepository,
        directory: Path,
        timeout: float = 120.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repo = repo
        self._directory = directory
        self._timeout = timeout
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def directory(self) -> Path:
        return self._directory

    def _bundle_path(self, backup_id: str) -> Path:
        return self._directory / f"{backup_id}.bundle"

    def _metadata_path(self, backup_id: str) -> Path:
        return self._directory / f"{backup_id}.json"

    async def create(self, session_id: str) -> BackupResult:
        """Capture HEAD and uncommitted changes before anything destructive runs.

        All-or-nothing: on any failure (including the timeout) every partial
        artifact is removed and no snapshot is returned.
        """
        try:
            snapshot = await asyncio.wait_for(self._create(session_id), timeout=self._timeout)
        except TimeoutError:
            return BackupResult(snapshot=None, error=f"Backup timed out after {self._timeout:g}s")
        except (BackupError, GitCommandError, OSError) as e:
            return BackupResult(snapshot=None, error=str(e))
        logger.info("backup created", backup_id=snapshot.backup_id, source_ref=snapshot.source_ref)
        return BackupResult(snapshot=snapshot)

    async def _create(self, session_id: str) -> BackupSnapshot:
        head_sha = await self._repo.head()
        backup_id = f"backup-{session_id}-{head_sha[:12]}"
        bundle_path = self._bundle_path(backup_id)
        metadata_path = self._metadata_path(backup_id)
        if bundle_path.exists() or metadata_path.exists():
            raise BackupError(f"Backup {backup_id} already exists; refusing to overwrite")

        self._directory.mkdir(parents=True, exist_ok=True)
        temp_bundle = self._directory / f".{backup_id}.bundle.tmp"
        head_ref = f"{BACKUP_REF_PREFIX}/{backup_id}/head"
        worktree_ref = f"{BACKUP_REF_PREFIX}/{backup_id}/worktree"
        pinned: list[str] = []
        published = False

        try:
            await self._repo.update_ref(head_ref, head_sha)
            pinned.append(head_ref)

            worktree_sha = await self._repo.capture_worktree()
            if worktree_sha is not None:
                await self._repo.update_ref(worktree_ref, worktree_sha)
                pinned.append(worktree_ref)

            await self._repo.create_bundle(temp_bundle, pinned)
            if not await self._repo.verify_bundle(temp_bundle):
                raise BackupError(f"Bundle for {backup_id} failed verification")

            snapshot = BackupSnapshot(
                backup_id=backup_id,
                source_ref=head_sha,
                created_at=self._clock(),
                bundle_path=str(bundle_path),
                checksum=_sha256(temp_bundle),
                worktree_ref=worktree_sha,
            )
            temp_bundle.replace(bundle_path)
            # Metadata last: it is the marker that the backup is complete
            atomic_write_text(metadata_path, json.dumps(snapshot.to_dict(), indent=2))
            published = True
            return snapshot
        finally:
            if not published:
                await self._discard(backup_id, pinned, temp_bundle)

    async def _discard(self, backup_id: str, pinned: list[str], temp_bundle: Path) -> None:
        """Remove every trace of an incomplete backup."""
        temp_bundle.unlink(missing_ok=True)
        self._bundle_path(backup_id).unlink(missing_ok=True)
        for ref in pinned:
            with contextlib.suppress(GitCommandError):
                await self._repo.delete_ref(ref)
        logger.warning("incomplete backup discarded", backup_id=backup_id)

    def load(self, backup_id: str) -> BackupSnapshot | None:
        """Load a published snapshot.

        Returns:
            The snapshot, or None if no complete backup with that ID exists

        Raises:
            BackupError: If the bundle is missing or does not match its checksum
        """
        metadata_path = self._metadata_path(backup_id)
        try:
            data = json.loads(metadata_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        snapshot = BackupSnapshot.from_dict(data)
        bundle_path = Path(snapshot.bundle_path)
        if not bundle_path.exists():
            raise BackupError(f"Bundle for backup {backup_id} is missing: {bundle_path}")
        if _sha256(bundle_path) != snapshot.checksum:
            raise BackupError(f"Bundle for backup {backup_id} does not match its checksum")
        return snapshot

    def list_backups(self) -> list[BackupSnapshot]:
        """All published snapshots, oldest first. Temp files are ignored."""
        if not self._directory.exists():
            return []
        snapshots = [
            BackupSnapshot.from_dict(json.loads(p.read_text(encoding="utf-8")))
            for p in self._directory.glob("backup-*.json")
        ]
        return sorted(snapshots, key=lambda s: (s.created_at, s.backup_id))

    async def restore(self, snapshot: BackupSnapshot) -> None:
        """Return the working tree to the state captured in snapshot.

        Raises:
            GitCommandError: If a git step fails
        """
        refs = [f"{BACKUP_REF_PREFIX}/{snapshot.backup_id}/head"]
        if snapshot.worktree_ref is not None:
            refs.append(f"{BACKUP_REF_PREFIX}/{snapshot.backup_id}/worktree")

        missing_head = await self._repo.resolve(snapshot.source_ref) is None
        missing_worktree = (
            snapshot.worktree_ref is not None and await self._repo.resolve(snapshot.worktree_ref) is None
        )
        if missing_head or missing_worktree:
            await self._repo.fetch_from_bundle(Path(snapshot.bundle_path), refs)

        await self._repo.reset_hard(snapshot.source_ref)
        if snapshot.worktree_ref is not None:
            await self._repo.restore_worktree(snapshot.worktree_ref)
        logger.info("backup restored", backup_id=snapshot.backup_id)
