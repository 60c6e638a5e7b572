"""Thin async wrapper around the git command line."""

from __future__ import annotations

import tempfile
from pathlib import Path

from gitrollback.executor import Executor
from gitrollback.logger import get_logger
from gitrollback.models import CommandResult

__all__ = [
    "BACKUP_REF_PREFIX",
    "GitCommandError",
    "GitRepository",
    "PushRejectedError",
]

BACKUP_REF_PREFIX = "refs/rollback-backups"

logger = get_logger(__name__)

# Non-interactive, with untranslated messages so push rejections can be recognised
GIT_ENV = {"GIT_TERMINAL_PROMPT": "0", "LC_ALL": "C"}

# Working-tree snapshots must not depend on the user having an identity configured
SNAPSHOT_IDENTITY = {
    "GIT_AUTHOR_NAME": "git-rollback",
    "GIT_AUTHOR_EMAIL": "git-rollback@localhost",
    "GIT_COMMITTER_NAME": "git-rollback",
    "GIT_COMMITTER_EMAIL": "git-rollback@localhost",
}


class GitCommandError(Exception):
    """A git command exited unsuccessfully."""

    def __init__(self, command: str, result: CommandResult) -> None:
        self.command = command
        self.result = result
        detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.exit_code}"
        super().__init__(f"git {command} failed: {detail}")


class PushRejectedError(GitCommandError):
    """The remote refused a lease-protected push because the branch moved."""


def _check_ref(ref: str) -> str:
    """Reject refs that git would parse as options."""
    if not ref or ref.startswith("-"):
        raise ValueError(f"Invalid git reference: {ref!r}")
    return ref


class GitRepository:
    """A single working tree driven through `git -C <path>`."""

    def __init__(self, path: Path, executor: Executor) -> None:
        self._path = path
        self._executor = executor

    @property
    def path(self) -> Path:
        return self._path

    async def _run(
        self, *args: str, timeout: float | None = None, env: dict[str, str] | None = None
    ) -> CommandResult:
        logger.debug("git command", args=list(args))
        return await self._executor.run(["git", "-C", str(self._path), *args], timeout=timeout, env=env or GIT_ENV)

    async def _checked(self, *args: str, timeout: float | None = None, env: dict[str, str] | None = None) -> str:
        result = await self._run(*args, timeout=timeout, env=env)
        if not result.success:
            raise GitCommandError(" ".join(args), result)
        return result.stdout.strip()

    async def resolve(self, ref: str) -> str | None:
        """Resolve ref to a commit SHA, or None if it does not name a commit."""
        if not ref.strip() or ref.startswith("-"):
            return None
        result = await self._run("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}")
        if not result.success:
            return None
        sha = result.stdout.strip()
        return sha or None

    async def head(self) -> str:
        """Return the SHA of HEAD."""
        return await self._checked("rev-parse", "--verify", "HEAD")

    async def current_branch(self) -> str | None:
        """Return the checked-out branch name, or None when HEAD is detached."""
        result = await self._run("symbolic-ref", "--quiet", "--short", "HEAD")
        if not result.success:
            return None
        return result.stdout.strip() or None

    async def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """Whether ancestor is reachable from descendant (a commit is its own ancestor).

        Raises:
            GitCommandError: If git cannot answer (exit code other than 0 or 1)
        """
        result = await self._run("merge-base", "--is-ancestor", _check_ref(ancestor), _check_ref(descendant))
        if result.exit_code == 0:
            return True
        if result.exit_code == 1:
            return False
        raise GitCommandError(f"merge-base --is-ancestor {ancestor} {descendant}", result)

    async def reset_hard(self, sha: str) -> None:
        await self._checked("reset", "--hard", _check_ref(sha))

    async def capture_worktree(self) -> str | None:
        """Commit the working tree, untracked files included, without touching it.

        The tree is built in a throwaway index, so the real index, the stash
        list and the files on disk are left alone. Ignored files are not
        captured.

        Returns:
            SHA of a commit whose parent is HEAD, or None if nothing differs from HEAD
        """
        with tempfile.TemporaryDirectory(prefix="git-rollback-") as scratch:
            env = {**GIT_ENV, **SNAPSHOT_IDENTITY, "GIT_INDEX_FILE": str(Path(scratch) / "index")}
            await self._checked("read-tree", "HEAD", env=env)
            await self._checked("add", "--all", "--", ":/", env=env)
            tree = await self._checked("write-tree", env=env)
            if tree == await self._checked("rev-parse", "HEAD^{tree}"):
                return None
            message = "rollback backup: working tree"
            return await self._checked("commit-tree", tree, "-p", "HEAD", "-m", message, env=env)

    async def restore_worktree(self, sha: str) -> None:
        """Make the files on disk match a capture_worktree() commit.

        The index is left at HEAD, so files that were untracked come back untracked.
        """
        await self._checked("restore", f"--source={_check_ref(sha)}", "--worktree", "--", ":/")

    async def update_ref(self, ref: str, sha: str) -> None:
        await self._checked("update-ref", _check_ref(ref), _check_ref(sha))

    async def delete_ref(self, ref: str) -> None:
        await self._checked("update-ref", "-d", _check_ref(ref))

    async def create_bundle(self, bundle_path: Path, refs: list[str]) -> None:
        await self._checked("bundle", "create", str(bundle_path), *(_check_ref(r) for r in refs))

    async def verify_bundle(self, bundle_path: Path) -> bool:
        result = await self._run("bundle", "verify", str(bundle_path))
        return result.success

    async def remote_ref_sha(self, remote: str, branch: str) -> str | None:
        """Return the SHA the remote branch points at, or None if it does not exist."""
        output = await self._checked("ls-remote", "--heads", _check_ref(remote), f"refs/heads/{_check_ref(branch)}")
        for line in output.splitlines():
            sha, _, name = line.partition("\t")
            if name.strip() == f"refs/heads/{branch}":
                return sha.strip()
        return None

    async def push_with_lease(self, remote: str, branch: str, sha: str, expected_sha: str | None) -> None:
        """Force-update remote branch to sha only if it still points at expected_sha.

        An expected_sha of None requires the remote branch to be absent.

        Raises:
            PushRejectedError: If the lease check failed (remote moved)
            GitCommandError: For any other push failure
        """
        lease = f"--force-with-lease=refs/heads/{branch}:{expected_sha or ''}"
        args = ("push", "--porcelain", lease, _check_ref(remote), f"{_check_ref(sha)}:refs/heads/{branch}")
        result = await self._run(*args)
        if result.success:
            return
        output = f"{result.stdout}\n{result.stderr}"
        if "stale info" in output or "[rejected]" in output or "fetch first" in output:
            raise PushRejectedError(" ".join(args), result)
        raise GitCommandError(" ".join(args), result)

    async def fetch_from_bundle(self, bundle_path: Path, refs: list[str]) -> None:
        """Restore refs (and their objects) from a bundle file into this repository."""
        refspecs = [f"+{_check_ref(r)}:{r}" for r in refs]
        await self._checked("fetch", "--no-tags", str(bundle_path), *refspecs)
