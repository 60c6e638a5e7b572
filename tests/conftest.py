"""Shared test fixtures for git-rollback tests."""

from __future__ import annotations

import asyncio
import logging
import shutil
import subprocess
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import freezegun
import freezegun.config
import pytest

from gitrollback.config import Configuration
from gitrollback.models import CommandResult, Scope, Severity, Trigger
from gitrollback.session import RollbackSession

# freezegun skips modules whose names start with an ignore-list entry; its
# default "gi" entry (PyGObject) would also match "gitrollback".
freezegun.configure(
    default_ignore_list=[
        "gi." if name == "gi" else name for name in freezegun.config.DEFAULT_IGNORE_LIST
    ]
)


class FakeCheck:
    """Health check with a scripted outcome."""

    def __init__(self, name: str, outcome: bool | Exception = True, delay: float = 0.0, timeout: float = 1.0) -> None:
        self.name = name
        self.timeout = timeout
        self._outcome = outcome
        self._delay = delay
        self.calls = 0

    async def is_healthy(self) -> bool:
        self.calls += 1
        if self._delay:
            await asyncio.sleep(self._delay)
        if isinstance(self._outcome, Exception):
            raise self._outcome
        return self._outcome


@pytest.fixture(scope="session", autouse=True)
def configure_test_logging() -> None:
    """Show git-rollback logs in live logging while keeping other libraries quiet."""
    logging.getLogger().setLevel(logging.WARNING)
    logging.getLogger("gitrollback").setLevel(logging.DEBUG)


@pytest.fixture
def mock_executor() -> MagicMock:
    """Create a mock executor whose commands all succeed with empty output."""
    executor = MagicMock()
    executor.run = AsyncMock(return_value=CommandResult(exit_code=0, stdout="", stderr=""))
    executor.run_shell = AsyncMock(return_value=CommandResult(exit_code=0, stdout="", stderr=""))
    executor.terminate_all = AsyncMock()
    return executor


@pytest.fixture
def success_result() -> CommandResult:
    return CommandResult(exit_code=0, stdout="success", stderr="")


@pytest.fixture
def failed_result() -> CommandResult:
    return CommandResult(exit_code=1, stdout="", stderr="error message")


@pytest.fixture
def mock_repo() -> MagicMock:
    """Create a mock GitRepository with async methods and a linear two-commit history."""
    repo = MagicMock()
    repo.resolve = AsyncMock(side_effect=lambda ref: {"HEAD": "b" * 40, "HEAD~1": "a" * 40}.get(ref))
    repo.head = AsyncMock(return_value="b" * 40)
    repo.current_branch = AsyncMock(return_value="main")
    repo.is_ancestor = AsyncMock(return_value=True)
    repo.reset_hard = AsyncMock()
    repo.capture_worktree = AsyncMock(return_value=None)
    repo.restore_worktree = AsyncMock()
    repo.update_ref = AsyncMock()
    repo.delete_ref = AsyncMock()
    repo.create_bundle = AsyncMock()
    repo.verify_bundle = AsyncMock(return_value=True)
    repo.remote_ref_sha = AsyncMock(return_value=None)
    repo.push_with_lease = AsyncMock()
    repo.fetch_from_bundle = AsyncMock()
    return repo


@pytest.fixture
def make_session() -> Callable[..., RollbackSession]:
    """Factory for sessions in DETECTED state with sensible defaults.

    Usage:
        session = make_session(severity=Severity.HIGH, trigger=Trigger.AUTOMATED)
    """

    def create(**overrides: Any) -> RollbackSession:
        values: dict[str, Any] = {
            "target_ref": "HEAD~1",
            "reason": "Broken release",
            "severity": Severity.MEDIUM,
            "scope": Scope.APPLICATION,
            "trigger": Trigger.MANUAL,
        }
        values.update(overrides)
        return RollbackSession.create(**values)

    return create


@pytest.fixture
def frozen_datetime() -> datetime:
    """The instant used with freeze_time in timestamp-sensitive tests."""
    return datetime(2025, 1, 15, 10, 30, tzinfo=UTC)


# Real git repositories

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def git(repo: Path, *args: str) -> str:
    """Run git synchronously for test setup and assertions."""
    result = subprocess.run(
        ["git", "-C", str(repo), *args],
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


def commit_file(repo: Path, name: str, content: str, message: str) -> str:
    """Write a file, commit it, and return the new commit SHA."""
    (repo / name).write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-q", "-m", message)
    return git(repo, "rev-parse", "HEAD")


@pytest.fixture
def isolated_git_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep user and system git configuration out of the tests."""
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", "/dev/null")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test Author")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "author@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test Committer")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "committer@example.com")


@pytest.fixture
def git_repo(tmp_path: Path, isolated_git_env: None) -> Path:
    """A repository on branch main with three commits (c1 <- c2 <- c3)."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q", "-b", "main")
    git(repo, "config", "commit.gpgsign", "false")
    commit_file(repo, "app.txt", "version 1\n", "c1")
    commit_file(repo, "app.txt", "version 2\n", "c2")
    commit_file(repo, "app.txt", "version 3\n", "c3")
    return repo


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., Configuration]:
    """Factory for configurations rooted at a repository.

    Report writes are not delayed between retries.
    """

    def create(repo: Path, data: dict[str, Any] | None = None) -> Configuration:
        merged: dict[str, Any] = {"reports": {"retry_delay": 0}}
        for key, value in (data or {}).items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
        return Configuration.from_dict(merged, repo)

    return create
