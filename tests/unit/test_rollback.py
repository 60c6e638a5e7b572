"""Unit tests for RollbackExecutor with a mocked repository."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from gitrollback.backup import BackupError
from gitrollback.config import PublishConfig
from gitrollback.git import GitCommandError, PushRejectedError
from gitrollback.models import (
    BackupSnapshot,
    CommandResult,
    ErrorKind,
    FailureSignal,
    RecoveryOutcome,
    Severity,
    Trigger,
)
from gitrollback.rollback import RollbackExecutor, is_auto_eligible
from gitrollback.session import RollbackSession

HEAD = "b" * 40
TARGET = "a" * 40


@pytest.fixture
def snapshot() -> BackupSnapshot:
    return BackupSnapshot(
        backup_id="backup-test",
        source_ref=HEAD,
        created_at=datetime(2025, 1, 15, 10, 30, tzinfo=UTC),
        bundle_path="/tmp/backup-test.bundle",
        checksum="0" * 64,
    )


@pytest.fixture
def validated(make_session: Callable[..., RollbackSession], snapshot: BackupSnapshot) -> RollbackSession:
    session = make_session()
    session.source_sha = HEAD
    session.target_sha = TARGET
    session.backup_id = snapshot.backup_id
    session.publish_branch = "main"
    session.expected_remote_sha = HEAD
    return session


@pytest.fixture
def backups() -> MagicMock:
    manager = MagicMock()
    manager.restore = AsyncMock()
    return manager


def _git_error(stderr: str = "fatal: boom") -> GitCommandError:
    return GitCommandError("reset --hard", CommandResult(exit_code=128, stdout="", stderr=stderr))


class TestEligibility:
    @pytest.mark.parametrize(
        ("trigger", "severity", "emergency", "expected"),
        [
            (Trigger.MANUAL, Severity.LOW, False, True),
            (Trigger.EMERGENCY, Severity.LOW, True, True),
            (Trigger.AUTOMATED, Severity.HIGH, False, True),
            (Trigger.AUTOMATED, Severity.CRITICAL, False, True),
            (Trigger.AUTOMATED, Severity.MEDIUM, False, False),
            (Trigger.AUTOMATED, Severity.LOW, False, False),
            (Trigger.AUTOMATED, Severity.LOW, True, True),
        ],
    )
    def test_is_auto_eligible(
        self,
        make_session: Callable[..., RollbackSession],
        trigger: Trigger,
        severity: Severity,
        emergency: bool,
        expected: bool,
    ) -> None:
        signal = FailureSignal("CI", "failure") if trigger == Trigger.AUTOMATED else None
        session = make_session(trigger=trigger, severity=severity, emergency=emergency, signal=signal)
        assert is_auto_eligible(session) is expected


class TestExecute:
    @pytest.mark.asyncio
    async def test_resets_to_target_and_logs_action(
        self, mock_repo: MagicMock, backups: MagicMock, validated: RollbackSession, snapshot: BackupSnapshot
    ) -> None:
        result = await RollbackExecutor(mock_repo, backups).execute(validated, snapshot)

        assert result.success
        assert result.mutated
        assert not result.no_op
        mock_repo.reset_hard.assert_awaited_once_with(TARGET)
        assert [a.description for a in validated.actions] == [f"Reset applied: {HEAD[:12]} -> {TARGET[:12]}"]
        mock_repo.push_with_lease.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_already_at_target_is_a_no_op(
        self, mock_repo: MagicMock, backups: MagicMock, validated: RollbackSession, snapshot: BackupSnapshot
    ) -> None:
        mock_repo.head = AsyncMock(return_value=TARGET)

        result = await RollbackExecutor(mock_repo, backups).execute(validated, snapshot)

        assert result.success
        assert result.no_op
        assert not result.mutated
        mock_repo.reset_hard.assert_not_awaited()
        assert "reset skipped" in validated.actions[0].description

    @pytest.mark.asyncio
    async def test_moved_head_is_a_conflict_without_mutation(
        self, mock_repo: MagicMock, backups: MagicMock, validated: RollbackSession, snapshot: BackupSnapshot
    ) -> None:
        mock_repo.head = AsyncMock(return_value="c" * 40)

        result = await RollbackExecutor(mock_repo, backups).execute(validated, snapshot)

        assert not result.success
        assert not result.mutated
        assert result.error_kind == ErrorKind.EXECUTION_CONFLICT
        mock_repo.reset_hard.assert_not_awaited()
        assert validated.errors[0].kind == ErrorKind.EXECUTION_CONFLICT

    @pytest.mark.asyncio
    async def test_reset_failure_is_git_operation_failed(
        self, mock_repo: MagicMock, backups: MagicMock, validated: RollbackSession, snapshot: BackupSnapshot
    ) -> None:
        mock_repo.reset_hard = AsyncMock(side_effect=_git_error())

        result = await RollbackExecutor(mock_repo, backups).execute(validated, snapshot)

        assert not result.success
        assert result.error_kind == ErrorKind.GIT_OPERATION_FAILED
        assert validated.actions == []

    @pytest.mark.asyncio
    async def test_publish_uses_lease_from_validation(
        self, mock_repo: MagicMock, backups: MagicMock, validated: RollbackSession, snapshot: BackupSnapshot
    ) -> None:
        mock_repo.remote_ref_sha = AsyncMock(return_value=HEAD)
        executor = RollbackExecutor(mock_repo, backups, PublishConfig(enabled=True, remote="origin"))

        result = await executor.execute(validated, snapshot)

        assert result.success
        mock_repo.push_with_lease.assert_awaited_once_with("origin", "main", TARGET, HEAD)
        assert [a.description.split(":")[0] for a in validated.actions] == ["Reset applied", "Remote updated"]

    @pytest.mark.asyncio
    async def test_publish_skipped_when_remote_already_at_target(
        self, mock_repo: MagicMock, backups: MagicMock, validated: RollbackSession, snapshot: BackupSnapshot
    ) -> None:
        mock_repo.head = AsyncMock(return_value=TARGET)
        mock_repo.remote_ref_sha = AsyncMock(return_value=TARGET)
        executor = RollbackExecutor(mock_repo, backups, PublishConfig(enabled=True))

        result = await executor.execute(validated, snapshot)

        assert result.success
        assert result.no_op
        mock_repo.push_with_lease.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lease_rejection_is_execution_conflict_after_reset(
        self, mock_repo: MagicMock, backups: MagicMock, validated: RollbackSession, snapshot: BackupSnapshot
    ) -> None:
        mock_repo.remote_ref_sha = AsyncMock(return_value="d" * 40)
        mock_repo.push_with_lease = AsyncMock(
            side_effect=PushRejectedError(
                "push", CommandResult(exit_code=1, stdout="", stderr="! [rejected] (stale info)")
            )
        )
        executor = RollbackExecutor(mock_repo, backups, PublishConfig(enabled=True))

        result = await executor.execute(validated, snapshot)

        assert not result.success
        assert result.mutated
        assert result.error_kind == ErrorKind.EXECUTION_CONFLICT
        # The reset that did happen is still in the trace
        assert validated.actions[0].description.startswith("Reset applied")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [OSError(24, "Too many open files"), ValueError("Invalid git reference: '-main'")],
    )
    async def test_push_that_cannot_start_keeps_the_reset_for_recovery(
        self,
        mock_repo: MagicMock,
        backups: MagicMock,
        validated: RollbackSession,
        snapshot: BackupSnapshot,
        error: Exception,
    ) -> None:
        mock_repo.remote_ref_sha = AsyncMock(return_value=HEAD)
        mock_repo.push_with_lease = AsyncMock(side_effect=error)
        executor = RollbackExecutor(mock_repo, backups, PublishConfig(enabled=True))

        result = await executor.execute(validated, snapshot)

        assert not result.success
        assert result.mutated
        assert result.error_kind == ErrorKind.GIT_OPERATION_FAILED
        assert type(error).__name__ in (result.message or "")
        assert validated.errors[-1].kind == ErrorKind.GIT_OPERATION_FAILED

    @pytest.mark.asyncio
    async def test_unvalidated_session_is_a_programming_error(
        self,
        mock_repo: MagicMock,
        backups: MagicMock,
        make_session: Callable[..., RollbackSession],
        snapshot: BackupSnapshot,
    ) -> None:
        with pytest.raises(ValueError, match="not been validated"):
            await RollbackExecutor(mock_repo, backups).execute(make_session(), snapshot)


class TestRecover:
    @pytest.mark.asyncio
    async def test_successful_recovery(
        self, mock_repo: MagicMock, backups: MagicMock, validated: RollbackSession, snapshot: BackupSnapshot
    ) -> None:
        outcome = await RollbackExecutor(mock_repo, backups).recover(validated, snapshot)

        assert outcome == RecoveryOutcome.SUCCEEDED
        backups.restore.assert_awaited_once_with(snapshot)
        assert "backup-test" in validated.actions[-1].description

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [_git_error(), BackupError("bundle missing"), OSError(28, "No space left")])
    async def test_failed_recovery_is_recorded(
        self,
        mock_repo: MagicMock,
        backups: MagicMock,
        validated: RollbackSession,
        snapshot: BackupSnapshot,
        error: Exception,
    ) -> None:
        backups.restore = AsyncMock(side_effect=error)

        outcome = await RollbackExecutor(mock_repo, backups).recover(validated, snapshot)

        assert outcome == RecoveryOutcome.FAILED
        assert validated.errors[-1].kind == ErrorKind.GIT_OPERATION_FAILED
        assert "Recovery" in validated.errors[-1].message
