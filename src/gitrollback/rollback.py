"""Apply a validated rollback to the working tree and, optionally, the remote."""

from __future__ import annotations

from dataclasses import dataclass

from gitrollback.backup import BackupError, BackupManager
from gitrollback.config import PublishConfig
from gitrollback.git import GitCommandError, GitRepository, PushRejectedError
from gitrollback.logger import get_logger
from gitrollback.models import BackupSnapshot, ErrorKind, RecoveryOutcome, Trigger
from gitrollback.session import RollbackSession

__all__ = [
    "ExecutionResult",
    "RollbackExecutor",
    "is_auto_eligible",
]


def is_auto_eligible(session: RollbackSession) -> bool:
    """Whether a session may execute without waiting for approval.

    Operator actions (manual or emergency trigger), the emergency flag and
    High/Critical severity all qualify; anything else waits for approval.
    """
    if session.trigger in (Trigger.MANUAL, Trigger.EMERGENCY):
        return True
    return session.emergency or session.severity.is_urgent


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of RollbackExecutor.execute().

    mutated tells recovery whether anything needs to be undone.
    """

    success: bool
    no_op: bool = False
    mutated: bool = False
    error_kind: ErrorKind | None = None
    message: str | None = None


class RollbackExecutor:
    """Reset to the validated target and publish with a lease.

    Every completed step is appended to the session's action log right
    away, so a failure part way through leaves an accurate partial trace.
    """

    def __init__(self, repo: GitRepository, backups: BackupManager, publish: PublishConfig | None = None) -> None:
        self._repo = repo
        self._backups = backups
        self._publish = publish or PublishConfig()

    async def execute(self, session: RollbackSession, snapshot: BackupSnapshot) -> ExecutionResult:
        """Move the repository to session.target_sha.

        The caller must have committed snapshot before calling. Errors are
        recorded on the session and returned, never raised.
        """
        log = get_logger(__name__, session_id=session.session_id)
        if session.target_sha is None or session.source_sha is None:
            raise ValueError(f"Session {session.session_id} has not been validated")
        if session.backup_id != snapshot.backup_id:
            raise ValueError(f"Session {session.session_id} does not own backup {snapshot.backup_id}")

        target = session.target_sha
        mutated = False
        try:
            head = await self._repo.head()
            if head == target:
                no_op = True
                session.record_action(f"Working tree already at target {target[:12]}, reset skipped")
            elif head == session.source_sha:
                no_op = False
                await self._repo.reset_hard(target)
                mutated = True
                session.record_action(f"Reset applied: {head[:12]} -> {target[:12]}")
                log.info("reset applied", source=head, target=target)
            else:
                message = (
                    f"HEAD moved to {head[:12]} since validation (expected {session.source_sha[:12]}); "
                    "refusing to reset"
                )
                session.record_error(ErrorKind.EXECUTION_CONFLICT, message)
                return ExecutionResult(success=False, error_kind=ErrorKind.EXECUTION_CONFLICT, message=message)

            if self._publish.enabled:
                pushed = await self._publish_target(session)
                mutated = mutated or pushed
                no_op = no_op and not pushed
        except PushRejectedError as e:
            message = f"Remote branch changed since validation, publish rejected: {e}"
            session.record_error(ErrorKind.EXECUTION_CONFLICT, message)
            return ExecutionResult(
                success=False, mutated=mutated, error_kind=ErrorKind.EXECUTION_CONFLICT, message=message
            )
        except (GitCommandError, OSError, ValueError) as e:
            message = str(e) if isinstance(e, GitCommandError) else f"{type(e).__name__}: {e}"
            session.record_error(ErrorKind.GIT_OPERATION_FAILED, message)
            return ExecutionResult(
                success=False, mutated=mutated, error_kind=ErrorKind.GIT_OPERATION_FAILED, message=message
            )

        return ExecutionResult(success=True, no_op=no_op, mutated=mutated)

    async def _publish_target(self, session: RollbackSession) -> bool:
        """Push the target to the remote branch under a lease.

        Returns:
            True if the remote was updated, False if it was already at target
        """
        assert session.target_sha is not None
        branch = session.publish_branch
        if branch is None:
            session.record_warning("Publishing enabled but no branch is checked out; remote not updated")
            return False

        remote = self._publish.remote
        current = await self._repo.remote_ref_sha(remote, branch)
        if current == session.target_sha:
            session.record_action(f"Remote {remote}/{branch} already at target, push skipped")
            return False

        await self._repo.push_with_lease(remote, branch, session.target_sha, session.expected_remote_sha)
        session.record_action(f"Remote updated: {remote}/{branch} -> {session.target_sha[:12]}")
        return True

    async def recover(self, session: RollbackSession, snapshot: BackupSnapshot) -> RecoveryOutcome:
        """Restore the pre-rollback state from snapshot after a failed execution."""
        log = get_logger(__name__, session_id=session.session_id)
        try:
            await self._backups.restore(snapshot)
        except (GitCommandError, BackupError, OSError, ValueError) as e:
            session.record_error(
                ErrorKind.GIT_OPERATION_FAILED, f"Recovery from backup {snapshot.backup_id} failed: {e}"
            )
            log.error("recovery failed", backup_id=snapshot.backup_id, error=str(e))
            return RecoveryOutcome.FAILED

        session.record_action(f"Recovery: restored {snapshot.source_ref[:12]} from backup {snapshot.backup_id}")
        return RecoveryOutcome.SUCCEEDED
