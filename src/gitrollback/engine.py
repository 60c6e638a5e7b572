"""Pipeline driver: one rollback session from request to incident report."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta

from gitrollback.backup import BackupError, BackupManager
from gitrollback.classifier import FailureClassifier
from gitrollback.config import Configuration
from gitrollback.executor import Executor, LocalExecutor
from gitrollback.git import GitCommandError, GitRepository
from gitrollback.lock import SessionLock
from gitrollback.logger import get_logger
from gitrollback.models import (
    BackupSnapshot,
    ErrorKind,
    RecoveryOutcome,
    RollbackRequest,
    SessionStatus,
    Severity,
    Trigger,
)
from gitrollback.reporter import IncidentReporter
from gitrollback.retention import RetentionManager
from gitrollback.rollback import RollbackExecutor, is_auto_eligible
from gitrollback.session import INTERRUPTED_PATH, RollbackSession
from gitrollback.storage import PendingSessionStore, SessionJournal
from gitrollback.validator import RollbackValidator
from gitrollback.verifier import CommandHealthCheck, HealthCheck, PostRollbackVerifier

__all__ = [
    "RollbackEngine",
    "SessionInProgressError",
    "SessionNotFoundError",
]

logger = get_logger(__name__)

S = SessionStatus


class SessionInProgressError(Exception):
    """Another rollback session is active for this repository."""

    def __init__(self, message: str, session_id: str | None = None) -> None:
        self.session_id = session_id
        super().__init__(message)


class SessionNotFoundError(Exception):
    """No session awaiting approval has the given ID."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"No session awaiting approval with ID {session_id}")


class RollbackEngine:
    """Drive rollback sessions for one repository.

    Stages run strictly in sequence:
    classify -> validate -> back up -> execute (or wait for approval) ->
    verify -> report -> prune.

    At most one session is active per repository. While a run holds the
    lock, or while a session waits for approval, new requests are rejected
    with SessionInProgressError.

    From the moment a session starts executing it is journaled to disk after
    every step. A journal left by a process that died is closed, with
    recovery where needed, at the start of the next run or approval.
    """

    def __init__(
        self,
        config: Configuration,
        executor: Executor | None = None,
        health_checks: Sequence[HealthCheck] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._executor = executor or LocalExecutor(cwd=config.repo_path)
        self._clock = clock or (lambda: datetime.now(UTC))

        self._repo = GitRepository(config.repo_path, self._executor)
        self._classifier = FailureClassifier(config.classifier)
        self._validator = RollbackValidator(self._repo)
        self._backups = BackupManager(
            self._repo, config.backups.directory, config.backups.timeout, clock=self._clock
        )
        self._rollback = RollbackExecutor(self._repo, self._backups, config.publish)
        if health_checks is None:
            health_checks = [CommandHealthCheck.from_config(c, self._executor) for c in config.health_checks]
        self._verifier = PostRollbackVerifier(health_checks)
        self._reporter = IncidentReporter(
            config.reports.directory,
            write_attempts=config.reports.write_attempts,
            retry_delay=config.reports.retry_delay,
        )
        self._retention = RetentionManager(self._reporter)
        self._pending = PendingSessionStore(config.pending_directory, clock=self._clock)
        self._journal = SessionJournal(config.journal_directory, clock=self._clock)
        self._lock = SessionLock(config.lock_path)

    @property
    def reporter(self) -> IncidentReporter:
        return self._reporter

    @property
    def retention(self) -> RetentionManager:
        return self._retention

    @property
    def backups(self) -> BackupManager:
        return self._backups

    def pending_sessions(self) -> list[RollbackSession]:
        """Sessions parked in AwaitingApproval, oldest first."""
        return self._pending.list()

    async def _cleanup(self) -> None:
        await self._executor.terminate_all()
        self._lock.release()

    def _acquire(self) -> None:
        if not self._lock.acquire():
            holder = self._lock.holder()
            raise SessionInProgressError(
                f"Another rollback is running for this repository (held by {holder or 'an unknown process'})"
            )

    async def run(self, request: RollbackRequest) -> RollbackSession | None:
        """Handle one rollback request end to end.

        Returns:
            The session (terminal, or AwaitingApproval), or None when an
            automated signal does not call for a rollback

        Raises:
            SessionInProgressError: If another session is active
            IncidentWriteError: If the incident report could not be written
        """
        self._acquire()
        try:
            await self._close_interrupted()
            await self._expire_pending()
            pending = self._pending.list()
            if pending:
                raise SessionInProgressError(
                    f"Session {pending[0].session_id} is awaiting approval", session_id=pending[0].session_id
                )

            session = self._open_session(request)
            if session is None:
                return None
            try:
                return await self._drive(session)
            except Exception as e:
                await self._fail(session, e)
                raise
        finally:
            await self._cleanup()

    async def approve(self, session_id: str) -> RollbackSession:
        """Release a session from AwaitingApproval and run it to completion.

        Raises:
            SessionInProgressError: If another run holds the lock
            SessionNotFoundError: If no pending session has that ID (it may have expired)
            IncidentWriteError: If the incident report could not be written
        """
        self._acquire()
        try:
            await self._close_interrupted()
            await self._expire_pending()
            session = self._pending.load(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            log = logger.bind(session_id=session_id)

            snapshot: BackupSnapshot | None
            problem: str | None = None
            try:
                snapshot = self._backups.load(session.backup_id) if session.backup_id else None
            except BackupError as e:
                snapshot, problem = None, str(e)
            if snapshot is None:
                session.record_error(
                    ErrorKind.BACKUP_CREATION_FAILED,
                    problem or f"Backup {session.backup_id} is no longer available; refusing to execute",
                )
                session.transition(S.ABORTED)
                self._pending.remove(session_id)
                await self._close(session)
                return session

            log.info("session approved")
            session.journal = self._write_journal
            session.transition(S.EXECUTING)
            self._pending.remove(session_id)
            return await self._finish(session, snapshot)
        finally:
            await self._cleanup()

    def _open_session(self, request: RollbackRequest) -> RollbackSession | None:
        signal = request.signal
        if request.trigger == Trigger.AUTOMATED:
            if signal is None:
                raise ValueError("Automated rollback requests must carry a failure signal")
            classification = self._classifier.classify(signal)
            if not classification.rollback_required:
                logger.info(
                    "signal does not require a rollback",
                    source=signal.source_name,
                    conclusion=signal.conclusion,
                )
                return None
            severity = classification.severity
            failure_type = classification.failure_type
        else:
            severity = Severity.HIGH if request.emergency else Severity.MEDIUM
            failure_type = "none"

        emergency = request.emergency or (signal is not None and signal.emergency)
        session = RollbackSession.create(
            target_ref=request.target_ref,
            reason=request.reason,
            severity=severity,
            scope=request.scope,
            trigger=Trigger.EMERGENCY if emergency else request.trigger,
            emergency=emergency,
            signal=signal,
            failure_type=failure_type,
            clock=self._clock,
        )
        logger.info(
            "rollback session opened",
            session_id=session.session_id,
            target=session.target_ref,
            severity=session.severity.value,
            trigger=session.trigger.value,
        )
        return session

    async def _drive(self, session: RollbackSession) -> RollbackSession:
        log = logger.bind(session_id=session.session_id)

        session.transition(S.VALIDATING)
        verdict = await self._validator.validate(session.target_ref, session.source_ref)
        if verdict.valid:
            session.source_sha = verdict.head_sha
            session.target_sha = verdict.target_sha
            lease_error = await self._capture_lease(session)
            if lease_error is not None:
                verdict = verdict.invalid(lease_error, head_sha=verdict.head_sha, kind=ErrorKind.GIT_OPERATION_FAILED)

        if not verdict.valid:
            assert verdict.error_kind is not None
            session.record_error(verdict.error_kind, verdict.message)
            log.warning("rollback target rejected", reason=verdict.message)
            session.transition(S.INVALID)
            session.transition(S.ABORTED)
            return await self._close(session)

        session.transition(S.VALID)
        session.transition(S.BACKING_UP)
        backup = await self._backups.create(session.session_id)
        if backup.snapshot is None:
            session.record_error(ErrorKind.BACKUP_CREATION_FAILED, backup.error or "Backup failed")
            log.error("backup failed, nothing was changed", error=backup.error)
            session.transition(S.BACKUP_FAILED)
            session.transition(S.ABORTED)
            return await self._close(session)

        snapshot = backup.snapshot
        session.backup_id = snapshot.backup_id
        session.backup_created_at = snapshot.created_at
        session.record_action(f"Backup created: {snapshot.backup_id}")
        session.transition(S.BACKED_UP)

        if not is_auto_eligible(session):
            session.transition(S.AWAITING_APPROVAL)
            try:
                self._pending.save(session)
            except OSError as e:
                session.record_error(
                    ErrorKind.BACKUP_CREATION_FAILED, f"Session could not be parked for approval: {e}"
                )
                log.error("pending session could not be saved", error=str(e))
                session.transition(S.ABORTED)
                return await self._close(session)
            log.info("session awaiting approval", severity=session.severity.value)
            return session

        session.journal = self._write_journal
        session.transition(S.EXECUTING)
        return await self._finish(session, snapshot)

    async def _capture_lease(self, session: RollbackSession) -> str | None:
        """Record the remote branch state that a later publish must still find.

        Returns:
            An error message if the remote could not be queried
        """
        publish = self._config.publish
        if not publish.enabled:
            return None
        try:
            branch = publish.branch or await self._repo.current_branch()
            session.publish_branch = branch
            if branch is not None:
                session.expected_remote_sha = await self._repo.remote_ref_sha(publish.remote, branch)
        except GitCommandError as e:
            return str(e)
        except (OSError, ValueError) as e:
            return f"{type(e).__name__}: {e}"
        return None

    async def _finish(self, session: RollbackSession, snapshot: BackupSnapshot) -> RollbackSession:
        """Run execution through reporting without yielding to cancellation.

        Once the repository may be mutated the only way out is the recorded
        recovery path; a cancellation waits for the session to close.
        """
        task = asyncio.create_task(self._execute(session, snapshot))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise
            logger.warning("cancellation deferred until the session is closed", session_id=session.session_id)
            await asyncio.wait({task})
            raise

    async def _execute(self, session: RollbackSession, snapshot: BackupSnapshot) -> RollbackSession:
        try:
            await self._apply(session, snapshot)
        except Exception as e:
            await self._fail(session, e, snapshot)
            raise
        return await self._close(session)

    async def _apply(self, session: RollbackSession, snapshot: BackupSnapshot) -> None:
        log = logger.bind(session_id=session.session_id)

        result = await self._rollback.execute(session, snapshot)
        if not result.success:
            log.error("rollback execution failed", kind=str(result.error_kind), error=result.message)
            session.transition(S.EXECUTION_FAILED)
            session.transition(S.RECOVERING)
            if result.mutated:
                session.recovery = await self._rollback.recover(session, snapshot)
            else:
                session.recovery = RecoveryOutcome.NOT_REQUIRED
            session.transition(S.ABORTED)
            return

        if result.no_op:
            log.info("repository already at target", target=session.target_sha)
        session.transition(S.EXECUTED)
        session.transition(S.VERIFYING)
        verification = await self._verifier.verify(session)
        if verification.verified:
            session.transition(S.VERIFIED)
            session.transition(S.REPORTED_RESOLVED)
        else:
            session.transition(S.VERIFICATION_FAILED)
            session.transition(S.REPORTED_DEGRADED)

    def _write_journal(self, session: RollbackSession) -> None:
        try:
            self._journal.save(session)
        except OSError as e:
            logger.warning("session journal not updated", session_id=session.session_id, error=str(e))

    async def _fail(
        self, session: RollbackSession, error: Exception, snapshot: BackupSnapshot | None = None
    ) -> None:
        """Close a session interrupted by an unexpected error, then report it.

        The caller re-raises error afterwards.
        """
        if session.status.is_terminal:
            return
        logger.exception("rollback session interrupted", session_id=session.session_id, status=session.status.value)
        kind = ErrorKind.BACKUP_CREATION_FAILED if session.status == S.BACKING_UP else ErrorKind.GIT_OPERATION_FAILED
        session.record_error(kind, f"Unexpected {type(error).__name__} while {session.status.value}: {error}")
        await self._settle(session, snapshot)
        self._pending.remove(session.session_id)
        await self._close(session)

    async def _settle(self, session: RollbackSession, snapshot: BackupSnapshot | None) -> None:
        """Walk an interrupted session to a terminal state.

        Passing through Recovering restores the backup when the repository
        no longer matches the validated source.
        """
        while not session.status.is_terminal:
            next_status = INTERRUPTED_PATH[session.status]
            session.transition(next_status)
            if next_status == S.RECOVERING and session.recovery is None:
                session.recovery = await self._recover_interrupted(session, snapshot)

    async def _recover_interrupted(
        self, session: RollbackSession, snapshot: BackupSnapshot | None
    ) -> RecoveryOutcome:
        try:
            head = await self._repo.head()
        except (GitCommandError, OSError) as e:
            session.record_warning(f"Could not read HEAD before recovery: {e}")
            head = None
        if head is not None and head == session.source_sha:
            return RecoveryOutcome.NOT_REQUIRED

        if snapshot is None and session.backup_id is not None:
            try:
                snapshot = self._backups.load(session.backup_id)
            except BackupError as e:
                session.record_error(ErrorKind.GIT_OPERATION_FAILED, f"Recovery impossible: {e}")
                return RecoveryOutcome.FAILED
        if snapshot is None:
            session.record_error(
                ErrorKind.GIT_OPERATION_FAILED, f"Recovery impossible: backup {session.backup_id} is not available"
            )
            return RecoveryOutcome.FAILED
        return await self._rollback.recover(session, snapshot)

    async def _close_interrupted(self) -> None:
        """Close sessions whose process died before they were reported."""
        for session in self._journal.list():
            logger.warning(
                "closing session left by an interrupted run",
                session_id=session.session_id,
                status=session.status.value,
            )
            session.journal = self._write_journal
            if not session.status.is_terminal:
                session.record_warning(
                    f"The rollback process stopped while the session was {session.status.value}; "
                    "it was closed by the next run"
                )
                await self._settle(session, None)
            self._pending.remove(session.session_id)
            await self._close(session)

    async def _close(self, session: RollbackSession) -> RollbackSession:
        """Write the incident report for a terminal session and apply retention."""
        pair = await self._reporter.write(session)
        session.journal = None
        self._journal.remove(session.session_id)
        logger.info(
            "rollback session closed",
            session_id=session.session_id,
            status=session.status.value,
            report=str(pair.markdown_path),
        )
        try:
            self._retention.prune(self._config.reports.keep)
        except OSError as e:
            logger.warning("incident report retention failed", error=str(e))
        return session

    async def _expire_pending(self) -> list[RollbackSession]:
        """Abort sessions that waited for approval longer than allowed."""
        expires_after = self._config.approval.expires_after
        if expires_after is None:
            return []
        now = self._clock()
        expired: list[RollbackSession] = []
        for session in self._pending.list():
            parked_at = session.transitions[-1].timestamp if session.transitions else session.created_at
            if now - parked_at < timedelta(seconds=expires_after):
                continue
            session.record_warning(f"Approval not granted within {timedelta(seconds=expires_after)}; session expired")
            session.transition(S.ABORTED)
            await self._close(session)
            self._pending.remove(session.session_id)
            logger.warning("pending session expired", session_id=session.session_id)
            expired.append(session)
        return expired
