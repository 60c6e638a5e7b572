"""Rollback session state and its state machine."""

from __future__ import annotations

import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from gitrollback.models import (
    ActionRecord,
    ErrorKind,
    FailureSignal,
    HealthCheckResult,
    RecoveryOutcome,
    Scope,
    SessionStatus,
    Severity,
    StageError,
    StatusChange,
    Trigger,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "INTERRUPTED_PATH",
    "InvalidTransitionError",
    "RollbackSession",
    "generate_session_id",
]

S = SessionStatus

ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    S.DETECTED: frozenset({S.VALIDATING}),
    S.VALIDATING: frozenset({S.INVALID, S.VALID}),
    S.INVALID: frozenset({S.ABORTED}),
    S.VALID: frozenset({S.BACKING_UP}),
    S.BACKING_UP: frozenset({S.BACKUP_FAILED, S.BACKED_UP}),
    S.BACKUP_FAILED: frozenset({S.ABORTED}),
    S.BACKED_UP: frozenset({S.AWAITING_APPROVAL, S.EXECUTING}),
    # ABORTED here when approval expires or the session cannot be parked
    S.AWAITING_APPROVAL: frozenset({S.EXECUTING, S.ABORTED}),
    S.EXECUTING: frozenset({S.EXECUTION_FAILED, S.EXECUTED}),
    S.EXECUTION_FAILED: frozenset({S.RECOVERING}),
    S.RECOVERING: frozenset({S.ABORTED}),
    S.EXECUTED: frozenset({S.VERIFYING}),
    S.VERIFYING: frozenset({S.VERIFICATION_FAILED, S.VERIFIED}),
    S.VERIFICATION_FAILED: frozenset({S.REPORTED_DEGRADED}),
    S.VERIFIED: frozenset({S.REPORTED_RESOLVED}),
    S.ABORTED: frozenset(),
    S.REPORTED_DEGRADED: frozenset(),
    S.REPORTED_RESOLVED: frozenset(),
}

# Next state when an interrupted session is driven to a terminal state
INTERRUPTED_PATH: dict[SessionStatus, SessionStatus] = {
    S.DETECTED: S.VALIDATING,
    S.VALIDATING: S.INVALID,
    S.INVALID: S.ABORTED,
    S.VALID: S.BACKING_UP,
    S.BACKING_UP: S.BACKUP_FAILED,
    S.BACKUP_FAILED: S.ABORTED,
    S.BACKED_UP: S.AWAITING_APPROVAL,
    S.AWAITING_APPROVAL: S.ABORTED,
    S.EXECUTING: S.EXECUTION_FAILED,
    S.EXECUTION_FAILED: S.RECOVERING,
    S.RECOVERING: S.ABORTED,
    S.EXECUTED: S.VERIFYING,
    S.VERIFYING: S.VERIFICATION_FAILED,
    S.VERIFICATION_FAILED: S.REPORTED_DEGRADED,
    S.VERIFIED: S.REPORTED_RESOLVED,
}


class InvalidTransitionError(Exception):
    """Raised when code attempts a state change the state machine forbids."""

    def __init__(self, session_id: str, current: SessionStatus, requested: SessionStatus) -> None:
        self.session_id = session_id
        self.current = current
        self.requested = requested
        super().__init__(f"Session {session_id}: illegal transition {current.value} -> {requested.value}")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def generate_session_id(now: datetime | None = None) -> str:
    """Generate a unique, lexicographically time-ordered session ID.

    Returns:
        ID like "20251018T101530123456Z-a1b2c3d4"
    """
    now = now or datetime.now(UTC)
    return f"{now.astimezone(UTC).strftime('%Y%m%dT%H%M%S%fZ')}-{secrets.token_hex(4)}"


@dataclass
class RollbackSession:
    """A single rollback incident, from detection to its report.

    Only the pipeline stage currently owning the session mutates it. The
    action, error and warning logs are append-only.

    clock stamps every record. When journal is set it is called after each
    change, so the on-disk copy never lags behind a completed step.
    """

    session_id: str
    created_at: datetime
    source_ref: str
    target_ref: str
    reason: str
    severity: Severity
    scope: Scope
    trigger: Trigger
    emergency: bool = False
    status: SessionStatus = SessionStatus.DETECTED
    signal: FailureSignal | None = None
    failure_type: str = "none"
    source_sha: str | None = None
    target_sha: str | None = None
    publish_branch: str | None = None
    expected_remote_sha: str | None = None
    backup_id: str | None = None
    backup_created_at: datetime | None = None
    effective_severity: Severity | None = None
    recovery: RecoveryOutcome | None = None
    ended_at: datetime | None = None
    actions: list[ActionRecord] = field(default_factory=list)
    errors: list[StageError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    health_checks: list[HealthCheckResult] = field(default_factory=list)
    transitions: list[StatusChange] = field(default_factory=list)
    clock: Callable[[], datetime] = field(default=_utcnow, compare=False, repr=False)
    journal: Callable[[RollbackSession], None] | None = field(default=None, compare=False, repr=False)

    @classmethod
    def create(
        cls,
        *,
        target_ref: str,
        reason: str,
        severity: Severity,
        scope: Scope,
        trigger: Trigger,
        emergency: bool = False,
        signal: FailureSignal | None = None,
        failure_type: str = "none",
        source_ref: str = "HEAD",
        clock: Callable[[], datetime] | None = None,
    ) -> RollbackSession:
        """Create a new session in DETECTED state with a fresh ID."""
        clock = clock or _utcnow
        now = clock()
        return cls(
            session_id=generate_session_id(now),
            created_at=now,
            source_ref=source_ref,
            target_ref=target_ref,
            reason=reason,
            severity=severity,
            scope=scope,
            trigger=trigger,
            emergency=emergency,
            signal=signal,
            failure_type=failure_type,
            transitions=[StatusChange(timestamp=now, status=SessionStatus.DETECTED)],
            clock=clock,
        )

    @property
    def reported_severity(self) -> Severity:
        """Severity used for reporting, including any post-verification escalation."""
        return self.effective_severity or self.severity

    def is_terminal_state(self) -> bool:
        return self.status.is_terminal

    def transition(self, new_status: SessionStatus) -> None:
        """Move to new_status.

        Raises:
            InvalidTransitionError: If the state machine does not allow the move
        """
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.session_id, self.status, new_status)
        now = self.clock()
        self.status = new_status
        self.transitions.append(StatusChange(timestamp=now, status=new_status))
        if new_status.is_terminal:
            self.ended_at = now
        self._changed()

    def record_action(self, description: str) -> ActionRecord:
        """Append a completed side effect to the action log."""
        action = ActionRecord(timestamp=self.clock(), description=description)
        self.actions.append(action)
        self._changed()
        return action

    def record_error(self, kind: ErrorKind, message: str) -> StageError:
        error = StageError(kind=kind, stage=self.status, message=message, timestamp=self.clock())
        self.errors.append(error)
        self._changed()
        return error

    def record_warning(self, message: str) -> None:
        self.warnings.append(message)
        self._changed()

    def _changed(self) -> None:
        if self.journal is not None:
            self.journal(self)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the pending store and the execution journal."""
        return {
            "sessionId": self.session_id,
            "createdAt": self.created_at.isoformat(),
            "sourceRef": self.source_ref,
            "targetRef": self.target_ref,
            "reason": self.reason,
            "severity": self.severity.value,
            "scope": self.scope.value,
            "trigger": self.trigger.value,
            "emergency": self.emergency,
            "status": self.status.value,
            "signal": self.signal.to_dict() if self.signal else None,
            "failureType": self.failure_type,
            "sourceSha": self.source_sha,
            "targetSha": self.target_sha,
            "publishBranch": self.publish_branch,
            "expectedRemoteSha": self.expected_remote_sha,
            "backupId": self.backup_id,
            "backupCreatedAt": self.backup_created_at.isoformat() if self.backup_created_at else None,
            "effectiveSeverity": self.effective_severity.value if self.effective_severity else None,
            "recovery": self.recovery.value if self.recovery else None,
            "endedAt": self.ended_at.isoformat() if self.ended_at else None,
            "actions": [a.to_dict() for a in self.actions],
            "errors": [e.to_dict() for e in self.errors],
            "warnings": list(self.warnings),
            "healthChecks": [h.to_dict() for h in self.health_checks],
            "transitions": [t.to_dict() for t in self.transitions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], clock: Callable[[], datetime] | None = None) -> RollbackSession:
        def _dt(value: str | None) -> datetime | None:
            return datetime.fromisoformat(value) if value else None

        return cls(
            session_id=data["sessionId"],
            created_at=datetime.fromisoformat(data["createdAt"]),
            source_ref=data["sourceRef"],
            target_ref=data["targetRef"],
            reason=data["reason"],
            severity=Severity(data["severity"]),
            scope=Scope(data["scope"]),
            trigger=Trigger(data["trigger"]),
            emergency=bool(data.get("emergency", False)),
            status=SessionStatus(data["status"]),
            signal=FailureSignal.from_dict(data["signal"]) if data.get("signal") else None,
            failure_type=data.get("failureType", "none"),
            source_sha=data.get("sourceSha"),
            target_sha=data.get("targetSha"),
            publish_branch=data.get("publishBranch"),
            expected_remote_sha=data.get("expectedRemoteSha"),
            backup_id=data.get("backupId"),
            backup_created_at=_dt(data.get("backupCreatedAt")),
            effective_severity=Severity(data["effectiveSeverity"]) if data.get("effectiveSeverity") else None,
            recovery=RecoveryOutcome(data["recovery"]) if data.get("recovery") else None,
            ended_at=_dt(data.get("endedAt")),
            actions=[ActionRecord.from_dict(a) for a in data.get("actions", [])],
            errors=[StageError.from_dict(e) for e in data.get("errors", [])],
            warnings=list(data.get("warnings", [])),
            health_checks=[HealthCheckResult.from_dict(h) for h in data.get("healthChecks", [])],
            transitions=[StatusChange.from_dict(t) for t in data.get("transitions", [])],
            clock=clock or _utcnow,
        )
