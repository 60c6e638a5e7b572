"""Core types and dataclasses for git-rollback."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

__all__ = [
    "ActionRecord",
    "BackupSnapshot",
    "CheckOutcome",
    "Classification",
    "CommandResult",
    "ConfigError",
    "ErrorKind",
    "FailureSignal",
    "HealthCheckResult",
    "RecoveryOutcome",
    "RollbackRequest",
    "Scope",
    "SessionStatus",
    "Severity",
    "StageError",
    "StatusChange",
    "Trigger",
]


class Severity(StrEnum):
    """Severity tier of an incident, ordered from least to most severe."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def escalate(self) -> Severity:
        """Return the next tier up, saturating at CRITICAL."""
        return _SEVERITY_ORDER[min(self.rank + 1, len(_SEVERITY_ORDER) - 1)]

    @property
    def is_urgent(self) -> bool:
        return self.rank >= Severity.HIGH.rank


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class Scope(StrEnum):
    """Part of the system a rollback is meant to restore."""

    APPLICATION = "application"
    DATABASE = "database"
    INFRASTRUCTURE = "infrastructure"
    FULL = "full"


class Trigger(StrEnum):
    """How a rollback session was started."""

    AUTOMATED = "automated"
    MANUAL = "manual"
    EMERGENCY = "emergency"


class SessionStatus(StrEnum):
    """Position of a rollback session in its state machine."""

    DETECTED = "Detected"
    VALIDATING = "Validating"
    INVALID = "Invalid"
    VALID = "Valid"
    BACKING_UP = "BackingUp"
    BACKUP_FAILED = "BackupFailed"
    BACKED_UP = "BackedUp"
    AWAITING_APPROVAL = "AwaitingApproval"
    EXECUTING = "Executing"
    EXECUTION_FAILED = "ExecutionFailed"
    RECOVERING = "Recovering"
    EXECUTED = "Executed"
    VERIFYING = "Verifying"
    VERIFICATION_FAILED = "VerificationFailed"
    VERIFIED = "Verified"
    ABORTED = "Aborted"
    REPORTED_DEGRADED = "ReportedDegraded"
    REPORTED_RESOLVED = "ReportedResolved"

    @property
    def is_terminal(self) -> bool:
        return self in (
            SessionStatus.ABORTED,
            SessionStatus.REPORTED_DEGRADED,
            SessionStatus.REPORTED_RESOLVED,
        )


class ErrorKind(StrEnum):
    """Expected failure outcomes of the pipeline stages."""

    INVALID_ROLLBACK_TARGET = "InvalidRollbackTarget"
    BACKUP_CREATION_FAILED = "BackupCreationFailed"
    GIT_OPERATION_FAILED = "GitOperationFailed"
    EXECUTION_CONFLICT = "ExecutionConflict"
    HEALTH_CHECK_TIMEOUT = "HealthCheckTimeout"
    HEALTH_CHECK_FAILED = "HealthCheckFailed"
    INCIDENT_WRITE_FAILED = "IncidentWriteFailed"


class CheckOutcome(StrEnum):
    """Result of a single post-rollback health check."""

    PASSED = "passed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class RecoveryOutcome(StrEnum):
    """What happened when execution failed and the backup was consulted."""

    NOT_REQUIRED = "not_required"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class CommandResult:
    """Result of executing a command via LocalExecutor."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class ConfigError:
    """A single problem found while loading configuration."""

    path: str  # Dotted path to invalid value
    message: str


@dataclass(frozen=True)
class FailureSignal:
    """Raw failure signal from CI or monitoring. Input only, never persisted alone."""

    source_name: str  # e.g. "Verification Pipeline"
    conclusion: str  # e.g. "failure", "success"
    trigger_kind: str = "workflow_run"
    emergency: bool = False

    @property
    def is_failure(self) -> bool:
        return self.conclusion.strip().lower() == "failure"

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceName": self.source_name,
            "conclusion": self.conclusion,
            "triggerKind": self.trigger_kind,
            "emergency": self.emergency,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FailureSignal:
        return cls(
            source_name=data["sourceName"],
            conclusion=data["conclusion"],
            trigger_kind=data.get("triggerKind", "workflow_run"),
            emergency=bool(data.get("emergency", False)),
        )


@dataclass(frozen=True)
class Classification:
    """Output of FailureClassifier."""

    severity: Severity
    rollback_required: bool
    failure_type: str  # "ci_failure" or "none"


@dataclass(frozen=True)
class RollbackRequest:
    """A request to roll the repository back to target_ref.

    Automated requests carry the FailureSignal that caused them.
    """

    target_ref: str
    reason: str
    scope: Scope = Scope.APPLICATION
    emergency: bool = False
    trigger: Trigger = Trigger.MANUAL
    signal: FailureSignal | None = None


@dataclass(frozen=True)
class ActionRecord:
    """One side effect performed on behalf of a session."""

    timestamp: datetime
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "description": self.description}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActionRecord:
        return cls(timestamp=datetime.fromisoformat(data["timestamp"]), description=data["description"])


@dataclass(frozen=True)
class StatusChange:
    """A state machine transition, recorded for the incident timeline."""

    timestamp: datetime
    status: SessionStatus

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "status": self.status.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StatusChange:
        return cls(timestamp=datetime.fromisoformat(data["timestamp"]), status=SessionStatus(data["status"]))


@dataclass(frozen=True)
class StageError:
    """An expected failure recorded against a session."""

    kind: ErrorKind
    stage: SessionStatus  # Status the session was in when the error occurred
    message: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "stage": self.stage.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StageError:
        return cls(
            kind=ErrorKind(data["kind"]),
            stage=SessionStatus(data["stage"]),
            message=data["message"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


@dataclass(frozen=True)
class HealthCheckResult:
    """Outcome of one named health check."""

    name: str
    outcome: CheckOutcome
    duration: float  # Seconds
    timeout: float  # Seconds
    detail: str | None = None

    @property
    def passed(self) -> bool:
        return self.outcome == CheckOutcome.PASSED

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "outcome": self.outcome.value,
            "duration": round(self.duration, 3),
            "timeout": self.timeout,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HealthCheckResult:
        return cls(
            name=data["name"],
            outcome=CheckOutcome(data["outcome"]),
            duration=float(data["duration"]),
            timeout=float(data["timeout"]),
            detail=data.get("detail"),
        )


@dataclass(frozen=True)
class BackupSnapshot:
    """Immutable, restorable capture of repository state before a rollback.

    The metadata file next to the bundle is the publish marker: a snapshot
    exists only once its metadata has been renamed into place.
    """

    backup_id: str  # e.g. "backup-20251018T101530123456Z-a1b2c3d4-0123456789ab"
    source_ref: str  # Commit SHA of HEAD at capture time
    created_at: datetime
    bundle_path: str
    checksum: str  # sha256 of the bundle file
    worktree_ref: str | None = None  # Commit capturing uncommitted and untracked files, if any

    def to_dict(self) -> dict[str, Any]:
        return {
            "backupId": self.backup_id,
            "sourceRef": self.source_ref,
            "createdAt": self.created_at.isoformat(),
            "bundlePath": self.bundle_path,
            "checksum": self.checksum,
            "worktreeRef": self.worktree_ref,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupSnapshot:
        return cls(
            backup_id=data["backupId"],
            source_ref=data["sourceRef"],
            created_at=datetime.fromisoformat(data["createdAt"]),
            bundle_path=data["bundlePath"],
            checksum=data["checksum"],
            worktree_ref=data.get("worktreeRef"),
        )
