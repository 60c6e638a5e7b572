"""Incident reports: a Markdown document and a JSON twin per session.

Both artifacts are rendered from one IncidentContent built from the
session, so the JSON record carries every fact the Markdown shows. Apart
from the generation time in the footer, rendering depends only on the
session and is byte-for-byte reproducible.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from gitrollback.logger import get_logger
from gitrollback.models import (
    HealthCheckResult,
    RecoveryOutcome,
    Scope,
    SessionStatus,
    Severity,
    Trigger,
)
from gitrollback.session import RollbackSession
from gitrollback.storage import atomic_write_text

__all__ = [
    "REPORT_PREFIX",
    "ChecklistItem",
    "IncidentContent",
    "IncidentReporter",
    "IncidentWriteError",
    "ReportPair",
    "TimelineEntry",
    "build_content",
    "build_record",
    "render_markdown",
]

REPORT_PREFIX = "rollback-incident-"

logger = get_logger(__name__)

AFFECTED_COMPONENTS: dict[Scope, tuple[str, ...]] = {
    Scope.APPLICATION: ("Core Service", "CLI Interface"),
    Scope.DATABASE: ("Database Layer", "Data Storage"),
    Scope.INFRASTRUCTURE: ("Infrastructure", "Deployment Pipeline"),
    Scope.FULL: ("Core Service", "CLI Interface", "Database Layer", "Infrastructure"),
}

IMPACT_LEVELS: dict[Severity, str] = {
    Severity.LOW: "Minor: no user-facing disruption expected",
    Severity.MEDIUM: "Moderate: degraded functionality in the affected components",
    Severity.HIGH: "Major: significant disruption of the affected components",
    Severity.CRITICAL: "Severe: service-wide disruption",
}

STATUS_LABELS: dict[SessionStatus, str] = {
    SessionStatus.REPORTED_RESOLVED: "Resolved",
    SessionStatus.REPORTED_DEGRADED: "Degraded",
    SessionStatus.ABORTED: "Aborted",
}


class IncidentWriteError(Exception):
    """The report pair could not be written after all attempts."""

    def __init__(self, session_id: str, attempts: int, cause: BaseException) -> None:
        self.session_id = session_id
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"Incident report for session {session_id} not written after {attempts} attempt(s): {cause}")


@dataclass(frozen=True)
class ReportPair:
    """The two artifacts of one incident report."""

    session_id: str
    markdown_path: Path
    json_path: Path

    @property
    def complete(self) -> bool:
        return self.markdown_path.exists() and self.json_path.exists()


@dataclass(frozen=True)
class TimelineEntry:
    timestamp: datetime
    description: str


@dataclass(frozen=True)
class ChecklistItem:
    text: str
    done: bool = False


@dataclass(frozen=True)
class IncidentContent:
    """Every fact an incident report states, derived from a terminal session."""

    session_id: str
    incident_type: str
    severity: Severity
    original_severity: Severity
    status: SessionStatus
    status_label: str
    trigger: Trigger
    scope: Scope
    emergency: bool
    detected_at: datetime
    ended_at: datetime | None
    failure_type: str
    signal_source: str | None
    signal_conclusion: str | None
    source_ref: str
    source_sha: str | None
    target_ref: str
    target_sha: str | None
    reason: str
    backup_id: str | None
    backup_created_at: datetime | None
    publish_branch: str | None
    impact_level: str
    users_affected: str
    impact_checklist: tuple[ChecklistItem, ...]
    affected_components: tuple[str, ...]
    timeline: tuple[TimelineEntry, ...]
    verification_status: str
    health_checks: tuple[HealthCheckResult, ...]
    recovery: RecoveryOutcome | None
    root_cause: str
    contributing_factors: tuple[str, ...]
    resolution_actions: tuple[ChecklistItem, ...]
    immediate_measures: tuple[ChecklistItem, ...]
    long_term_measures: tuple[ChecklistItem, ...]
    follow_up_actions: tuple[ChecklistItem, ...]
    stakeholder_communication: tuple[ChecklistItem, ...]
    lessons_learned: tuple[str, ...]
    actions: tuple[TimelineEntry, ...]
    errors: tuple[str, ...]
    warnings: tuple[str, ...]
    reports_directory: str


def format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%d %H:%M:%S UTC")


def _format_duration(seconds: float) -> str:
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def incident_type(session: RollbackSession) -> str:
    if session.trigger == Trigger.MANUAL and not session.emergency:
        return "Manual Rollback"
    if session.trigger == Trigger.EMERGENCY or session.emergency or session.severity.is_urgent:
        return "Emergency Rollback"
    return "Automated Rollback"


def _reached(session: RollbackSession, status: SessionStatus) -> bool:
    return any(change.status == status for change in session.transitions)


def _verification_status(session: RollbackSession) -> str:
    if not _reached(session, SessionStatus.VERIFYING):
        return "Not run"
    if not session.health_checks:
        return "No checks configured"
    if all(check.passed for check in session.health_checks):
        return "Passed"
    return "Failed"


def _timeline(session: RollbackSession) -> tuple[TimelineEntry, ...]:
    entries = [TimelineEntry(c.timestamp, f"Status changed to {c.status.value}") for c in session.transitions]
    entries += [TimelineEntry(a.timestamp, a.description) for a in session.actions]
    entries += [TimelineEntry(e.timestamp, f"Error ({e.kind.value}): {e.message}") for e in session.errors]
    # sorted() is stable, so ties keep transitions before actions before errors
    return tuple(sorted(entries, key=lambda entry: entry.timestamp))


def _root_cause(session: RollbackSession) -> tuple[str, tuple[str, ...]]:
    if session.failure_type == "ci_failure" and session.signal is not None:
        summary = (
            f"CI pipeline failure detected in {session.signal.source_name}. "
            "The failure triggered automated rollback procedures."
        )
    else:
        summary = f"Rollback requested by operator: {session.reason}"

    factors: list[str] = []
    if session.signal is not None:
        factors.append(f"Workflow failure: {session.signal.source_name} ({session.signal.conclusion})")
    if session.emergency or session.severity.is_urgent:
        factors.append(f"{session.severity.value} severity failure triggering emergency rollback")
    else:
        factors.append("Standard rollback procedures followed")
    factors.extend(str(error) for error in session.errors)
    factors.extend(f"Warning: {warning}" for warning in session.warnings)
    return summary, tuple(factors)


def _resolution_actions(session: RollbackSession) -> tuple[ChecklistItem, ...]:
    executed = _reached(session, SessionStatus.EXECUTED)
    if session.status == SessionStatus.REPORTED_RESOLVED:
        outcome = "Rollback executed successfully"
    elif executed:
        outcome = "Rollback executed with issues"
    else:
        outcome = "Rollback not executed"
    items = [
        ChecklistItem(outcome, done=executed),
        ChecklistItem("Manual intervention required", done=session.trigger != Trigger.AUTOMATED),
        ChecklistItem("Backup created before any destructive step", done=session.backup_id is not None),
        ChecklistItem(
            "Backup restoration performed",
            done=session.recovery == RecoveryOutcome.SUCCEEDED,
        ),
    ]
    items += [ChecklistItem(action.description, done=True) for action in session.actions]
    return tuple(items)


def _prevention(session: RollbackSession) -> tuple[tuple[ChecklistItem, ...], tuple[ChecklistItem, ...]]:
    immediate = (
        ChecklistItem(
            "System rolled back to known stable state",
            done=session.status == SessionStatus.REPORTED_RESOLVED,
        ),
        ChecklistItem("Backup verification completed", done=session.backup_id is not None),
        ChecklistItem("Incident tracking initiated", done=True),
    )
    long_term = (
        ChecklistItem("Review CI/CD pipeline reliability"),
        ChecklistItem("Enhance automated testing coverage"),
        ChecklistItem("Improve failure detection mechanisms"),
    )
    return immediate, long_term


def _follow_up(session: RollbackSession) -> tuple[ChecklistItem, ...]:
    items = [ChecklistItem("Root cause investigation")]
    items += [
        ChecklistItem(f"Investigate health check '{check.name}' ({check.outcome.value})")
        for check in session.health_checks
        if not check.passed
    ]
    if session.status == SessionStatus.REPORTED_DEGRADED:
        items.append(ChecklistItem("Decide on manual remediation; no further automatic rollback will run"))
    if session.recovery == RecoveryOutcome.FAILED:
        items.append(ChecklistItem(f"Manually restore repository state from backup {session.backup_id}"))
    if session.status == SessionStatus.ABORTED and not _reached(session, SessionStatus.EXECUTING):
        items.append(ChecklistItem("Retry the rollback once the cause of the abort is fixed"))
    items += [
        ChecklistItem("Update rollback procedures"),
        ChecklistItem("Team notification completed"),
    ]
    return tuple(items)


def _stakeholders(session: RollbackSession) -> tuple[ChecklistItem, ...]:
    urgent = session.reported_severity.is_urgent
    return (
        ChecklistItem("Operator notified via incident report", done=True),
        ChecklistItem("Team notified"),
        ChecklistItem("Management informed" + (" (required for this severity)" if urgent else " (if needed)")),
        ChecklistItem("Users communicated (if applicable)"),
        ChecklistItem("Post-mortem scheduled" + (" (required for this severity)" if urgent else " (if needed)")),
    )


def _lessons(session: RollbackSession, verification_status: str) -> tuple[str, ...]:
    if session.status == SessionStatus.REPORTED_RESOLVED:
        first = "Rollback procedures operated as designed"
    elif session.status == SessionStatus.REPORTED_DEGRADED:
        first = "Rollback completed but the post-rollback state is not healthy"
    else:
        cause = str(session.errors[0]) if session.errors else "no error recorded"
        first = f"Rollback was aborted before completion: {cause}"

    if verification_status == "Passed":
        second = "Health checks confirm the rollback target is stable"
    elif verification_status == "No checks configured":
        second = "No health checks were configured; add checks to verify future rollbacks"
    elif verification_status == "Failed":
        failed = ", ".join(c.name for c in session.health_checks if not c.passed)
        second = f"Health checks need attention: {failed}"
    else:
        second = "Post-rollback verification did not run"

    if session.errors:
        kinds = sorted({e.kind.value for e in session.errors})
        third = f"Error handling needs attention: {', '.join(kinds)}"
    else:
        third = "No errors encountered"
    return (first, second, third)


def build_content(session: RollbackSession, reports_directory: Path) -> IncidentContent:
    """Derive the report content from a terminal session. Pure."""
    if not session.is_terminal_state():
        raise ValueError(f"Session {session.session_id} is not terminal ({session.status.value})")

    severity = session.reported_severity
    verification_status = _verification_status(session)
    root_cause, factors = _root_cause(session)
    immediate, long_term = _prevention(session)
    data_at_risk = session.scope in (Scope.DATABASE, Scope.FULL)

    return IncidentContent(
        session_id=session.session_id,
        incident_type=incident_type(session),
        severity=severity,
        original_severity=session.severity,
        status=session.status,
        status_label=STATUS_LABELS[session.status],
        trigger=session.trigger,
        scope=session.scope,
        emergency=session.emergency,
        detected_at=session.created_at,
        ended_at=session.ended_at,
        failure_type=session.failure_type,
        signal_source=session.signal.source_name if session.signal else None,
        signal_conclusion=session.signal.conclusion if session.signal else None,
        source_ref=session.source_ref,
        source_sha=session.source_sha,
        target_ref=session.target_ref,
        target_sha=session.target_sha,
        reason=session.reason,
        backup_id=session.backup_id,
        backup_created_at=session.backup_created_at,
        publish_branch=session.publish_branch,
        impact_level=IMPACT_LEVELS[severity],
        users_affected="All users" if severity.is_urgent else "Limited impact",
        impact_checklist=(
            ChecklistItem("Production services affected", done=severity.is_urgent),
            ChecklistItem("User-facing functionality impacted", done=severity.is_urgent),
            ChecklistItem("Data integrity concerns", done=data_at_risk),
            ChecklistItem("Performance degradation"),
            ChecklistItem("Security implications"),
        ),
        affected_components=AFFECTED_COMPONENTS[session.scope],
        timeline=_timeline(session),
        verification_status=verification_status,
        health_checks=tuple(session.health_checks),
        recovery=session.recovery,
        root_cause=root_cause,
        contributing_factors=factors,
        resolution_actions=_resolution_actions(session),
        immediate_measures=immediate,
        long_term_measures=long_term,
        follow_up_actions=_follow_up(session),
        stakeholder_communication=_stakeholders(session),
        lessons_learned=_lessons(session, verification_status),
        actions=tuple(TimelineEntry(a.timestamp, a.description) for a in session.actions),
        errors=tuple(str(e) for e in session.errors),
        warnings=tuple(session.warnings),
        reports_directory=str(reports_directory),
    )


def _checklist(items: tuple[ChecklistItem, ...]) -> list[str]:
    return [f"- [{'x' if item.done else ' '}] {item.text}" for item in items]


def _or_dash(value: str | None) -> str:
    return value if value else "-"


def _duration_text(content: IncidentContent) -> str:
    if content.ended_at is None:
        return "Unknown"
    return _format_duration((content.ended_at - content.detected_at).total_seconds())


def render_markdown(content: IncidentContent, generated_at: datetime) -> str:
    """Render the human-readable report."""
    lines: list[str] = [
        f"# Rollback Incident Report: {content.session_id}",
        "",
        "## Incident Summary",
        f"- **Incident Type:** {content.incident_type}",
        f"- **Severity:** {content.severity.value}",
    ]
    if content.severity != content.original_severity:
        lines.append(f"- **Original Severity:** {content.original_severity.value} (escalated after verification)")
    lines += [
        f"- **Status:** {content.status_label}",
        f"- **Final State:** {content.status.value}",
        f"- **Trigger:** {content.trigger.value}",
        f"- **Emergency:** {'yes' if content.emergency else 'no'}",
        f"- **Failure Type:** {content.failure_type}",
        f"- **Detected At:** {format_timestamp(content.detected_at)}",
    ]
    if content.ended_at is not None:
        lines.append(f"- **Closed At:** {format_timestamp(content.ended_at)}")

    lines += [
        "",
        "## Rollback Information",
        f"- **Rollback Session ID:** {content.session_id}",
        f"- **Source:** {content.source_ref} ({_or_dash(content.source_sha)})",
        f"- **Target:** {content.target_ref} ({_or_dash(content.target_sha)})",
        f"- **Rollback Reason:** {content.reason}",
        f"- **Backup ID:** {_or_dash(content.backup_id)}",
    ]
    if content.backup_created_at is not None:
        lines.append(f"- **Backup Created At:** {format_timestamp(content.backup_created_at)}")
    if content.publish_branch is not None:
        lines.append(f"- **Branch:** {content.publish_branch}")
    if content.signal_source is not None:
        lines.append(f"- **Failure Signal:** {content.signal_source} ({content.signal_conclusion})")

    lines += [
        "",
        "## Impact Assessment",
        f"- **Scope:** {content.scope.value}",
        f"- **Impact Level:** {content.impact_level}",
        *_checklist(content.impact_checklist),
        "",
        "**Affected Components:**",
        *(f"- {component}" for component in content.affected_components),
        "",
        "**Estimated User Impact:**",
        f"- **Users Affected:** {content.users_affected}",
        f"- **Duration:** {_duration_text(content)}",
        "",
        "## Timeline",
        *(f"- {format_timestamp(entry.timestamp)}: {entry.description}" for entry in content.timeline),
        "",
        "## Verification",
        f"- **Result:** {content.verification_status}",
    ]
    if content.health_checks:
        lines += [
            "",
            "| Check | Result | Duration | Timeout | Detail |",
            "|-------|--------|----------|---------|--------|",
        ]
        lines += [
            f"| {check.name} | {check.outcome.value} | {check.duration:.2f}s | {check.timeout:g}s | "
            f"{_or_dash(check.detail)} |"
            for check in content.health_checks
        ]
    if content.recovery is not None:
        lines.append(f"- **Recovery:** {content.recovery.value}")

    lines += [
        "",
        "## Root Cause Analysis",
        content.root_cause,
        "",
        "**Contributing Factors:**",
        *(f"- {factor}" for factor in content.contributing_factors),
        "",
        "## Resolution Actions",
        *_checklist(content.resolution_actions),
        "",
        "## Prevention Measures",
        "",
        "**Immediate Actions:**",
        *_checklist(content.immediate_measures),
        "",
        "**Long-term Improvements:**",
        *_checklist(content.long_term_measures),
        "",
        "## Follow-up Actions",
        *_checklist(content.follow_up_actions),
        "",
        "## Stakeholder Communication",
        *_checklist(content.stakeholder_communication),
        "",
        "## Lessons Learned",
        *(f"{i}. {lesson}" for i, lesson in enumerate(content.lessons_learned, start=1)),
        "",
        "## Additional Notes",
        "",
        "**Actions Performed:**",
        *(
            [f"- {format_timestamp(a.timestamp)}: {a.description}" for a in content.actions]
            or ["- None"]
        ),
        "",
        "**Errors:**",
        *([f"- {error}" for error in content.errors] or ["- None"]),
        "",
        "**Warnings:**",
        *([f"- {warning}" for warning in content.warnings] or ["- None"]),
        "",
        "**Related Artifacts:**",
        f"- Session ID: {content.session_id}",
        f"- Reports directory: {content.reports_directory}",
        f"- Backup: {content.backup_id or 'State-based rollback'}",
        "",
        "---",
        f"*Report generated at {format_timestamp(generated_at)}*",
        "",
    ]
    return "\n".join(lines)


def _checklist_record(items: tuple[ChecklistItem, ...]) -> list[dict[str, Any]]:
    return [{"text": item.text, "done": item.done} for item in items]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def build_record(content: IncidentContent, generated_at: datetime, report_file: str) -> dict[str, Any]:
    """Build the machine-readable twin of render_markdown()."""
    return {
        "sessionId": content.session_id,
        "incidentType": content.incident_type,
        "severity": content.severity.value,
        "originalSeverity": content.original_severity.value,
        "status": content.status_label,
        "finalState": content.status.value,
        "trigger": content.trigger.value,
        "emergency": content.emergency,
        "failureType": content.failure_type,
        "detectedAt": _iso(content.detected_at),
        "closedAt": _iso(content.ended_at),
        "rollback": {
            "sourceRef": content.source_ref,
            "sourceSha": content.source_sha,
            "targetRef": content.target_ref,
            "targetSha": content.target_sha,
            "reason": content.reason,
            "backupId": content.backup_id,
            "backupCreatedAt": _iso(content.backup_created_at),
            "branch": content.publish_branch,
        },
        "signal": (
            {"sourceName": content.signal_source, "conclusion": content.signal_conclusion}
            if content.signal_source is not None
            else None
        ),
        "impact": {
            "scope": content.scope.value,
            "level": content.impact_level,
            "usersAffected": content.users_affected,
            "duration": _duration_text(content),
            "checklist": _checklist_record(content.impact_checklist),
            "affectedComponents": list(content.affected_components),
        },
        "timeline": [{"timestamp": e.timestamp.isoformat(), "description": e.description} for e in content.timeline],
        "verification": {
            "result": content.verification_status,
            "checks": [check.to_dict() for check in content.health_checks],
            "recovery": content.recovery.value if content.recovery is not None else None,
        },
        "rootCause": {
            "summary": content.root_cause,
            "contributingFactors": list(content.contributing_factors),
        },
        "resolutionActions": _checklist_record(content.resolution_actions),
        "preventionMeasures": {
            "immediate": _checklist_record(content.immediate_measures),
            "longTerm": _checklist_record(content.long_term_measures),
        },
        "followUpActions": _checklist_record(content.follow_up_actions),
        "stakeholderCommunication": _checklist_record(content.stakeholder_communication),
        "lessonsLearned": list(content.lessons_learned),
        "actions": [{"timestamp": a.timestamp.isoformat(), "description": a.description} for a in content.actions],
        "errors": list(content.errors),
        "warnings": list(content.warnings),
        "relatedArtifacts": {
            "reportsDirectory": content.reports_directory,
            "backup": content.backup_id or "State-based rollback",
        },
        "reportFile": report_file,
        "reportGeneratedAt": generated_at.isoformat(),
    }


def _render_degraded(session: RollbackSession, generated_at: datetime, report_file: str) -> tuple[str, dict[str, Any]]:
    """Minimal rendering used when the full rendering cannot be produced."""
    markdown = "\n".join(
        [
            f"# Rollback Incident Report: {session.session_id}",
            "",
            "*Degraded report: full rendering failed, raw session facts follow.*",
            "",
            f"- **Status:** {session.status.value}",
            f"- **Severity:** {session.reported_severity.value}",
            f"- **Target:** {session.target_ref}",
            f"- **Rollback Reason:** {session.reason}",
            f"- **Backup ID:** {_or_dash(session.backup_id)}",
            "",
            "**Errors:**",
            *([f"- {error}" for error in session.errors] or ["- None"]),
            "",
            "---",
            f"*Report generated at {format_timestamp(generated_at)}*",
            "",
        ]
    )
    record = {
        "degraded": True,
        "session": session.to_dict(),
        "reportFile": report_file,
        "reportGeneratedAt": generated_at.isoformat(),
    }
    return markdown, record


class IncidentReporter:
    """Write and enumerate incident report pairs in one directory."""

    def __init__(self, directory: Path, write_attempts: int = 3, retry_delay: float = 1.0) -> None:
        if write_attempts < 1:
            raise ValueError("write_attempts must be at least 1")
        self._directory = directory
        self._write_attempts = write_attempts
        self._retry_delay = retry_delay

    @property
    def directory(self) -> Path:
        return self._directory

    def pair_for(self, session_id: str) -> ReportPair:
        stem = f"{REPORT_PREFIX}{session_id}"
        return ReportPair(
            session_id=session_id,
            markdown_path=self._directory / f"{stem}.md",
            json_path=self._directory / f"{stem}.json",
        )

    def render(self, session: RollbackSession, generated_at: datetime) -> tuple[str, dict[str, Any]]:
        """Render both artifacts for session without writing anything."""
        pair = self.pair_for(session.session_id)
        content = build_content(session, self._directory)
        return render_markdown(content, generated_at), build_record(content, generated_at, pair.markdown_path.name)

    async def write(self, session: RollbackSession, generated_at: datetime | None = None) -> ReportPair:
        """Write the report pair for a terminal session.

        JSON is written first, Markdown second, each atomically. Failed
        attempts are retried; a rendering failure falls back to a degraded
        report rather than losing the audit trail.

        Raises:
            IncidentWriteError: If no attempt succeeded
        """
        if not session.is_terminal_state():
            raise ValueError(f"Session {session.session_id} is not terminal ({session.status.value})")
        log = logger.bind(session_id=session.session_id)
        generated_at = generated_at or datetime.now(UTC)
        pair = self.pair_for(session.session_id)

        try:
            markdown, record = self.render(session, generated_at)
        except Exception as e:
            log.error("report rendering failed, writing degraded report", error=str(e))
            markdown, record = _render_degraded(session, generated_at, pair.markdown_path.name)

        last_error: OSError | None = None
        for attempt in range(1, self._write_attempts + 1):
            try:
                atomic_write_text(pair.json_path, json.dumps(record, indent=2, ensure_ascii=False) + "\n")
                atomic_write_text(pair.markdown_path, markdown)
            except OSError as e:
                last_error = e
                log.warning("incident report write failed", attempt=attempt, error=str(e))
                if attempt < self._write_attempts:
                    await asyncio.sleep(self._retry_delay)
                continue
            log.info("incident report written", path=str(pair.markdown_path))
            return pair

        assert last_error is not None
        # Never leave a lone twin behind
        with contextlib.suppress(OSError):
            pair.json_path.unlink(missing_ok=True)
        raise IncidentWriteError(session.session_id, self._write_attempts, last_error)

    def list_reports(self) -> list[ReportPair]:
        """All report pairs (complete or not) ordered by session ID, oldest first."""
        if not self._directory.exists():
            return []
        session_ids: set[str] = set()
        for pattern in (f"{REPORT_PREFIX}*.md", f"{REPORT_PREFIX}*.json"):
            for path in self._directory.glob(pattern):
                session_ids.add(path.stem.removeprefix(REPORT_PREFIX))
        return [self.pair_for(session_id) for session_id in sorted(session_ids)]
