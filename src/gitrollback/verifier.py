"""Post-rollback health checks."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from gitrollback.config import HealthCheckConfig
from gitrollback.executor import Executor
from gitrollback.logger import get_logger
from gitrollback.models import CheckOutcome, ErrorKind, HealthCheckResult
from gitrollback.session import RollbackSession

__all__ = [
    "CommandHealthCheck",
    "HealthCheck",
    "PostRollbackVerifier",
    "VerificationResult",
]

logger = get_logger(__name__)


class HealthCheck(Protocol):
    """A named, read-only check of the post-rollback state."""

    name: str
    timeout: float  # Seconds

    async def is_healthy(self) -> bool:
        """Return True if healthy. May raise; an exception counts as a failure."""
        ...


class CommandHealthCheck:
    """Health check that passes when a shell command exits 0."""

    def __init__(self, name: str, command: str, executor: Executor, timeout: float = 30.0) -> None:
        self.name = name
        self.command = command
        self.timeout = timeout
        self._executor = executor

    @classmethod
    def from_config(cls, config: HealthCheckConfig, executor: Executor) -> CommandHealthCheck:
        return cls(name=config.name, command=config.command, executor=executor, timeout=config.timeout)

    async def is_healthy(self) -> bool:
        result = await self._executor.run_shell(self.command)
        if not result.success:
            logger.debug(
                "health check command failed",
                check=self.name,
                exit_code=result.exit_code,
                stderr=result.stderr.strip(),
            )
        return result.success


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    results: list[HealthCheckResult]

    @property
    def failed(self) -> list[HealthCheckResult]:
        return [r for r in self.results if not r.passed]


class PostRollbackVerifier:
    """Run every health check concurrently, each under its own timeout.

    Verification passes only if every check passes. A failure escalates
    the session's reported severity by one tier and is otherwise left for
    humans: the verifier never starts another rollback.
    """

    def __init__(self, checks: Sequence[HealthCheck], clock: Callable[[], float] = time.monotonic) -> None:
        names = [c.name for c in checks]
        if len(names) != len(set(names)):
            raise ValueError(f"Health check names must be unique: {names}")
        self._checks = list(checks)
        self._clock = clock

    async def _run_check(self, check: HealthCheck) -> HealthCheckResult:
        start = self._clock()
        try:
            healthy = await asyncio.wait_for(check.is_healthy(), timeout=check.timeout)
        except TimeoutError:
            return HealthCheckResult(
                name=check.name,
                outcome=CheckOutcome.TIMED_OUT,
                duration=self._clock() - start,
                timeout=check.timeout,
                detail=f"No result within {check.timeout:g}s",
            )
        except Exception as e:
            return HealthCheckResult(
                name=check.name,
                outcome=CheckOutcome.FAILED,
                duration=self._clock() - start,
                timeout=check.timeout,
                detail=f"{type(e).__name__}: {e}",
            )
        return HealthCheckResult(
            name=check.name,
            outcome=CheckOutcome.PASSED if healthy else CheckOutcome.FAILED,
            duration=self._clock() - start,
            timeout=check.timeout,
        )

    async def verify(self, session: RollbackSession) -> VerificationResult:
        """Run all checks and record their results on session."""
        log = logger.bind(session_id=session.session_id)
        if not self._checks:
            session.record_warning("No health checks configured; post-rollback state was not verified")
            log.warning("no health checks configured")
            return VerificationResult(verified=True, results=[])

        results = list(await asyncio.gather(*(self._run_check(c) for c in self._checks)))
        session.health_checks.extend(results)

        for result in results:
            if result.outcome == CheckOutcome.TIMED_OUT:
                session.record_error(
                    ErrorKind.HEALTH_CHECK_TIMEOUT,
                    f"Health check {result.name!r} timed out after {result.timeout:g}s",
                )
            elif result.outcome == CheckOutcome.FAILED:
                detail = f": {result.detail}" if result.detail else ""
                session.record_error(ErrorKind.HEALTH_CHECK_FAILED, f"Health check {result.name!r} failed{detail}")
            log.info("health check finished", check=result.name, outcome=result.outcome.value)

        verified = all(r.passed for r in results)
        if not verified:
            session.effective_severity = session.severity.escalate()
            log.warning(
                "verification failed, severity escalated",
                severity=session.severity.value,
                effective_severity=session.effective_severity.value,
            )
        return VerificationResult(verified=verified, results=results)
