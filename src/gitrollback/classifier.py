"""Classify raw failure signals into severity tiers."""

from __future__ import annotations

from gitrollback.config import ClassifierConfig
from gitrollback.models import Classification, FailureSignal, Severity

__all__ = ["FailureClassifier"]


class FailureClassifier:
    """Map a FailureSignal to (severity, rollback_required).

    Rules are evaluated in order:
    1. conclusion is not "failure": no rollback, Low
    2. source name matches a critical-path pattern: High
    3. source name matches a scoring/quality pattern: Medium
    4. otherwise: Low

    Any failure requires a rollback; severity only decides whether it runs
    without approval. classify() is pure and never raises.
    """

    def __init__(self, config: ClassifierConfig | None = None) -> None:
        config = config or ClassifierConfig()
        self._critical = [p.casefold() for p in config.critical_patterns]
        self._quality = [p.casefold() for p in config.quality_patterns]

    def classify(self, signal: FailureSignal) -> Classification:
        conclusion = (signal.conclusion or "").strip().casefold()
        if conclusion != "failure":
            return Classification(severity=Severity.LOW, rollback_required=False, failure_type="none")

        source = (signal.source_name or "").casefold()
        if any(pattern in source for pattern in self._critical):
            severity = Severity.HIGH
        elif any(pattern in source for pattern in self._quality):
            severity = Severity.MEDIUM
        else:
            severity = Severity.LOW

        return Classification(severity=severity, rollback_required=True, failure_type="ci_failure")
