"""Bounded retention of incident report pairs."""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path

from gitrollback.logger import get_logger
from gitrollback.reporter import IncidentReporter, ReportPair

__all__ = ["PruneResult", "RetentionManager"]

TRASH_DIR_NAME = ".trash"

logger = get_logger(__name__)


@dataclass(frozen=True)
class PruneResult:
    kept: list[str]
    deleted: list[str]
    failed: dict[str, str] = field(default_factory=dict)  # session_id -> error


class RetentionManager:
    """Delete all but the newest N report pairs.

    Session IDs start with their creation time, so sorting by ID sorts by
    age. A pair is removed as a unit: both files are first moved into a
    staging directory and only deleted once both moves succeeded, so a
    failure never leaves one twin without the other.
    """

    def __init__(self, reporter: IncidentReporter) -> None:
        self._reporter = reporter

    @property
    def _trash(self) -> Path:
        return self._reporter.directory / TRASH_DIR_NAME

    def prune(self, keep: int) -> PruneResult:
        if keep < 0:
            raise ValueError(f"keep must not be negative: {keep}")

        self._empty_trash()
        pairs = self._reporter.list_reports()
        excess = pairs[: max(len(pairs) - keep, 0)]
        kept = [pair.session_id for pair in pairs[len(excess) :]]

        deleted: list[str] = []
        failed: dict[str, str] = {}
        for pair in excess:
            try:
                self._delete_pair(pair)
            except OSError as e:
                failed[pair.session_id] = str(e)
                logger.warning("failed to delete incident report", session_id=pair.session_id, error=str(e))
                continue
            deleted.append(pair.session_id)

        if deleted:
            logger.info("pruned incident reports", deleted=len(deleted), kept=len(kept))
        return PruneResult(kept=kept, deleted=deleted, failed=failed)

    def _delete_pair(self, pair: ReportPair) -> None:
        self._trash.mkdir(parents=True, exist_ok=True)
        staged: list[tuple[Path, Path]] = []
        try:
            for path in (pair.json_path, pair.markdown_path):
                if path.exists():
                    destination = self._trash / path.name
                    path.replace(destination)
                    staged.append((path, destination))
        except OSError:
            for original, destination in reversed(staged):
                destination.replace(original)
            raise
        for _, destination in staged:
            destination.unlink()

    def _empty_trash(self) -> None:
        """Finish deletions an earlier run staged but did not complete."""
        if self._trash.exists():
            shutil.rmtree(self._trash)
