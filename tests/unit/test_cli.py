"""Tests for CLI commands and their exit codes."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import structlog
from rich.console import Console
from typer.testing import CliRunner

from gitrollback.cli import EXIT_ABORTED, EXIT_CONFIG_ERROR, EXIT_DEGRADED, EXIT_OK, EXIT_REJECTED, app
from gitrollback.engine import SessionInProgressError, SessionNotFoundError
from gitrollback.models import Scope, SessionStatus, Trigger
from gitrollback.session import RollbackSession

runner = CliRunner()

S = SessionStatus


@pytest.fixture(autouse=True)
def wide_console(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep long paths and session IDs on one line in captured output."""
    monkeypatch.setattr("gitrollback.cli.console", Console(width=200))


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    """Commands reconfigure the root logger; undo that after each test."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


@pytest.fixture
def engine() -> Iterator[MagicMock]:
    """Replace RollbackEngine in the CLI with a mock instance."""
    with patch("gitrollback.cli.RollbackEngine") as engine_class:
        instance = engine_class.return_value
        instance.reporter.pair_for.return_value.markdown_path = Path("/reports/rollback-incident-x.md")
        yield instance


def _finished(session: RollbackSession, *statuses: SessionStatus) -> RollbackSession:
    for status in statuses:
        session.transition(status)
    return session


PIPELINE = [S.VALIDATING, S.VALID, S.BACKING_UP, S.BACKED_UP, S.EXECUTING, S.EXECUTED, S.VERIFYING]


class TestRunCommand:
    def test_resolved_session_exits_zero(
        self, tmp_path: Path, engine: MagicMock, make_session: Callable[..., RollbackSession]
    ) -> None:
        session = _finished(make_session(), *PIPELINE, S.VERIFIED, S.REPORTED_RESOLVED)
        engine.run = AsyncMock(return_value=session)

        result = runner.invoke(app, ["run", "v1.2.0", "--reason", "Bad deploy", "-C", str(tmp_path)])

        assert result.exit_code == EXIT_OK, result.output
        assert session.session_id in result.output
        [request] = engine.run.call_args.args
        assert request.target_ref == "v1.2.0"
        assert request.reason == "Bad deploy"
        assert request.trigger == Trigger.MANUAL
        assert request.scope == Scope.APPLICATION
        assert not request.emergency

    def test_degraded_session_exits_two(
        self, tmp_path: Path, engine: MagicMock, make_session: Callable[..., RollbackSession]
    ) -> None:
        session = _finished(make_session(), *PIPELINE, S.VERIFICATION_FAILED, S.REPORTED_DEGRADED)
        engine.run = AsyncMock(return_value=session)

        result = runner.invoke(app, ["run", "HEAD~1", "-r", "Bad deploy", "-C", str(tmp_path)])

        assert result.exit_code == EXIT_DEGRADED

    def test_aborted_session_exits_one(
        self, tmp_path: Path, engine: MagicMock, make_session: Callable[..., RollbackSession]
    ) -> None:
        session = _finished(make_session(), S.VALIDATING, S.INVALID, S.ABORTED)
        engine.run = AsyncMock(return_value=session)

        result = runner.invoke(app, ["run", "nope", "-r", "Bad deploy", "-C", str(tmp_path)])

        assert result.exit_code == EXIT_ABORTED

    def test_awaiting_approval_exits_zero_with_hint(
        self, tmp_path: Path, engine: MagicMock, make_session: Callable[..., RollbackSession]
    ) -> None:
        session = _finished(make_session(), S.VALIDATING, S.VALID, S.BACKING_UP, S.BACKED_UP, S.AWAITING_APPROVAL)
        engine.run = AsyncMock(return_value=session)

        result = runner.invoke(app, ["run", "HEAD~1", "-r", "Bad deploy", "-C", str(tmp_path)])

        assert result.exit_code == EXIT_OK
        assert "git-rollback approve" in result.output

    def test_concurrent_session_is_rejected(self, tmp_path: Path, engine: MagicMock) -> None:
        engine.run = AsyncMock(side_effect=SessionInProgressError("Session abc is awaiting approval", "abc"))

        result = runner.invoke(app, ["run", "HEAD~1", "-r", "Bad deploy", "-C", str(tmp_path)])

        assert result.exit_code == EXIT_REJECTED
        assert "Rejected" in result.output

    def test_emergency_flag_and_scope(self, tmp_path: Path, engine: MagicMock) -> None:
        engine.run = AsyncMock(return_value=None)

        result = runner.invoke(
            app,
            ["run", "HEAD~1", "-r", "Outage", "--emergency", "--scope", "database", "-C", str(tmp_path)],
        )

        assert result.exit_code == EXIT_OK
        [request] = engine.run.call_args.args
        assert request.emergency
        assert request.scope == Scope.DATABASE

    def test_reason_is_required(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["run", "HEAD~1", "-C", str(tmp_path)])
        assert result.exit_code == 2

    def test_session_log_file_is_created(self, tmp_path: Path, engine: MagicMock) -> None:
        engine.run = AsyncMock(return_value=None)

        runner.invoke(app, ["run", "HEAD~1", "-r", "Outage", "-C", str(tmp_path)])

        logs = list((tmp_path / ".git" / "rollback" / "logs").glob("rollback-*.log"))
        assert len(logs) == 1


class TestAutoCommand:
    def test_builds_automated_request(self, tmp_path: Path, engine: MagicMock) -> None:
        engine.run = AsyncMock(return_value=None)

        result = runner.invoke(
            app,
            ["auto", "--source-name", "Verification Pipeline", "--conclusion", "failure", "-C", str(tmp_path)],
        )

        assert result.exit_code == EXIT_OK
        assert "No rollback required" in result.output
        [request] = engine.run.call_args.args
        assert request.trigger == Trigger.AUTOMATED
        assert request.target_ref == "HEAD~1"
        assert request.signal.source_name == "Verification Pipeline"
        assert request.signal.conclusion == "failure"
        assert request.reason == "Verification Pipeline concluded with failure"


class TestApproveCommand:
    def test_unknown_session_exits_one(self, tmp_path: Path, engine: MagicMock) -> None:
        engine.approve = AsyncMock(side_effect=SessionNotFoundError("missing"))

        result = runner.invoke(app, ["approve", "missing", "-C", str(tmp_path)])

        assert result.exit_code == EXIT_ABORTED
        assert "missing" in result.output
        engine.approve.assert_called_once_with("missing")


class TestPendingCommand:
    def test_no_pending_sessions(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["pending", "-C", str(tmp_path)])

        assert result.exit_code == EXIT_OK
        assert "No sessions awaiting approval" in result.output


class TestConfigErrors:
    def test_invalid_config_exits_four(self, tmp_path: Path) -> None:
        config_file = tmp_path / "rollback.yaml"
        config_file.write_text("reports:\n  keep: 0\n")

        result = runner.invoke(app, ["reports", "list", "-C", str(tmp_path), "--config", str(config_file)])

        assert result.exit_code == EXIT_CONFIG_ERROR
        assert "reports.keep" in result.output

    def test_explicit_missing_config_exits_four(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["pending", "-C", str(tmp_path), "--config", str(tmp_path / "absent.yaml")])
        assert result.exit_code == EXIT_CONFIG_ERROR

    def test_default_config_file_is_picked_up(self, tmp_path: Path) -> None:
        (tmp_path / ".rollback.yaml").write_text("reports:\n  directory: incidents\n")

        result = runner.invoke(app, ["reports", "list", "-C", str(tmp_path)])

        assert result.exit_code == EXIT_OK
        assert "incidents" in result.output


class TestReportsCommands:
    def _write_pairs(self, directory: Path, count: int) -> list[str]:
        directory.mkdir(parents=True)
        session_ids = [f"2025011{i}T103000000000Z-00000{i}" for i in range(count)]
        for session_id in session_ids:
            (directory / f"rollback-incident-{session_id}.md").write_text("# report\n")
            (directory / f"rollback-incident-{session_id}.json").write_text("{}\n")
        return session_ids

    def test_list_without_reports(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["reports", "list", "-C", str(tmp_path)])

        assert result.exit_code == EXIT_OK
        assert "No incident reports" in result.output

    def test_list_shows_sessions(self, tmp_path: Path) -> None:
        session_ids = self._write_pairs(tmp_path / ".rollback-incidents", 2)

        result = runner.invoke(app, ["reports", "list", "-C", str(tmp_path)])

        assert result.exit_code == EXIT_OK
        for session_id in session_ids:
            assert session_id in result.output

    def test_prune_keeps_newest(self, tmp_path: Path) -> None:
        directory = tmp_path / ".rollback-incidents"
        session_ids = self._write_pairs(directory, 3)

        result = runner.invoke(app, ["reports", "prune", "--keep", "1", "-C", str(tmp_path)])

        assert result.exit_code == EXIT_OK, result.output
        assert "deleted 2" in result.output
        assert sorted(p.name for p in directory.glob("rollback-incident-*")) == [
            f"rollback-incident-{session_ids[2]}.json",
            f"rollback-incident-{session_ids[2]}.md",
        ]

    def test_prune_rejects_negative_keep(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["reports", "prune", "--keep", "-1", "-C", str(tmp_path)])
        assert result.exit_code == 2
