"""CLI entry point for git-rollback using Typer."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Coroutine
from datetime import UTC, datetime
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.table import Table

from gitrollback.config import Configuration, ConfigurationError
from gitrollback.engine import RollbackEngine, SessionInProgressError, SessionNotFoundError
from gitrollback.logger import configure_logging, session_log_path
from gitrollback.models import FailureSignal, RollbackRequest, Scope, SessionStatus, Trigger
from gitrollback.reporter import IncidentWriteError
from gitrollback.session import RollbackSession

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_DEGRADED = 2
EXIT_REJECTED = 3
EXIT_CONFIG_ERROR = 4

app = typer.Typer(
    name="git-rollback",
    help="Roll a repository back to a known-good commit and document the incident",
    no_args_is_help=True,
)
reports_app = typer.Typer(help="Inspect and prune incident reports", no_args_is_help=True)
app.add_typer(reports_app, name="reports")

console = Console()

RepoOption = Annotated[
    Path,
    typer.Option("--repo", "-C", help="Repository to operate on (default: current directory)"),
]
ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Path to config file (default: <repo>/.rollback.yaml)"),
]


def _version_callback(value: bool) -> None:
    """Print version and exit if --version flag is provided."""
    if value:
        try:
            console.print(f"git-rollback {version('git-rollback')}")
        except PackageNotFoundError:
            console.print("[bold red]Error:[/bold red] Cannot determine git-rollback version")
            sys.exit(1)
        raise typer.Exit()


@app.callback()
def main(
    version_flag: Annotated[
        bool,
        typer.Option("--version", "-v", callback=_version_callback, is_eager=True, help="Show version and exit"),
    ] = False,
) -> None:
    """Automated rollback and incident documentation for git repositories."""


def _load_config(repo: Path, config: Path | None) -> Configuration:
    """Load configuration or exit with EXIT_CONFIG_ERROR.

    Without --config a missing <repo>/.rollback.yaml means all defaults.
    """
    repo_path = repo.expanduser().resolve()
    config_path = config or Configuration.get_default_config_path(repo_path)
    try:
        if config is None and not config_path.exists():
            return Configuration.default(repo_path)
        return Configuration.from_yaml(config_path, repo_path)
    except ConfigurationError as e:
        console.print("[bold red]Configuration error:[/bold red]")
        for error in e.errors:
            console.print(f"  {error.path}: {error.message}")
        raise typer.Exit(EXIT_CONFIG_ERROR) from None


def _setup_logging(cfg: Configuration) -> Path:
    label = datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")
    log_file = session_log_path(cfg.state_directory, label)
    configure_logging(cfg.log_file_level, cfg.log_cli_level, log_file)
    return log_file


def _exit_code(session: RollbackSession | None) -> int:
    if session is None:
        return EXIT_OK
    if session.status == SessionStatus.REPORTED_DEGRADED:
        return EXIT_DEGRADED
    if session.status == SessionStatus.ABORTED:
        return EXIT_ABORTED
    return EXIT_OK


def _print_session(session: RollbackSession, engine: RollbackEngine) -> None:
    status_styles = {
        SessionStatus.REPORTED_RESOLVED: "green",
        SessionStatus.REPORTED_DEGRADED: "yellow",
        SessionStatus.AWAITING_APPROVAL: "cyan",
        SessionStatus.ABORTED: "red",
    }
    style = status_styles.get(session.status, "white")

    table = Table(show_header=False, box=None)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Session", session.session_id)
    table.add_row("Status", f"[{style}]{session.status.value}[/{style}]")
    table.add_row("Severity", session.reported_severity.value)
    table.add_row("Trigger", session.trigger.value)
    table.add_row("Target", f"{session.target_ref} ({(session.target_sha or '-')[:12]})")
    table.add_row("Backup", session.backup_id or "-")
    if session.is_terminal_state():
        table.add_row("Report", str(engine.reporter.pair_for(session.session_id).markdown_path))
    console.print(table)

    for error in session.errors:
        console.print(f"[red]✗[/red] {error}")
    for warning in session.warnings:
        console.print(f"[yellow]![/yellow] {warning}")
    if session.status == SessionStatus.AWAITING_APPROVAL:
        console.print(f"\nApprove with: [bold]git-rollback approve {session.session_id}[/bold]")


def _run_engine(engine: RollbackEngine, operation: Coroutine[Any, Any, RollbackSession | None]) -> int:
    """Run an engine operation and map its outcome to an exit code."""
    try:
        session = asyncio.run(operation)
    except SessionInProgressError as e:
        console.print(f"[bold yellow]Rejected:[/bold yellow] {e}")
        return EXIT_REJECTED
    except SessionNotFoundError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        return EXIT_ABORTED
    except IncidentWriteError as e:
        console.print(f"[bold red]Incident report could not be written:[/bold red] {e}")
        return EXIT_ABORTED

    if session is None:
        console.print("[green]No rollback required[/green]")
    else:
        _print_session(session, engine)
    return _exit_code(session)


@app.command()
def run(
    target: Annotated[str, typer.Argument(help="Commit, tag or ref to roll back to (must be an ancestor of HEAD)")],
    reason: Annotated[str, typer.Option("--reason", "-r", help="Why the rollback is needed")],
    scope: Annotated[Scope, typer.Option("--scope", help="Part of the system being restored")] = Scope.APPLICATION,
    emergency: Annotated[bool, typer.Option("--emergency", help="Mark as an emergency rollback")] = False,
    repo: RepoOption = Path("."),
    config: ConfigOption = None,
) -> None:
    """Roll back to TARGET on operator request."""
    cfg = _load_config(repo, config)
    _setup_logging(cfg)
    engine = RollbackEngine(cfg)
    request = RollbackRequest(
        target_ref=target, reason=reason, scope=scope, emergency=emergency, trigger=Trigger.MANUAL
    )
    sys.exit(_run_engine(engine, engine.run(request)))


@app.command()
def auto(
    source_name: Annotated[str, typer.Option("--source-name", help="Name of the failed workflow or monitor")],
    conclusion: Annotated[str, typer.Option("--conclusion", help='Outcome reported by the source, e.g. "failure"')],
    target: Annotated[str, typer.Option("--target", help="Ref to roll back to")] = "HEAD~1",
    reason: Annotated[str | None, typer.Option("--reason", "-r", help="Override the generated reason")] = None,
    scope: Annotated[Scope, typer.Option("--scope", help="Part of the system being restored")] = Scope.APPLICATION,
    emergency: Annotated[bool, typer.Option("--emergency", help="Mark the signal as an emergency")] = False,
    trigger_kind: Annotated[str, typer.Option("--trigger-kind", help="Kind of event that produced the signal")] = (
        "workflow_run"
    ),
    repo: RepoOption = Path("."),
    config: ConfigOption = None,
) -> None:
    """Handle a failure signal from CI or monitoring."""
    cfg = _load_config(repo, config)
    _setup_logging(cfg)
    engine = RollbackEngine(cfg)
    signal = FailureSignal(
        source_name=source_name,
        conclusion=conclusion,
        trigger_kind=trigger_kind,
        emergency=emergency,
    )
    request = RollbackRequest(
        target_ref=target,
        reason=reason or f"{source_name} concluded with {conclusion}",
        scope=scope,
        emergency=emergency,
        trigger=Trigger.AUTOMATED,
        signal=signal,
    )
    sys.exit(_run_engine(engine, engine.run(request)))


@app.command()
def approve(
    session_id: Annotated[str, typer.Argument(help="ID of the session awaiting approval")],
    repo: RepoOption = Path("."),
    config: ConfigOption = None,
) -> None:
    """Approve a session that is awaiting approval and execute it."""
    cfg = _load_config(repo, config)
    _setup_logging(cfg)
    engine = RollbackEngine(cfg)
    sys.exit(_run_engine(engine, engine.approve(session_id)))


@app.command()
def pending(
    repo: RepoOption = Path("."),
    config: ConfigOption = None,
) -> None:
    """List sessions awaiting approval."""
    cfg = _load_config(repo, config)
    sessions = RollbackEngine(cfg).pending_sessions()
    if not sessions:
        console.print("[dim]No sessions awaiting approval[/dim]")
        return

    table = Table(title="Awaiting approval")
    table.add_column("Session")
    table.add_column("Severity")
    table.add_column("Target")
    table.add_column("Reason")
    for session in sessions:
        table.add_row(session.session_id, session.severity.value, session.target_ref, session.reason)
    console.print(table)


@reports_app.command("list")
def list_reports(
    repo: RepoOption = Path("."),
    config: ConfigOption = None,
) -> None:
    """List incident report pairs, oldest first."""
    cfg = _load_config(repo, config)
    pairs = RollbackEngine(cfg).reporter.list_reports()
    if not pairs:
        console.print(f"[dim]No incident reports in {cfg.reports.directory}[/dim]")
        return

    table = Table(title=f"Incident reports in {cfg.reports.directory}")
    table.add_column("Session")
    table.add_column("Markdown")
    table.add_column("JSON")
    for pair in pairs:
        table.add_row(
            pair.session_id,
            pair.markdown_path.name if pair.markdown_path.exists() else "[red]missing[/red]",
            pair.json_path.name if pair.json_path.exists() else "[red]missing[/red]",
        )
    console.print(table)


@reports_app.command("prune")
def prune_reports(
    keep: Annotated[
        int | None,
        typer.Option("--keep", "-k", min=0, help="Number of newest report pairs to keep (default: reports.keep)"),
    ] = None,
    repo: RepoOption = Path("."),
    config: ConfigOption = None,
) -> None:
    """Delete all but the newest incident report pairs."""
    cfg = _load_config(repo, config)
    configure_logging(cfg.log_file_level, cfg.log_cli_level)
    result = RollbackEngine(cfg).retention.prune(cfg.reports.keep if keep is None else keep)

    console.print(f"Kept {len(result.kept)} report pair(s), deleted {len(result.deleted)}")
    for session_id in result.deleted:
        console.print(f"  [dim]deleted[/dim] {session_id}")
    for session_id, error in result.failed.items():
        console.print(f"  [red]failed[/red] {session_id}: {error}")
    if result.failed:
        sys.exit(EXIT_ABORTED)


if __name__ == "__main__":
    app()
