"""Configuration loading and validation for git-rollback."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from pytimeparse2 import parse as parse_duration_seconds

from gitrollback.logger import LogLevel, parse_log_level
from gitrollback.models import ConfigError

__all__ = [
    "ApprovalConfig",
    "BackupConfig",
    "ClassifierConfig",
    "Configuration",
    "ConfigurationError",
    "HealthCheckConfig",
    "PublishConfig",
    "ReportsConfig",
    "parse_duration",
]

DEFAULT_KEEP_REPORTS = 10
DEFAULT_HEALTH_CHECK_TIMEOUT = 30.0


@dataclass
class ReportsConfig:
    """Where incident reports go and how many are kept."""

    directory: Path
    keep: int = DEFAULT_KEEP_REPORTS
    write_attempts: int = 3
    retry_delay: float = 1.0  # Seconds


@dataclass
class BackupConfig:
    """Pre-rollback backup storage."""

    directory: Path
    timeout: float = 120.0  # Seconds


@dataclass
class ApprovalConfig:
    expires_after: float | None = 24 * 3600.0  # Seconds; None = never expires


@dataclass
class PublishConfig:
    """Lease-protected push of the rolled-back branch."""

    enabled: bool = False
    remote: str = "origin"
    branch: str | None = None  # None = branch checked out at validation time


@dataclass
class ClassifierConfig:
    """Case-insensitive substrings matched against the failure source name."""

    critical_patterns: list[str] = field(default_factory=lambda: ["verification", "integration"])
    quality_patterns: list[str] = field(default_factory=lambda: ["truth scoring", "scoring", "quality"])


@dataclass
class HealthCheckConfig:
    name: str
    command: str
    timeout: float = DEFAULT_HEALTH_CHECK_TIMEOUT


@dataclass
class Configuration:
    """Parsed and validated configuration, scoped to one repository."""

    repo_path: Path
    reports: ReportsConfig
    backups: BackupConfig
    state_directory: Path
    log_file_level: LogLevel = LogLevel.FULL
    log_cli_level: LogLevel = LogLevel.INFO
    approval: ApprovalConfig = field(default_factory=ApprovalConfig)
    publish: PublishConfig = field(default_factory=PublishConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    health_checks: list[HealthCheckConfig] = field(default_factory=list)

    @classmethod
    def default(cls, repo_path: Path) -> Configuration:
        """All-defaults configuration for the repository at repo_path."""
        return cls.from_dict({}, repo_path)

    @classmethod
    def from_yaml(cls, path: Path, repo_path: Path) -> Configuration:
        """Load and validate configuration from YAML file.

        Args:
            path: Path to the YAML configuration file
            repo_path: Repository the configuration applies to; relative
                directories in the file are resolved against it

        Returns:
            Validated Configuration instance

        Raises:
            ConfigurationError: If YAML is invalid or schema validation fails
        """
        try:
            with path.open() as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(
                [ConfigError(path=str(path), message=f"Configuration file not found: {path}")]
            ) from None
        except yaml.YAMLError as e:
            error_msg = str(e)
            # problem_mark only exists on MarkedYAMLError
            if hasattr(e, "problem_mark") and hasattr(e, "problem"):
                mark = e.problem_mark  # type: ignore[attr-defined]
                problem = e.problem  # type: ignore[attr-defined]
                if mark is not None and problem is not None:
                    error_msg = f"YAML syntax error at line {mark.line + 1}, column {mark.column + 1}: {problem}"
            raise ConfigurationError([ConfigError(path=str(path), message=error_msg)]) from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError([ConfigError(path="root", message="Configuration must be a mapping")])

        return cls.from_dict(data, repo_path)

    @classmethod
    def from_dict(cls, data: dict[str, Any], repo_path: Path) -> Configuration:
        """Validate a raw configuration mapping and build a Configuration.

        Raises:
            ConfigurationError: Listing every problem found
        """
        errors: list[ConfigError] = []

        validator = jsonschema.Draft7Validator(_load_schema())
        for error in validator.iter_errors(data):
            path_parts = list(error.absolute_path)
            path_str = ".".join(str(p) for p in path_parts) if path_parts else "root"
            errors.append(ConfigError(path=path_str, message=error.message))

        if errors:
            raise ConfigurationError(errors)

        def duration(key: str, value: Any, default: float) -> float:
            if value is None:
                return default
            try:
                return parse_duration(value)
            except ValueError as e:
                errors.append(ConfigError(path=key, message=str(e)))
                return default

        def level(key: str, default: LogLevel) -> LogLevel:
            try:
                return parse_log_level(data.get(key, default.name))
            except ValueError as e:
                errors.append(ConfigError(path=key, message=str(e)))
                return default

        def directory(value: str | None, default: Path) -> Path:
            if value is None:
                return default
            candidate = Path(value).expanduser()
            return candidate if candidate.is_absolute() else repo_path / candidate

        log_file_level = level("log_file_level", LogLevel.FULL)
        log_cli_level = level("log_cli_level", LogLevel.INFO)

        state_data = data.get("state", {})
        state_directory = directory(state_data.get("directory"), repo_path / ".git" / "rollback")

        reports_data = data.get("reports", {})
        reports = ReportsConfig(
            directory=directory(reports_data.get("directory"), repo_path / ".rollback-incidents"),
            keep=reports_data.get("keep", DEFAULT_KEEP_REPORTS),
            write_attempts=reports_data.get("write_attempts", 3),
            retry_delay=duration("reports.retry_delay", reports_data.get("retry_delay"), 1.0),
        )

        backups_data = data.get("backups", {})
        backups = BackupConfig(
            directory=directory(backups_data.get("directory"), state_directory / "backups"),
            timeout=duration("backups.timeout", backups_data.get("timeout"), 120.0),
        )

        approval_data = data.get("approval", {})
        if "expires_after" in approval_data and approval_data["expires_after"] is None:
            approval = ApprovalConfig(expires_after=None)
        else:
            approval = ApprovalConfig(
                expires_after=duration("approval.expires_after", approval_data.get("expires_after"), 24 * 3600.0)
            )

        publish_data = data.get("publish", {})
        publish = PublishConfig(
            enabled=publish_data.get("enabled", False),
            remote=publish_data.get("remote", "origin"),
            branch=publish_data.get("branch"),
        )

        classifier_defaults = ClassifierConfig()
        classifier_data = data.get("classifier", {})
        classifier = ClassifierConfig(
            critical_patterns=classifier_data.get("critical_patterns", classifier_defaults.critical_patterns),
            quality_patterns=classifier_data.get("quality_patterns", classifier_defaults.quality_patterns),
        )

        health_checks: list[HealthCheckConfig] = []
        seen_names: set[str] = set()
        for index, check in enumerate(data.get("health_checks", [])):
            if check["name"] in seen_names:
                errors.append(
                    ConfigError(
                        path=f"health_checks.{index}.name",
                        message=f"Duplicate health check name: {check['name']}",
                    )
                )
            seen_names.add(check["name"])
            health_checks.append(
                HealthCheckConfig(
                    name=check["name"],
                    command=check["command"],
                    timeout=duration(
                        f"health_checks.{index}.timeout", check.get("timeout"), DEFAULT_HEALTH_CHECK_TIMEOUT
                    ),
                )
            )

        if errors:
            raise ConfigurationError(errors)

        return cls(
            repo_path=repo_path,
            reports=reports,
            backups=backups,
            state_directory=state_directory,
            log_file_level=log_file_level,
            log_cli_level=log_cli_level,
            approval=approval,
            publish=publish,
            classifier=classifier,
            health_checks=health_checks,
        )

    @staticmethod
    def get_default_config_path(repo_path: Path) -> Path:
        """Default config file location: <repo>/.rollback.yaml."""
        return repo_path / ".rollback.yaml"

    @property
    def pending_directory(self) -> Path:
        return self.state_directory / "pending"

    @property
    def journal_directory(self) -> Path:
        return self.state_directory / "active"

    @property
    def lock_path(self) -> Path:
        return self.state_directory / "rollback.lock"


class ConfigurationError(Exception):
    """Raised when configuration loading or validation fails."""

    def __init__(self, errors: list[ConfigError]) -> None:
        self.errors = errors
        messages = [f"{e.path}: {e.message}" for e in errors]
        super().__init__("Configuration validation failed:\n" + "\n".join(messages))


def parse_duration(value: str | float | int) -> float:
    """Parse a human-readable duration to seconds.

    Args:
        value: Seconds as a number, or a string like "30s", "2m", "1h 30m"

    Raises:
        ValueError: If the duration format is invalid or negative

    Examples:
        >>> parse_duration("2m")
        120.0
        >>> parse_duration(5)
        5.0
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, int | float):
        seconds: Any = value
    else:
        seconds = parse_duration_seconds(value.strip())
        if seconds is None:
            raise ValueError(f"Invalid duration format: {value}")
    # pytimeparse2 returns int, float, or timedelta
    total = seconds.total_seconds() if isinstance(seconds, timedelta) else float(seconds)
    if total < 0:
        raise ValueError(f"Duration must not be negative: {value}")
    return total


def _load_schema() -> dict[str, Any]:
    """Load the config schema from package resources."""
    schema_path = Path(__file__).parent / "schemas" / "config-schema.yaml"
    with schema_path.open() as f:
        return yaml.safe_load(f)
