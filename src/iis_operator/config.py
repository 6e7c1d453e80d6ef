"""Configuration management with validation.

All settings come from environment variables and are validated when the
Config is constructed, so a bad setting stops the operator at start-up
instead of part-way through a reconciliation pass.
"""

from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 1800
MIN_RECONCILE_INTERVAL_SECONDS = 60
MAX_RECONCILE_INTERVAL_SECONDS = 86400

MIN_COMMAND_TIMEOUT_SECONDS = 1
MAX_COMMAND_TIMEOUT_SECONDS = 3600

DEFAULT_MANIFEST_PATH = r"C:\ProgramData\iis-operator\sites.yaml"

# Limits on manifest input
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB
MAX_SITES_PER_MANIFEST = 1000

# Arguments for a non-interactive interpreter that reads commands from stdin
DEFAULT_POWERSHELL_ARGS: tuple[str, ...] = (
    "-NoProfile",
    "-NonInteractive",
    "-NoLogo",
    "-ExecutionPolicy",
    "Bypass",
    "-Command",
    "-",
)


def default_powershell_path() -> str:
    """Locate Windows PowerShell.

    A 32-bit Python on 64-bit Windows sees the 32-bit System32 through the
    file system redirector, and the 32-bit PowerShell cannot load the
    WebAdministration module. ``sysnative`` bypasses the redirector.

    Returns:
        Absolute path to powershell.exe.
    """
    system_root = os.environ.get("SYSTEMROOT", r"C:\Windows")
    sysnative = os.path.join(system_root, "sysnative", "WindowsPowerShell", "v1.0", "powershell.exe")
    if os.path.exists(sysnative):
        return sysnative
    return os.path.join(system_root, "System32", "WindowsPowerShell", "v1.0", "powershell.exe")


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    manifest_path: Path = field(default_factory=lambda: Path(DEFAULT_MANIFEST_PATH))

    # PowerShell session
    powershell_path: str = field(default_factory=default_powershell_path)
    powershell_args: tuple[str, ...] = DEFAULT_POWERSHELL_ARGS

    # None means a command may block forever
    command_timeout_seconds: int | None = None

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS

    # Behavior
    dry_run: bool = False
    allow_non_windows: bool = False

    # Logging
    log_level: str = "INFO"
    json_logs: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.manifest_path.exists():
            errors.append(f"SITES_MANIFEST does not exist: {self.manifest_path}")

        if not self.powershell_path:
            errors.append("POWERSHELL_PATH is required")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if self.command_timeout_seconds is not None and not (
            MIN_COMMAND_TIMEOUT_SECONDS
            <= self.command_timeout_seconds
            <= MAX_COMMAND_TIMEOUT_SECONDS
        ):
            errors.append(
                f"COMMAND_TIMEOUT must be between {MIN_COMMAND_TIMEOUT_SECONDS} "
                f"and {MAX_COMMAND_TIMEOUT_SECONDS} seconds"
            )

        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            errors.append(f"LOG_LEVEL is not a valid logging level: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def session_key(self) -> tuple[str, tuple[str, ...]]:
        """Key identifying the PowerShell session this configuration uses."""
        return self.powershell_path, self.powershell_args

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            SITES_MANIFEST: Path to the YAML site manifest
            POWERSHELL_PATH: PowerShell executable (default: Windows PowerShell 5.1)
            POWERSHELL_ARGS: Interpreter arguments, whitespace separated
            RECONCILE_INTERVAL: Seconds between reconciliation passes (default: 1800)
            COMMAND_TIMEOUT: Seconds to wait for one command (default: no timeout)
            DRY_RUN: If "true", only report drift without changing sites (default: false)
            ALLOW_NON_WINDOWS: If "true", skip the platform check (default: false)
            LOG_LEVEL: Logging level name (default: INFO)
            JSON_LOGS: If "true", emit JSON log lines (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_optional_int(key: str) -> int | None:
            value = os.environ.get(key, "")
            if not value:
                return None
            return get_int(key, 0)

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        args_value = os.environ.get("POWERSHELL_ARGS")
        powershell_args = (
            tuple(shlex.split(args_value, posix=False)) if args_value else DEFAULT_POWERSHELL_ARGS
        )

        return cls(
            manifest_path=Path(os.environ.get("SITES_MANIFEST", DEFAULT_MANIFEST_PATH)),
            powershell_path=os.environ.get("POWERSHELL_PATH") or default_powershell_path(),
            powershell_args=powershell_args,
            command_timeout_seconds=get_optional_int("COMMAND_TIMEOUT"),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            dry_run=get_bool("DRY_RUN", False),
            allow_non_windows=get_bool("ALLOW_NON_WINDOWS", False),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            json_logs=get_bool("JSON_LOGS", True),
        )
