"""Main entry point for the IIS Site Operator.

The operator keeps the IIS sites of the local server in the state declared by
a YAML manifest. All changes go through one persistent PowerShell session
running the WebAdministration module.

Exit codes:
    0: Stopped cleanly
    1: Configuration or manifest error, or unhandled failure
    2: Unsupported platform
"""

from __future__ import annotations

import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import IO

from .config import Config, ConfigurationError
from .provider import WebsiteProvider
from .reconciler import Reconciler
from .renderer import CommandRenderer
from .session import SessionPool
from .spec_loader import SpecLoadError, load_manifest

# LogRecord attributes that are not extra fields
_RECORD_ATTRIBUTES = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_logs: bool = True,
    stream: IO[str] | None = None,
) -> None:
    """Configure the root logger.

    Args:
        level: Logging level name.
        json_logs: Emit one JSON document per line instead of plain text.
        stream: Destination, stdout by default.
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")
        )

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())


def check_platform(config: Config, logger: logging.Logger) -> bool:
    """Whether the operator may run on this machine."""
    if WebsiteProvider.is_suitable():
        return True
    if config.allow_non_windows:
        logger.warning(
            "Running on an unsupported platform",
            extra={"platform": sys.platform, "powershell": config.powershell_path},
        )
        return True
    logger.error(
        "IIS sites can only be managed on Windows",
        extra={"platform": sys.platform},
    )
    return False


def main() -> int:
    """Run the operator until it receives SIGINT or SIGTERM.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config.log_level, config.json_logs)
    logger = logging.getLogger(__name__)

    if not check_platform(config, logger):
        return 2

    logger.info(
        "Starting IIS Site Operator",
        extra={
            "manifest": str(config.manifest_path),
            "powershell": config.powershell_path,
            "interval_seconds": config.reconcile_interval_seconds,
            "dry_run": config.dry_run,
        },
    )

    # Fail fast on a broken manifest; later edits are reloaded every pass
    try:
        load_manifest(config.manifest_path)
    except SpecLoadError as e:
        logger.error(
            "Manifest loading failed",
            extra={"error": str(e), "manifest": str(config.manifest_path)},
        )
        return 1

    with SessionPool(timeout=config.command_timeout_seconds) as pool:
        session = pool.get(*config.session_key)
        reconciler = Reconciler(config, session, CommandRenderer())

        def signal_handler(signum: int, frame: object) -> None:
            logger.info("Received signal", extra={"signal": signal.Signals(signum).name})
            reconciler.shutdown()

        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, signal_handler)

        try:
            reconciler.run(lambda: load_manifest(config.manifest_path))
        except Exception as e:
            logger.exception("Unhandled exception", extra={"error": str(e)})
            return 1

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator service."""
    sys.exit(main())


if __name__ == "__main__":
    run()
