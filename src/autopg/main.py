"""Main entry point for the autopg daemon.

Startup order:
1. Load and validate configuration (fatal on error)
2. Snapshot per-target admin credentials from the environment
3. Construct the Docker client (fatal on error)
4. Scan existing containers, then watch start events until SIGTERM/SIGINT

Everything after startup is logged and survived; only the steps above can
make the process exit non-zero.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from docker.errors import DockerException

from .config import Config, ConfigurationError
from .credentials import CredentialResolver
from .docker_platform import DockerPlatform
from .reconciler import Reconciler
from .watcher import Watcher

# LogRecord attributes that are not structured fields
_RESERVED_RECORD_ATTRS = frozenset(
    (
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
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as one JSON object per line for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int | str = logging.INFO) -> None:
    """Configure structured logging with JSON output to stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the Docker SDK and its HTTP stack
    logging.getLogger("docker").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def main() -> int:
    """Run the daemon.

    Returns:
        Exit code (0 for a clean shutdown, 1 for a startup failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logging.getLogger().setLevel(config.log_level_value)

    credentials = CredentialResolver.from_env()
    logger.info(
        "Starting autopg",
        extra={
            "label_prefix": config.label_prefix,
            "configured_targets": credentials.configured_targets(),
            "dry_run": config.dry_run,
        },
    )

    try:
        platform = DockerPlatform.from_env()
    except DockerException as e:
        logger.error("Could not create Docker client", extra={"error": str(e)})
        return 1

    reconciler = Reconciler(config, credentials, platform)
    watcher = Watcher(config, platform, reconciler)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        watcher.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await watcher.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        platform.close()

    logger.info("autopg stopped")
    return 0


def run() -> None:
    """Entry point for the daemon."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
