"""Process entry point for the provisioner watch loop.

SECRETLESS ARCHITECTURE:
- Azure calls authenticate with a managed identity only
- Secret values come from the secret store at apply time and are never
  written to state or logs
- Client secrets or passwords in the environment block startup

Environment drives configuration (see Config.from_env). SIGTERM and SIGINT
stop the loop; an apply in flight starts no new steps and saves the state
of everything that already completed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TextIO, TypeVar

from .config import Config, ConfigurationError
from .reconciler import Reconciler, build_registry
from .security import SecretlessViolationError
from .spec_loader import SpecLoadError

T = TypeVar("T")

EXIT_CODE_CONFIG_ERROR = 1
EXIT_CODE_SECURITY_VIOLATION = 2

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_LOG_ATTRIBUTES = frozenset(
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
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRIBUTES:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


TEXT_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def setup_logging(
    log_format: str = "json", level: int = logging.INFO, stream: TextIO | None = None
) -> None:
    """Configure root logging.

    Args:
        log_format: "json" for structured output, "text" for humans.
        level: Root log level.
        stream: Destination stream (default: stdout).
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    if log_format == "text":
        handler.setFormatter(logging.Formatter(TEXT_LOG_FORMAT))
    else:
        handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def run_with_signals(
    reconciler: Reconciler, operation: Callable[[], Awaitable[T]]
) -> T:
    """Await ``operation`` with SIGTERM/SIGINT mapped to reconciler shutdown."""
    logger = logging.getLogger(__name__)
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()

    installed: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            pass

    try:
        return await operation()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def main() -> int:
    """Run the watch loop.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_CODE_CONFIG_ERROR

    logger.info(
        "Starting provisioner",
        extra={
            "stack_file": str(config.stack_file),
            "state_file": str(config.state_file),
            "mode": config.mode.value,
            "subscription_id": config.subscription_id,
            "location": config.location,
        },
    )

    try:
        registry = build_registry(config)
        reconciler = Reconciler(config, registry)
        # Fail fast on an invalid stack before entering the loop
        reconciler.load()
    except (ConfigurationError, SpecLoadError) as e:
        logger.error("Failed to initialize reconciler", extra={"error": str(e)})
        return EXIT_CODE_CONFIG_ERROR
    except SecretlessViolationError as e:
        # SECURITY: Credential detected - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_CODE_SECURITY_VIOLATION
    except Exception as e:
        logger.error(
            "Failed to initialize reconciler",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    try:
        await run_with_signals(reconciler, reconciler.run)
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Provisioner stopped")
    return 0


def run() -> None:
    """Entry point for the watch loop."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
