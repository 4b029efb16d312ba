"""
Standardized logging configuration for TLS Certificate Watch.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from tls_cert_watch.config import Config

# Fields the pipeline helpers below attach through ``extra``
EXTRA_FIELDS = ("host", "provider", "notifier", "error_type", "cycle_duration", "findings")

# Fields worth repeating on the console line
CONTEXT_FIELDS = ("host", "provider", "notifier")


class CustomFormatter(logging.Formatter):
    """Console formatter: optional colors and a trailing [key=value] context."""

    # Color codes
    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",  # Reset
    }

    def __init__(self, use_color: bool = True, show_context: bool = True) -> None:
        self.use_color = use_color
        self.show_context = show_context
        super().__init__()

    def _context(self, record: logging.LogRecord) -> str:
        pairs = [
            f"{field}={getattr(record, field)}"
            for field in CONTEXT_FIELDS
            if getattr(record, field, None) is not None
        ]
        return f" [{' '.join(pairs)}]" if pairs else ""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with optional colors and pipeline context."""
        # Level column
        level_name = f"{record.levelname:<8}"
        if self.use_color and record.levelname in self.COLORS:
            level_name = f"{self.COLORS[record.levelname]}{level_name}{self.COLORS['RESET']}"

        timestamp = self.formatTime(record, "%Y-%m-%d %H:%M:%S")
        message = record.getMessage()
        if self.show_context:
            message += self._context(record)

        # Traceback goes on the following lines
        if record.exc_info:
            message = f"{message.rstrip()}\n{self.formatException(record.exc_info)}"

        return f"{timestamp} | {level_name} | {record.name:<26} | {message}"


class StructuredFormatter(logging.Formatter):
    """JSON lines formatter for the log file."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as one JSON object."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Pipeline fields, only when the call site set them
        log_data.update(
            {field: getattr(record, field) for field in EXTRA_FIELDS if hasattr(record, field)}
        )

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Non JSON values (paths, exceptions) fall back to str()
        return json.dumps(log_data, ensure_ascii=False, default=str)


def _file_handler(log_file: str, level: int) -> logging.Handler:
    """Rotating JSON file handler, 10MB per file with 5 backups."""
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter())
    return handler


def setup_logging(config: Config) -> None:
    """
    Route application logs to stdout and, when configured, a JSON log file.

    Args:
        config: Configuration object
    """
    level = getattr(logging, config.log_level)

    # Replace whatever handlers an earlier call (or a library) installed
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    # Colors only when a terminal is attached
    use_color = hasattr(sys.stdout, "isatty") and sys.stdout.isatty()
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(CustomFormatter(use_color=use_color))
    root_logger.addHandler(console_handler)

    if config.log_file:
        root_logger.addHandler(_file_handler(config.log_file, level))

    # Every request would otherwise be logged at INFO
    for noisy in ("httpx", "httpcore", "uvicorn"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app_logger = logging.getLogger("tls_cert_watch")
    app_logger.info(f"Logging initialized - Level: {config.log_level}")
    if config.log_file:
        app_logger.info(f"Log file: {config.log_file}")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name

    Returns:
        Logger instance
    """
    return logging.getLogger(f"tls_cert_watch.{name}")


# Logging helpers for pipeline events
def log_host_skipped(logger: logging.Logger, host: str, error: Exception) -> None:
    """Log a host that could not be inspected."""
    logger.warning(
        f"Skip checking {host}: {error}",
        extra={"host": host, "error_type": type(error).__name__},
    )


def log_finding(logger: logging.Logger, host: str, message: str) -> None:
    """Log a detected certificate condition."""
    logger.info(f"{host}: {message}", extra={"host": host})


def log_provider_failure(
    logger: logging.Logger, provider: str, unit: str, attempts: int, error: Optional[Exception]
) -> None:
    """Log a discovery unit dropped after exhausting its retries."""
    logger.warning(
        f"Provider {provider} gave up on {unit} after {attempts} attempts: {error}",
        extra={
            "provider": provider,
            "error_type": type(error).__name__ if error else "unknown",
        },
    )


def log_notify_failure(logger: logging.Logger, notifier: str, error: BaseException) -> None:
    """Log a failed alert delivery."""
    logger.error(
        f"Notifier {notifier} failed to deliver alert: {error}",
        extra={"notifier": notifier, "error_type": type(error).__name__},
    )


def log_cycle_complete(
    logger: logging.Logger, duration: float, hostnames: int, findings: int
) -> None:
    """Log discovery cycle completion."""
    logger.info(
        f"Discovery cycle completed - Duration: {duration:.2f}s, "
        f"Hostnames: {hostnames}, Findings: {findings}",
        extra={"cycle_duration": duration, "findings": findings},
    )
