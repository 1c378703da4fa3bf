"""Logging configuration using structlog for structured logging."""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog
from structlog.types import FilteringBoundLogger

if TYPE_CHECKING:
    # The lifecycle modules import this one, and settings imports them.
    from .settings import LoggingConfig


def configure_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    json_logs: bool = True,
) -> FilteringBoundLogger:
    """Configure structured logging with structlog.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional log file path for file logging
        json_logs: Whether to use JSON formatting

    Returns:
        Configured structlog logger
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        # 10MB per file, 30 rotated files
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=10 * 1024 * 1024,
            backupCount=30,
            encoding="utf-8",
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        root_logger.addHandler(file_handler)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


def configure_from_settings(config: "LoggingConfig") -> FilteringBoundLogger:
    """Configure logging from a LoggingConfig section."""
    return configure_logging(
        level=config.level,
        log_file=config.file_path,
        json_logs=config.json_format,
    )


def get_logger(name: str, **initial_context: Any) -> FilteringBoundLogger:
    """Get a logger instance with optional initial context.

    Args:
        name: Logger name (typically __name__)
        **initial_context: Initial context to bind to logger

    Returns:
        Configured logger with bound context
    """
    logger = structlog.get_logger(name)
    if initial_context:
        logger = logger.bind(**initial_context)
    return logger


def log_state_transition(
    logger: FilteringBoundLogger,
    previous: str,
    current: str,
    backend: str,
    **context: Any,
) -> None:
    """Log a lifecycle state transition in a structured format."""
    logger.info(
        "Lifecycle transition",
        previous_state=previous,
        state=current,
        backend=backend,
        metric_type="lifecycle_transition",
        **context,
    )


def log_command_outcome(
    logger: FilteringBoundLogger,
    command_kind: str,
    outcome: str,
    duration_ms: float,
    **context: Any,
) -> None:
    """Log the classified outcome of an administrative command."""
    logger.info(
        "Command outcome",
        command_kind=command_kind,
        outcome=outcome,
        duration_ms=duration_ms,
        metric_type="command_outcome",
        **context,
    )


SENSITIVE_KEY_PARTS = (
    "password", "token", "secret", "authorization", "jwt", "key",
)


def sanitize_log_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credentials before event details reach the log.

    A key containing any of ``SENSITIVE_KEY_PARTS`` (``auth_token``,
    ``ssh_key_path``) has a non-empty value replaced; nested mappings are
    masked the same way. The input is left untouched.
    """
    sanitized: Dict[str, Any] = {}
    for key, value in data.items():
        if any(part in key.lower() for part in SENSITIVE_KEY_PARTS):
            sanitized[key] = "[REDACTED]" if value else value
        elif isinstance(value, dict):
            sanitized[key] = sanitize_log_data(value)
        else:
            sanitized[key] = value
    return sanitized
