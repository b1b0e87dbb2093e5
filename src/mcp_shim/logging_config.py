"""
Logging configuration for the MCP shim.

Stdout carries JSON-RPC traffic, so console logging always goes to stderr.
File logging is optional and writes one JSON object per line.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from typing import Optional

LOGGER_NAME = "mcp_shim"

# Extra level names accepted from MCP_LOG_LEVEL
_LEVEL_ALIASES = {
    "trace": logging.DEBUG,
    "warn": logging.WARNING,
}


class JsonLineFormatter(logging.Formatter):
    """Render records as single-line JSON objects for the log file."""

    def __init__(self, server_name: str):
        super().__init__()
        self.server_name = server_name

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "message": record.getMessage(),
            "server": self.server_name,
            "logger": record.name,
        }
        data = getattr(record, "data", None)
        if data is not None:
            entry["data"] = data
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def resolve_level(level: str) -> int:
    """Map a level name (including ``trace`` and ``warn``) to a logging level."""
    name = level.strip().lower()
    if name in _LEVEL_ALIASES:
        return _LEVEL_ALIASES[name]
    return getattr(logging, name.upper(), logging.INFO)


def setup_logging(
    level: str = "INFO",
    format_string: Optional[str] = None,
    stream: Optional[sys.stderr.__class__] = None,
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    server_name: str = "unknown",
) -> logging.Logger:
    """
    Set up logging for the MCP shim.

    Args:
        level: Logging level (trace, debug, info, warn, error, ...)
        format_string: Custom console format string. If None, uses a structured format.
        stream: Console output stream. Defaults to stderr.
        log_file: Optional path for JSON-lines file logging with rotation.
        max_bytes: Size at which the log file is rotated.
        server_name: Server name recorded in every file log entry.

    Returns:
        Configured logger instance
    """
    if format_string is None:
        format_string = "[%(levelname)s] %(name)s: %(message)s"

    if stream is None:
        stream = sys.stderr

    numeric_level = resolve_level(level)

    logging.basicConfig(
        level=numeric_level,
        format=format_string,
        stream=stream,
        force=True,  # Override any existing configuration
    )

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(numeric_level)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(JsonLineFormatter(server_name))
        file_handler.setLevel(numeric_level)
        logger.addHandler(file_handler)

    return logger


def shutdown_logging() -> None:
    """Flush and close every handler owned by the shim logger and the root logger."""
    for target in (logging.getLogger(LOGGER_NAME), logging.getLogger()):
        for handler in list(target.handlers):
            try:
                handler.flush()
            finally:
                handler.close()
            target.removeHandler(handler)


def get_logger(name: str = LOGGER_NAME) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    Args:
        name: Logger name (typically __name__ or module name)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
