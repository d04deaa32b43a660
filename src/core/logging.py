"""
Logging setup for the CLI and the remote server.

Everything logs through loguru. The server additionally routes the standard
library loggers used by uvicorn and httpx into loguru so there is one stream.
"""

import json
import logging
import os
import sys
from typing import Any

from loguru import logger

# Standard library loggers folded into loguru when intercept is on.
STDLIB_LOGGERS = ["uvicorn", "uvicorn.error", "uvicorn.access", "httpx"]


def json_formatter(record: dict[str, Any]) -> str:
    """One JSON object per line, for the server when LOG_FORMAT=json."""
    extra = dict(record.get("extra") or {})
    log_entry = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name,
        "component": extra.pop("component", record["name"]),
        "message": record["message"],
        "function": record["function"],
        "line": record["line"],
    }
    for key, value in extra.items():
        log_entry.setdefault(key, value)

    if record["exception"] is not None:
        log_entry["exception"] = repr(record["exception"].value)

    # Braces are doubled so loguru does not treat the payload as a template.
    return json.dumps(log_entry, default=str).replace("{", "{{").replace("}", "}}") + "\n"


def human_formatter(record: dict[str, Any]) -> str:
    """Coloured single-line format for terminals."""
    where = "{extra[component]}" if "component" in record["extra"] else "{name}:{function}:{line}"
    return (
        "<green>{time:HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        f"<cyan>{where}</cyan> | "
        "<level>{message}</level>\n{exception}"
    )


class InterceptHandler(logging.Handler):
    """Forward standard library log records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Skip logging's own frames so loguru reports the real caller.
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.bind(component=record.name).opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def configure_logging(
    level: str = "INFO",
    json_output: bool = None,
    intercept: bool = False,
) -> None:
    """
    Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Force JSON output. If None, use LOG_FORMAT from the environment.
        intercept: Also route uvicorn and httpx logging through loguru
    """
    logger.remove()

    if json_output is None:
        json_output = os.environ.get("LOG_FORMAT") == "json"

    if json_output:
        logger.add(sys.stderr, format=json_formatter, level=level)
    else:
        logger.add(sys.stderr, format=human_formatter, level=level, colorize=True)

    if intercept:
        logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
        for name in STDLIB_LOGGERS:
            std = logging.getLogger(name)
            std.handlers = [InterceptHandler()]
            std.propagate = False

    logger.debug(f"Logging configured: level={level}, json={json_output}, intercept={intercept}")


def get_logger(component: str):
    """Return the shared logger tagged with a component name."""
    return logger.bind(component=component)
