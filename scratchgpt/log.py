"""
Logging setup for the command-line entry point.

Library modules only create loggers (logging.getLogger(__name__)); handlers
are installed here, once, by the application.
"""

import json
import logging
import os
from datetime import datetime, timezone

PACKAGE_LOGGER = "scratchgpt"
LOG_ENV_VAR = "SCRATCHGPT_LOG"
TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per record: timestamp, level, logger, message."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def parse_level(level) -> int:
    """Accept a level name ("info", "WARNING", ...) or a numeric level."""
    if isinstance(level, int):
        return level
    name = str(level).strip().upper()
    if name == "WARN":
        name = "WARNING"
    value = logging.getLevelName(name)
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return value


def configure_logging(level="info", json_format: bool = False) -> logging.Logger:
    """
    Install a single stream handler on the package logger.

    SCRATCHGPT_LOG, when set, takes precedence over ``level``. Calling this
    again replaces the previous handler rather than adding a second one.

    Returns:
        The configured package logger
    """
    level = os.environ.get(LOG_ENV_VAR) or level
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(parse_level(level))

    for handler in list(logger.handlers):
        if getattr(handler, "_scratchgpt_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter() if json_format else logging.Formatter(TEXT_FORMAT))
    handler._scratchgpt_handler = True
    logger.addHandler(handler)
    logger.propagate = False
    return logger
