"""Structured key=value logging for the margin engine.

Every module logger hangs off the ``margin_engine`` logger, which owns the one
stdout handler. Lines from a single nudge run share a ``run_id`` so a run can
be followed from retrieval to persistence.
"""

import logging
import sys
from typing import Any

from pydantic import ValidationError

ROOT_LOGGER = "margin_engine"


class StructuredFormatter(logging.Formatter):
    """key=value formatter; context fields follow the message, None values dropped."""

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            f"timestamp={self.formatTime(record, self.datefmt)}",
            f"level={record.levelname}",
            f"logger={record.name}",
        ]
        run_id = getattr(record, "run_id", None)
        if run_id:
            parts.append(f"run_id={run_id}")
        parts.append(f"message={record.getMessage()}")

        for key, value in getattr(record, "context", {}).items():
            if value is not None:
                parts.append(f"{key}={value}")

        if record.exc_info:
            parts.append(f"exc={self.formatException(record.exc_info)!r}")
        return " ".join(parts)


def _level_from_settings() -> int:
    from margin_engine.core.config import get_settings

    try:
        env = get_settings().MARGIN_ENV
    except ValidationError:
        # credentials missing; logging still has to work
        return logging.INFO
    return logging.DEBUG if env == "dev" else logging.INFO


def configure_logging() -> logging.Logger:
    """Attach the stdout handler to the package logger once."""
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        root.addHandler(handler)
        root.setLevel(_level_from_settings())
    return root


def get_logger(name: str) -> logging.Logger:
    """Logger for a margin_engine module (pass __name__)."""
    configure_logging()
    return logging.getLogger(name)


def log_with_context(logger: logging.Logger, level: int, msg: str, **kwargs: Any) -> None:
    """
    Log with context fields.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, etc.)
        msg: Log message
        **kwargs: Context fields; run_id is promoted next to the message
    """
    run_id = kwargs.pop("run_id", None)
    logger.log(level, msg, extra={"run_id": run_id, "context": kwargs})
