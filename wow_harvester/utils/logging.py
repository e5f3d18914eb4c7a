"""
Structured logging setup for the harvester.

Call ``configure_logging(config)`` once at CLI entry (before any worker or
sweep starts) to set up the root logger with the configured level and
optional file handler.

All internal modules use ``logging.getLogger(__name__)``; never call
``configure_logging`` or ``basicConfig`` from within library code.

Audit and progress records are plain maps discriminated by ``logTag``::

    log_event(logger, logging.INFO, "roster.join", "Member joined",
              guild_guid="rage@area-52", member_id=1234)

JSON format (set ``json_format = true`` in config/default.toml [logging])
flattens those fields onto the line::

    {"ts": "2026-02-24T15:00:00Z", "level": "INFO", "logger": "...",
     "msg": "Member joined", "logTag": "roster.join", "guild_guid": "...", ...}
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from wow_harvester.config import LoggingConfig

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# Attributes every LogRecord carries; anything else came from ``extra=``.
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}


class _JsonFormatter(logging.Formatter):
    """Emit one JSON object per log line.

    Fields: ``ts``, ``level``, ``logger``, ``msg``.
    Extra fields from ``extra=`` kwargs are included at the top level.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
                LOG_DATE_FORMAT
            ),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        for key, val in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                payload[key] = val
        return json.dumps(payload, default=str)


def log_event(
    logger: logging.Logger,
    level: int,
    log_tag: str,
    message: str,
    **fields: Any,
) -> None:
    """Emit a structured record with a ``logTag`` discriminator.

    ``fields`` must not collide with ``LogRecord`` attribute names
    (``name``, ``msg``, ``args``...); colliding keys are prefixed with ``f_``.
    """
    extra = {"logTag": log_tag}
    for key, val in fields.items():
        extra[f"f_{key}" if key in _RESERVED_ATTRS else key] = val
    logger.log(level, message, extra=extra)


def configure_logging(config: "LoggingConfig") -> None:
    """Configure the root logger from a ``LoggingConfig`` instance.

    Sets up:
      - StreamHandler (stdout) at the configured level.
      - Optional FileHandler if ``config.log_file`` is set.
      - JSON line format if ``config.json_format`` is ``True``.

    Args:
        config: Logging configuration section from ``AppConfig``.
    """
    level = getattr(logging, config.level.upper(), logging.INFO)

    formatter: logging.Formatter
    if config.json_format:
        formatter = _JsonFormatter()
    else:
        formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    handlers: list[logging.Handler] = []

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(formatter)
    handlers.append(console)

    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    # Quieten noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)
