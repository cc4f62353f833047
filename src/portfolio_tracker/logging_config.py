"""Logging setup shared by the CLI, the streamer and the report writers.

Two output styles are supported: a bracketed single-line text format for
terminals, and one JSON object per line for log shippers. Contextual fields
are passed through ``extra=`` and :func:`structured_log_extra` keeps their
names consistent across modules.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict

DEFAULT_ENV = os.getenv("PORTFOLIO_TRACKER_ENV", os.getenv("ENV", "local"))

# Session-control chatter from the feed (welcome, subscribe acks) sits below DEBUG.
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

TEXT_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
TEXT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_BUILTIN_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "taskName",
}


class JsonFormatter(logging.Formatter):
    """Render each record as a single JSON line.

    The core keys are ``timestamp``, ``level``, ``logger``, ``message``,
    ``event`` and ``env``; extras such as ``pair`` or ``state`` follow them.
    """

    def __init__(self, env: str | None = None) -> None:
        super().__init__()
        self.env = env or DEFAULT_ENV

    def _extras(self, record: logging.LogRecord) -> Dict[str, Any]:
        return {k: v for k, v in vars(record).items() if k not in _BUILTIN_ATTRS}

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        extras = self._extras(record)
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        document: Dict[str, Any] = dict(
            timestamp=created.isoformat(),
            level=record.levelname,
            logger=record.name,
            message=record.getMessage(),
            event=extras.pop("event", None),
            env=extras.pop("env", self.env),
        )
        document.update(extras)
        if record.exc_info:
            document["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(document, default=str)


def level_for_verbosity(*, quiet: bool = False, verbose: bool = False) -> int:
    """Map the CLI's quiet/verbose switches onto a logging level."""

    if quiet:
        return logging.ERROR
    if verbose:
        return TRACE
    return logging.INFO


def _make_handler(env: str | None, json_output: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        formatter: logging.Formatter = JsonFormatter(env=env)
    else:
        formatter = logging.Formatter(TEXT_FORMAT, datefmt=TEXT_DATE_FORMAT)
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    level: int = logging.INFO, env: str | None = None, json_output: bool = False
) -> None:
    """Install a single stderr handler on the root logger.

    Calling this again replaces the previous handler instead of stacking a
    second one.
    """

    root = logging.getLogger()
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(_make_handler(env, json_output))
    root.setLevel(level)


def structured_log_extra(
    *,
    env: str | None = None,
    event: str | None = None,
    pair: str | None = None,
    portfolio: str | None = None,
    **fields: Any,
) -> Dict[str, Any]:
    """Return an ``extra`` mapping with ``event`` and ``env`` always set.

    ``pair`` and ``portfolio`` are left out when they are ``None``.
    """

    optional = {name: value for name, value in (("pair", pair), ("portfolio", portfolio)) if value is not None}
    return {"event": event, "env": env or DEFAULT_ENV, **optional, **fields}


def get_log_environment() -> str:
    return DEFAULT_ENV


__all__ = [
    "DEFAULT_ENV",
    "TRACE",
    "JsonFormatter",
    "configure_logging",
    "get_log_environment",
    "level_for_verbosity",
    "structured_log_extra",
]
