"""Logging setup for processes that embed a store.

Store code only ever logs through ``logging.getLogger(__name__)`` and passes
its context (op, store, id/ids) via ``extra=``. This module decides where that
ends up: a single stderr handler, formatted as text or as one JSON object per
line with the context fields kept as top-level keys.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .config import Settings

_HANDLER_NAME = "async_store_stderr"
_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_TEXT_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"

# Attribute names present on every LogRecord
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
}


def _context(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields attached through ``extra=``, made JSON-safe."""
    ctx: Dict[str, Any] = {}
    for key, value in vars(record).items():
        if key in _RECORD_ATTRS or key.startswith("_"):
            continue
        try:
            json.dumps(value)
        except (TypeError, ValueError):
            value = str(value)
        ctx[key] = value
    return ctx


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name or "root",
            "message": record.getMessage(),
            **_context(record),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(log_level: Optional[str] = None, json_logs: Optional[bool] = None) -> None:
    """Install (or re-format) the stderr handler on the root logger.

    Safe to call repeatedly. Omitted arguments fall back to ``Settings().LOG_LEVEL``
    and ``Settings().LOG_JSON``; unknown level names mean INFO.
    """

    if log_level is None or json_logs is None:
        s = Settings()
        log_level = s.LOG_LEVEL if log_level is None else log_level
        json_logs = s.LOG_JSON if json_logs is None else json_logs

    level = logging.getLevelName((log_level or "").upper())
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    handler = next((h for h in root.handlers if h.name == _HANDLER_NAME), None)
    if handler is None:
        handler = logging.StreamHandler(stream=sys.stderr)
        handler.name = _HANDLER_NAME
        root.addHandler(handler)

    handler.setFormatter(
        _JsonFormatter() if json_logs else logging.Formatter(_TEXT_FORMAT, _TEXT_DATEFMT)
    )
    root.setLevel(level)


__all__ = ["configure_logging"]
