"""JSON log lines with a per-event trace id."""

from __future__ import annotations

import contextvars
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping

from shared.redaction import sanitize_text

_trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="")

# Attributes every LogRecord carries; only caller-supplied ``extra`` fields are emitted.
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}


def set_trace_id(value: str | None = None) -> str:
    """Bind a trace id to the current context and return it.

    Listeners call this once per Discord event, so every line logged while
    handling one join, message or reaction shares a ``trace``. A fresh UUID
    is generated when ``value`` is not given.
    """

    trace = value or uuid.uuid4().hex
    _trace_id_var.set(trace)
    return trace


def get_trace_id() -> str:
    return _trace_id_var.get()


def _field(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Mapping):
        return {str(k): _field(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_field(v) for v in value]
    return sanitize_text(value)


class JsonFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, trace, extras."""

    def __init__(self, static: Mapping[str, Any] | None = None) -> None:
        super().__init__()
        self._static = dict(static or {})

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: dict[str, Any] = {
            "ts": stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": sanitize_text(record.getMessage()),
            "trace": getattr(record, "trace", None) or get_trace_id(),
            **self._static,
        }
        for key, value in vars(record).items():
            if key in _STANDARD_ATTRS or key.startswith("_") or key in payload:
                continue
            payload[key] = _field(value)
        if record.exc_info:
            payload["exc"] = sanitize_text(self.formatException(record.exc_info))
        return json.dumps(payload, ensure_ascii=False, default=str)
