"""Root and access-log wiring for JSON output on stdout."""

from __future__ import annotations

import logging
import sys
from typing import Mapping

from .structured import JsonFormatter

__all__ = ["setup_logging"]

# Gateway chatter and asyncpg connection notices drown the onboarding events.
_QUIET_LOGGERS = ("discord.gateway", "discord.client", "asyncpg")


class _JsonStreamHandler(logging.StreamHandler):
    """Marker type so repeated setup replaces our handler and nobody else's."""


def _install(logger: logging.Logger, static: Mapping[str, str]) -> None:
    for handler in list(logger.handlers):
        if isinstance(handler, _JsonStreamHandler):
            logger.removeHandler(handler)
    handler = _JsonStreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter(static=static))
    logger.addHandler(handler)


def _level(value: str | int | None) -> int:
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(str(value or "INFO").strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(
    *,
    level: str | int | None = None,
    static_fields: Mapping[str, str] | None = None,
    access_logger_name: str = "aiohttp.access",
) -> logging.Logger:
    """Send every record through :class:`JsonFormatter` and return the access logger.

    Safe to call more than once; the health server calls it again when it
    builds its app. The access logger does not propagate, so request lines
    are written once.
    """

    static = dict(static_fields or {})

    root = logging.getLogger()
    root.setLevel(_level(level))
    _install(root, static)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    access = logging.getLogger(access_logger_name)
    access.propagate = False
    access.setLevel(logging.INFO)
    _install(access, {**static, "channel": "access"})
    return access
