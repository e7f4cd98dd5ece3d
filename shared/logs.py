"""Single-line lifecycle events (``📘 Onboarding • event=step_posted • ...``)."""

from __future__ import annotations

import logging
from time import monotonic
from typing import Any

_DEDUPE_WINDOW_S = 5.0
_DEDUPE_MAX_KEYS = 256

# (scope, event, key) -> last emit time; cleared between tests.
_lifecycle_dedupe: dict[tuple[str, str, str], float] = {}

_TITLES = {
    "onboarding": "Onboarding",
    "watchdog": "Onboarding watchdog",
    "recovery": "Startup recovery",
    "karma": "Karma",
}


def _expire(now: float) -> None:
    for stale in [k for k, seen in _lifecycle_dedupe.items() if now - seen >= _DEDUPE_WINDOW_S]:
        del _lifecycle_dedupe[stale]


def log_lifecycle(
    logger: logging.Logger,
    scope: str,
    event: str,
    *,
    dedupe: bool = True,
    dedupe_key: str | None = None,
    **fields: Any,
) -> str | None:
    """Log ``event`` for ``scope`` at INFO and return the rendered line.

    Fields that are ``None`` or empty are left out; a step index of ``0`` is
    kept. With ``dedupe`` on, a repeat of the same scope, event and
    ``dedupe_key`` inside five seconds is dropped and ``None`` returned.
    """

    key = (scope, event, dedupe_key or "")
    now = monotonic()
    if dedupe and now - _lifecycle_dedupe.get(key, float("-inf")) < _DEDUPE_WINDOW_S:
        return None
    _lifecycle_dedupe[key] = now
    if len(_lifecycle_dedupe) > _DEDUPE_MAX_KEYS:
        _expire(now)

    parts = [f"📘 {_TITLES.get(scope, scope.title())}", f"event={event}"]
    parts.extend(f"{name}={value}" for name, value in fields.items() if value not in (None, ""))
    line = " • ".join(parts)
    logger.info(line)
    return line
