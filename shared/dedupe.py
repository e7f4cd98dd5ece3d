"""Time-window suppression for repeated log-channel posts and reports."""

from __future__ import annotations

import time
from typing import Callable


class EventDeduper:
    """Let a key through at most once per ``window_s`` seconds.

    Keys are arbitrary strings such as ``"mismatch:<channel_id>"``. The oldest
    keys are dropped once ``max_keys`` is exceeded so a long-running process
    does not accumulate one entry per onboarding channel forever.
    """

    def __init__(
        self,
        window_s: float = 5.0,
        *,
        max_keys: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window = max(float(window_s), 0.0)
        self.max_keys = max(int(max_keys), 1)
        self._clock = clock
        self._last: dict[str, float] = {}

    def should_emit(self, key: str) -> bool:
        now = self._clock()
        last = self._last.get(key)
        if last is not None and now - last < self.window:
            return False
        self._last.pop(key, None)
        self._last[key] = now
        if len(self._last) > self.max_keys:
            for stale in list(self._last)[: len(self._last) - self.max_keys]:
                del self._last[stale]
        return True

    def forget(self, key: str) -> None:
        self._last.pop(key, None)
