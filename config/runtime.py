"""Process identity read straight from the environment.

These are needed before ``shared.config`` validates the full settings table
(the log formatter stamps ``bot`` and ``env`` onto the very first line).
"""

from __future__ import annotations

import os

DEFAULT_PORT = 10000


def get_port() -> int:
    """Health server port; the hosting platform injects ``PORT``."""

    raw = (os.getenv("PORT") or "").strip()
    return int(raw) if raw.isdigit() else DEFAULT_PORT


def get_env_name() -> str:
    return os.getenv("ENV_NAME") or "dev"


def get_bot_name() -> str:
    return os.getenv("BOT_NAME") or "Pumpkin"
