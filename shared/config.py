"""Environment-backed settings for the onboarding bot.

Every setting is declared once in ``_SETTINGS`` with its parser and default.
The module loads on import and fails fast when a required variable is
missing; ``reload_config()`` re-reads the environment (tests use it after
patching variables). Getters read the cached snapshot only.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

from config import runtime as _runtime
from shared.redaction import is_secret_key, mask_secret, sanitize_text

log = logging.getLogger("pumpkin.config")

_REQUIRED = ("DISCORD_TOKEN", "ONBOARDING_CATEGORY_ID")
_DIGITS = re.compile(r"\d+")

# Escalation ladder defaults: help, warning, kick.
_LADDER_DEFAULTS = (30, 360, 540)


def _snowflake(raw: str) -> Optional[int]:
    # Accepts bare ids as well as pasted mentions such as ``<#123>``.
    match = _DIGITS.search(raw)
    return int(match.group(0)) if match else None


def _snowflakes(raw: str) -> Set[int]:
    return {int(token) for token in _DIGITS.findall(raw)}


def _bounded(cast: Callable[[str], Any], low=None, high=None) -> Callable[[str, str], Any]:
    def parse(key: str, raw: str) -> Any:
        value = cast(raw)
        if low is not None and value < low:
            log.warning("config: %s=%s below %s; clamping", key, value, low)
            value = low
        if high is not None and value > high:
            log.warning("config: %s=%s above %s; clamping", key, value, high)
            value = high
        return value

    return parse


@dataclass(frozen=True)
class _Setting:
    key: str
    default: Any = None
    parse: Optional[Callable[[str, str], Any]] = None


_SETTINGS = (
    _Setting("DISCORD_TOKEN", ""),
    _Setting("GUILD_IDS", frozenset(), lambda _k, raw: frozenset(_snowflakes(raw))),
    _Setting("LOG_CHANNEL_ID", None, lambda _k, raw: _snowflake(raw)),
    _Setting("LOG_LEVEL", "INFO"),
    _Setting("ONBOARDING_CATEGORY_ID", None, lambda _k, raw: _snowflake(raw)),
    _Setting("ONBOARDING_CHANNEL_PREFIX", "welcome-"),
    _Setting("REGULAR_MEMBER_ROLE_ID", None, lambda _k, raw: _snowflake(raw)),
    _Setting("PRO_ROLE_ID", None, lambda _k, raw: _snowflake(raw)),
    _Setting("UNLOCKED_INTRODUCTIONS_CHANNEL_ROLE_ID", None, lambda _k, raw: _snowflake(raw)),
    _Setting("ONBOARDING_SUPPORT_USER_ID", None, lambda _k, raw: _snowflake(raw)),
    _Setting("ONBOARDING_WATCHDOG_INTERVAL_SEC", 5, _bounded(int, low=1)),
    _Setting("ONBOARDING_HELP_AFTER_SEC", _LADDER_DEFAULTS[0], _bounded(int, low=1)),
    _Setting("ONBOARDING_WARNING_AFTER_SEC", _LADDER_DEFAULTS[1], _bounded(int, low=1)),
    _Setting("ONBOARDING_KICK_AFTER_SEC", _LADDER_DEFAULTS[2], _bounded(int, low=1)),
    _Setting("ONBOARDING_POLL_INTERVAL_SEC", 1.0, _bounded(float, low=0.25, high=60.0)),
    _Setting("ONBOARDING_HISTORY_LIMIT", 50, _bounded(int, low=5, high=100)),
    _Setting("PG_URI", ""),
    _Setting("CONVERT_KIT_API_KEY", ""),
    _Setting("CONVERT_KIT_API_SECRET", ""),
    _Setting("CONVERT_KIT_TAG_ID", ""),
    _Setting("CONVERT_KIT_FORM_ID", ""),
    _Setting("GSPREAD_CREDENTIALS", ""),
    _Setting("ONBOARDING_SHEET_ID", ""),
    _Setting("ONBOARDING_SESSIONS_TAB", "OnboardingSessions"),
    _Setting("KARMA_CHANNEL_ID", None, lambda _k, raw: _snowflake(raw)),
    _Setting("KARMA_EMOJI", "💜"),
)

_CONFIG: Dict[str, Any] = {}
_warned_no_log_channel = False


def _read(setting: _Setting) -> Any:
    raw = (os.getenv(setting.key) or "").strip()
    if not raw:
        return setting.default
    if setting.parse is None:
        return raw
    try:
        return setting.parse(setting.key, raw)
    except ValueError:
        log.warning("config: %s=%r invalid; using default %r", setting.key, raw, setting.default)
        return setting.default


def _check_ladder(values: Dict[str, Any]) -> None:
    keys = ("ONBOARDING_HELP_AFTER_SEC", "ONBOARDING_WARNING_AFTER_SEC", "ONBOARDING_KICK_AFTER_SEC")
    help_after, warning_after, kick_after = (values[key] for key in keys)
    if help_after < warning_after < kick_after:
        return
    log.warning(
        "config: onboarding escalation thresholds out of order; using defaults",
        extra={"help": help_after, "warning": warning_after, "kick": kick_after},
    )
    values.update(zip(keys, _LADDER_DEFAULTS))


def _display(key: str, value: Any) -> Any:
    if value in (None, "", frozenset()):
        return "—"
    if is_secret_key(key):
        return mask_secret(str(value))
    if isinstance(value, frozenset):
        return sorted(value) if len(value) <= 3 else f"{len(value)} ids"
    return sanitize_text(value) if isinstance(value, str) else value


def reload_config() -> Dict[str, Any]:
    """Re-read the environment, cache the result and log a masked snapshot."""

    global _CONFIG, _warned_no_log_channel

    missing = [key for key in _REQUIRED if not (os.getenv(key) or "").strip()]
    if missing:
        raise RuntimeError(f"Missing required environment variable: {', '.join(missing)}")

    values = {setting.key: _read(setting) for setting in _SETTINGS}
    values["PORT"] = _runtime.get_port()
    values["BOT_NAME"] = _runtime.get_bot_name()
    values["ENV_NAME"] = _runtime.get_env_name()
    _check_ladder(values)

    if values["LOG_CHANNEL_ID"] is None and not _warned_no_log_channel:
        log.warning("Log channel disabled; set LOG_CHANNEL_ID to enable Discord log posting.")
    _warned_no_log_channel = values["LOG_CHANNEL_ID"] is None

    _CONFIG = values
    log.info("config loaded", extra={"config": {k: _display(k, v) for k, v in values.items()}})
    return dict(values)


reload_config()


def _id(key: str) -> Optional[int]:
    value = _CONFIG.get(key)
    return value if isinstance(value, int) and value > 0 else None


def _str(key: str) -> str:
    return str(_CONFIG.get(key) or "")


def get_env_name() -> str:
    return _str("ENV_NAME") or "dev"


def get_bot_name() -> str:
    return _str("BOT_NAME") or "Pumpkin"


def get_discord_token() -> str:
    return _str("DISCORD_TOKEN")


def get_allowed_guild_ids() -> Set[int]:
    return set(_CONFIG.get("GUILD_IDS") or ())


def is_guild_allowed(guild_id: int) -> bool:
    """An empty ``GUILD_IDS`` allows every guild."""

    allowed = get_allowed_guild_ids()
    return not allowed or guild_id in allowed


def get_log_channel_id() -> Optional[int]:
    return _id("LOG_CHANNEL_ID")


def get_onboarding_category_id() -> Optional[int]:
    return _id("ONBOARDING_CATEGORY_ID")


def get_onboarding_channel_prefix() -> str:
    return _str("ONBOARDING_CHANNEL_PREFIX") or "welcome-"


def get_regular_member_role_id() -> Optional[int]:
    return _id("REGULAR_MEMBER_ROLE_ID")


def get_pro_role_id() -> Optional[int]:
    return _id("PRO_ROLE_ID")


def get_introductions_role_id() -> Optional[int]:
    return _id("UNLOCKED_INTRODUCTIONS_CHANNEL_ROLE_ID")


def get_support_user_id() -> Optional[int]:
    return _id("ONBOARDING_SUPPORT_USER_ID")


def get_pg_uri() -> str:
    return _str("PG_URI")


def get_convertkit_api_key() -> str:
    return _str("CONVERT_KIT_API_KEY")


def get_convertkit_api_secret() -> str:
    return _str("CONVERT_KIT_API_SECRET")


def get_convertkit_tag_id() -> str:
    return _str("CONVERT_KIT_TAG_ID")


def get_convertkit_form_id() -> str:
    return _str("CONVERT_KIT_FORM_ID")


def get_gspread_credentials() -> str:
    return _str("GSPREAD_CREDENTIALS")


def get_onboarding_sheet_id() -> str:
    return _str("ONBOARDING_SHEET_ID")


def get_onboarding_sessions_tab() -> str:
    return _str("ONBOARDING_SESSIONS_TAB")


def get_watchdog_interval_sec() -> int:
    return int(_CONFIG["ONBOARDING_WATCHDOG_INTERVAL_SEC"])


def get_help_after_sec() -> int:
    return int(_CONFIG["ONBOARDING_HELP_AFTER_SEC"])


def get_warning_after_sec() -> int:
    return int(_CONFIG["ONBOARDING_WARNING_AFTER_SEC"])


def get_kick_after_sec() -> int:
    return int(_CONFIG["ONBOARDING_KICK_AFTER_SEC"])


def get_poll_interval_sec() -> float:
    return float(_CONFIG["ONBOARDING_POLL_INTERVAL_SEC"])


def get_history_limit() -> int:
    return int(_CONFIG["ONBOARDING_HISTORY_LIMIT"])


def get_karma_channel_id() -> Optional[int]:
    return _id("KARMA_CHANNEL_ID")


def get_karma_emoji() -> str:
    return _str("KARMA_EMOJI") or "💜"
