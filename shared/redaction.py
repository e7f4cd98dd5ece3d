"""Masking for secrets that can leak into config snapshots and log lines.

The bot handles four kinds of secret: the Discord bot token, the Postgres DSN
password, the ConvertKit key/secret pair and the Google service-account JSON.
Masks carry a short stable digest so two log lines can be compared without
revealing the value.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any

__all__ = ["mask_secret", "sanitize_text", "is_secret_key"]

_DISCORD_TOKEN = re.compile(r"[\w-]{24,}\.[\w-]{6}\.[\w-]{27,}")
_DSN_PASSWORD = re.compile(r"(postgres(?:ql)?://[^:/@\s]+:)([^@\s]+)(@)", re.IGNORECASE)
_PEM_BLOCK = re.compile(r"-----BEGIN [^-]+-----.*?-----END [^-]+-----", re.DOTALL)
_ASSIGNED_SECRET = re.compile(
    r"((?:api_key|api_secret|secret|token|password)\"?\s*[=:]\s*\"?)([^\s\",;&]+)",
    re.IGNORECASE,
)
# ConvertKit secrets and similar opaque keys: long runs mixing letters and digits.
_OPAQUE_KEY = re.compile(r"\b(?=[\w-]*[A-Za-z])(?=[\w-]*\d)[\w-]{32,}\b")

_SECRET_KEY_MARKERS = ("TOKEN", "SECRET", "API_KEY", "CREDENTIAL", "PG_URI")


def _digest(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8", "ignore")).hexdigest()[:4]


def mask_secret(text: str) -> str:
    return f"***{_digest(text)}"


def is_secret_key(key: str) -> bool:
    """True for config keys whose values are never logged in clear."""

    upper = str(key).upper()
    return any(marker in upper for marker in _SECRET_KEY_MARKERS)


def _is_service_account(text: str) -> bool:
    if '"service_account"' not in text:
        return False
    try:
        data = json.loads(text)
    except ValueError:
        return False
    return isinstance(data, dict) and data.get("type") == "service_account"


def sanitize_text(value: Any) -> Any:
    """Return ``value`` as text with every recognised secret masked."""

    if value is None:
        return None
    text = str(value)
    if not text.strip():
        return text
    if _is_service_account(text.strip()):
        return f"***sa-json:{_digest(text)}"

    text = _PEM_BLOCK.sub(lambda m: mask_secret(m.group(0)), text)
    text = _DSN_PASSWORD.sub(lambda m: m.group(1) + mask_secret(m.group(2)) + m.group(3), text)
    text = _DISCORD_TOKEN.sub(lambda m: mask_secret(m.group(0)), text)
    text = _ASSIGNED_SECRET.sub(lambda m: m.group(1) + mask_secret(m.group(2)), text)
    return _OPAQUE_KEY.sub(lambda m: mask_secret(m.group(0)), text)
