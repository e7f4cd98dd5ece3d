"""Onboarding session rows in the ``OnboardingSessions`` worksheet.

One row per onboarding channel, keyed by ``channel_id``. Snowflakes are
stored as text so Sheets never rounds them; timestamps are UTC ISO-8601.
A sheet whose header does not match ``CANONICAL_COLUMNS`` is left alone.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

from shared.config import get_onboarding_sessions_tab, get_onboarding_sheet_id
from shared.sheets import core

log = logging.getLogger("pumpkin.sheets.sessions")

CANONICAL_COLUMNS: list[str] = [
    "user_id",
    "channel_id",
    "step_index",
    "status",
    "question_message_id",
    "question_posted_at",
    "updated_at",
]

STATUSES = frozenset({"active", "completed", "removed"})

_ISO = "%Y-%m-%dT%H:%M:%SZ"

_HEADER_MISMATCH_LOGGED = False


def is_enabled() -> bool:
    return bool(get_onboarding_sheet_id() and get_onboarding_sessions_tab())


def _sheet():
    if not is_enabled():
        raise RuntimeError("ONBOARDING_SHEET_ID / ONBOARDING_SESSIONS_TAB not set")
    return core.get_worksheet(get_onboarding_sheet_id(), get_onboarding_sessions_tab())


def _header_ok(row: Sequence[Any]) -> bool:
    global _HEADER_MISMATCH_LOGGED
    if [str(cell).strip().lower() for cell in row] == CANONICAL_COLUMNS:
        return True
    if not _HEADER_MISMATCH_LOGGED:
        _HEADER_MISMATCH_LOGGED = True
        log.error(
            "sessions sheet header mismatch; persistence skipped",
            extra={"expected": ",".join(CANONICAL_COLUMNS), "found": ",".join(map(str, row)) or "<empty>"},
        )
    return False


def _to_int(text: Any) -> Optional[int]:
    try:
        return int(str(text).strip())
    except ValueError:
        return None


def _to_time(text: Any) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(str(text).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _stamp(value: Any) -> str:
    if not isinstance(value, datetime):
        return str(value or "")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_ISO)


def build_row(payload: Dict[str, Any]) -> list[Any]:
    """Cells for ``payload`` in ``CANONICAL_COLUMNS`` order."""

    status = str(payload.get("status") or "active").lower()
    if status not in STATUSES:
        raise ValueError(f"unknown session status: {status!r}")
    question_id = payload.get("question_message_id")
    return [
        str(int(payload["user_id"])),
        str(int(payload["channel_id"])),
        int(payload.get("step_index") or 0),
        status,
        str(int(question_id)) if question_id else "",
        _stamp(payload.get("question_posted_at")),
        _stamp(payload.get("updated_at")) or datetime.now(timezone.utc).strftime(_ISO),
    ]


def parse_row(row: Sequence[Any]) -> Optional[Dict[str, Any]]:
    """The session described by ``row``, or ``None`` when either id is unusable."""

    cells = dict(zip(CANONICAL_COLUMNS, list(row) + [""] * len(CANONICAL_COLUMNS)))
    user_id, channel_id = _to_int(cells["user_id"]), _to_int(cells["channel_id"])
    if not user_id or not channel_id:
        return None
    status = str(cells["status"]).strip().lower()
    return {
        "user_id": user_id,
        "channel_id": channel_id,
        "step_index": _to_int(cells["step_index"]) or 0,
        "status": status if status in STATUSES else "active",
        "question_message_id": _to_int(cells["question_message_id"]) or None,
        "question_posted_at": _to_time(cells["question_posted_at"]),
        "updated_at": _to_time(cells["updated_at"]),
    }


def load_all() -> list[Dict[str, Any]]:
    rows = core.with_backoff(_sheet().get_all_values)
    if not rows or not _header_ok(rows[0]):
        return []
    return [record for record in map(parse_row, rows[1:]) if record is not None]


def load_active() -> list[Dict[str, Any]]:
    return [record for record in load_all() if record["status"] == "active"]


def _row_range(number: int) -> str:
    return f"A{number}:{chr(ord('A') + len(CANONICAL_COLUMNS) - 1)}{number}"


def save(payload: Dict[str, Any]) -> None:
    """Insert or overwrite the row for ``payload['channel_id']``."""

    worksheet = _sheet()
    rows = core.with_backoff(worksheet.get_all_values)
    if not rows:
        core.with_backoff(lambda: worksheet.update(_row_range(1), [CANONICAL_COLUMNS]))
        rows = [list(CANONICAL_COLUMNS)]
    if not _header_ok(rows[0]):
        return

    values = build_row(payload)
    channel_key = values[1]
    existing = next(
        (number for number, row in enumerate(rows[1:], start=2) if len(row) > 1 and str(row[1]).strip() == channel_key),
        None,
    )
    if existing is None:
        core.with_backoff(lambda: worksheet.append_row(values))
    else:
        core.with_backoff(lambda: worksheet.update(_row_range(existing), [values]))
    log.info(
        "onboarding session saved",
        extra={"channel_id": channel_key, "step": values[2], "status": values[3]},
    )
