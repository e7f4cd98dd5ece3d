"""Helpers for routing onboarding events to the log stream and the log channel."""

from __future__ import annotations

import logging
from typing import Any

from modules.common import runtime as rt
from shared import logfmt
from shared.logs import log_lifecycle

__all__ = ["lifecycle", "report"]

log = logging.getLogger("pumpkin.onboarding")


def lifecycle(event: str, *, channel_id: int | None = None, **fields: Any) -> str | None:
    """Emit a lifecycle line; repeats per channel within 5s are dropped."""

    return log_lifecycle(
        log,
        "onboarding",
        event,
        dedupe_key=str(channel_id) if channel_id is not None else None,
        channel_id=channel_id,
        **fields,
    )


async def report(
    event: str,
    *,
    channel: Any,
    member_id: int | None,
    step: int | None = None,
    reason: object = None,
) -> None:
    """Summarise an onboarding event in the Discord log channel."""

    guild = getattr(channel, "guild", None)
    message = logfmt.LogTemplates.onboarding(
        event=event,
        member=logfmt.user_label(guild, member_id),
        channel=logfmt.channel_label(guild, getattr(channel, "id", None)),
        step=step,
        reason=logfmt.human_reason(reason) if reason is not None else None,
    )
    try:
        await rt.send_log_message(message)
    except Exception:
        log.exception("failed to post onboarding report", extra={"event": event})
