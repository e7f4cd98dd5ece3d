"""Text for the Discord log channel: labels, durations and message templates."""

from __future__ import annotations

from typing import Any, Optional

import discord

_EMOJI = {
    "ok": "✅",
    "event": "📘",
    "watchdog": "🐶",
    "warn": "⚠️",
    "fail": "❌",
}

# Discord JSON error codes the onboarding flow actually runs into.
_DISCORD_CODES = {
    10003: "Unknown Channel",
    10007: "Unknown Member",
    50001: "Missing Access",
    50007: "Cannot Send Messages to This User",
    50013: "Missing Permissions",
}

_EVENT_EMOJI = {
    "completed": _EMOJI["ok"],
    "kicked": _EMOJI["warn"],
    "no_matching_step": _EMOJI["fail"],
    "error": _EMOJI["fail"],
}


def channel_label(guild: Any, channel_id: Optional[int]) -> str:
    """``#category › name`` when the channel is cached, otherwise ``#<id>``."""

    if channel_id is None:
        return "#unknown"
    channel = guild.get_channel(channel_id) if guild is not None else None
    if channel is None:
        return f"#{channel_id}"
    category = getattr(channel, "category", None)
    if category is not None and getattr(category, "name", None):
        return f"#{category.name} › {channel.name}"
    return f"#{channel.name}"


def user_label(guild: Any, user_id: Optional[int]) -> str:
    if user_id is None:
        return "unknown"
    member = guild.get_member(user_id) if guild is not None else None
    return getattr(member, "display_name", None) or str(user_id)


def fmt_duration(seconds: float) -> str:
    """Compact duration: ``45s``, ``6m``, ``1.5h``."""

    value = max(float(seconds), 0.0)
    for limit, divisor, unit in ((60, 1, "s"), (3600, 60, "m"), (float("inf"), 3600, "h")):
        if value < limit:
            scaled = value / divisor
            return f"{scaled:.0f}{unit}" if scaled == int(scaled) else f"{scaled:.1f}{unit}"
    return f"{value:.0f}s"


def human_reason(reason: object) -> str:
    """One-line description of an error or message for the log channel."""

    if reason is None:
        return "-"
    if isinstance(reason, discord.HTTPException):
        label = _DISCORD_CODES.get(reason.code, type(reason).__name__)
        detail = " ".join(str(reason.text or "").split())
        head = f"{label} ({reason.status}/{reason.code})" if reason.code else f"{label} ({reason.status})"
        return f"{head}: {detail}" if detail else head
    if isinstance(reason, BaseException):
        detail = " ".join(str(reason).split())
        return f"{type(reason).__name__}: {detail}" if detail else type(reason).__name__
    return " ".join(str(reason).split()) or "-"


class LogTemplates:
    @staticmethod
    def watchdog(*, interval_s: int, help_s: int, warning_s: int, kick_s: int) -> str:
        return (
            f"{_EMOJI['watchdog']} **Onboarding watchdog started** • every {interval_s}s • "
            f"help after {fmt_duration(help_s)} • warning after {fmt_duration(warning_s)} • "
            f"kick after {fmt_duration(kick_s)}"
        )

    @staticmethod
    def scheduler_failure(*, job: str, reason: str) -> str:
        return f"{_EMOJI['fail']} **Background job failed** • job={job} • reason={reason or '-'}"

    @staticmethod
    def onboarding(
        *,
        event: str,
        member: str,
        channel: str,
        step: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> str:
        fields = [f"member={member}", f"channel={channel}"]
        if step is not None:
            fields.append(f"step={step}")
        if reason:
            fields.append(f"reason={reason}")
        return f"{_EVENT_EMOJI.get(event, _EMOJI['event'])} **Onboarding {event}** • " + " • ".join(fields)

    @staticmethod
    def recovery(*, channels: int, resumed: int, deleted: int, closed: int) -> str:
        return (
            f"{_EMOJI['event']} **Startup recovery** • {channels} onboarding channel(s) • "
            f"resumed={resumed} • deleted={deleted} • sessions_closed={closed}"
        )
