"""Watchdog that nudges, warns and finally removes stalled onboardees."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from discord.ext import commands

from modules.common import runtime as rt
from modules.onboarding import logs as onboarding_logs
from modules.onboarding.channels import format_error
from modules.onboarding.errors import NoMatchingStep
from modules.onboarding.sessions import REMOVED
from shared.config import (
    get_help_after_sec,
    get_kick_after_sec,
    get_support_user_id,
    get_warning_after_sec,
    get_watchdog_interval_sec,
)
from shared.dedupe import EventDeduper
from shared.logfmt import LogTemplates

if TYPE_CHECKING:  # pragma: no cover - typing only
    from modules.onboarding.sequencer import StepSequencer

log = logging.getLogger("pumpkin.onboarding.idle_watcher")

WATCHER_JOB_NAME = "onboarding_watchdog"

TIER_KICK = "kick"
TIER_WARNING = "warning"
TIER_HELP = "help"

_WATCHER_TASK: asyncio.Task | None = None
# NoMatchingStep repeats every sweep; report each channel at most every 10 minutes.
_MISMATCH_DEDUPER = EventDeduper(window_s=600.0)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def warning_text(support_user_id: int | None = None) -> str:
    support = support_user_id if support_user_id is not None else get_support_user_id()
    contact = f"<@{support}>" if support else "a moderator"
    return (
        "you've been on this step for a few minutes.\n\n"
        f"Remember, you can always message {contact} from Scrimba if you're having trouble!\n\n"
        "If, in a few minutes, you're still on this step, I will softly remove you from the server "
        "and delete this channel.  Don't worry! You can always join again and attempt the onboarding."
    )


def select_tier(
    elapsed_sec: float,
    *,
    has_help: bool,
    help_after: float | None = None,
    warning_after: float | None = None,
    kick_after: float | None = None,
) -> Optional[str]:
    """Return the highest tier reached after ``elapsed_sec``, if any."""

    help_after = help_after if help_after is not None else get_help_after_sec()
    warning_after = warning_after if warning_after is not None else get_warning_after_sec()
    kick_after = kick_after if kick_after is not None else get_kick_after_sec()

    if elapsed_sec >= kick_after:
        return TIER_KICK
    if elapsed_sec >= warning_after:
        return TIER_WARNING
    if has_help and elapsed_sec >= help_after:
        return TIER_HELP
    return None


async def ensure_idle_watcher(bot: commands.Bot, sequencer: "StepSequencer") -> bool:
    global _WATCHER_TASK

    runtime = rt.get_active_runtime()
    if runtime is None:
        return False

    if _WATCHER_TASK is not None and not _WATCHER_TASK.done():
        return False

    interval = get_watchdog_interval_sec()
    job = runtime.scheduler.every(
        seconds=interval,
        tag="onboarding",
        name=WATCHER_JOB_NAME,
    )

    async def _sweep() -> None:
        await run_idle_scan(bot, sequencer)

    _WATCHER_TASK = job.do(_sweep)
    await runtime.send_log_message(
        LogTemplates.watchdog(
            interval_s=interval,
            help_s=get_help_after_sec(),
            warning_s=get_warning_after_sec(),
            kick_s=get_kick_after_sec(),
        )
    )
    return True


async def _post_once(sequencer: "StepSequencer", channel: Any, text: str, since: datetime) -> bool:
    """Post ``text`` unless it already appeared after the current question."""

    session = sequencer.store.get(channel.id)
    if session is not None and text in session.notices:
        return False
    for message in await sequencer.gateway.messages_since(channel, since):
        if message.content == text:
            if session is not None:
                session.notices.add(text)
            return False
    await sequencer.gateway.send(channel, text)
    if session is not None:
        session.notices.add(text)
    return True


async def _remove_member(sequencer: "StepSequencer", channel: Any, owner_id: int) -> None:
    member = await sequencer.gateway.resolve_member(channel.guild, owner_id)
    if member is None:
        # Already gone; nothing will fire on_member_remove for this channel.
        sequencer.store.end(channel.id, REMOVED, member_id=owner_id)
        await sequencer.gateway.delete_channel(channel, reason="Onboarding: member no longer in guild")
        return
    await member.kick(reason="Onboarding: inactive for too long")
    sequencer.store.end(channel.id, REMOVED, member_id=owner_id)
    await onboarding_logs.report("kicked", channel=channel, member_id=owner_id)


async def _has_bot_message(sequencer: "StepSequencer", channel: Any) -> bool:
    gateway = sequencer.gateway
    return any(gateway.is_bot_message(message) for message in await gateway.recent_messages(channel))


async def check_channel(sequencer: "StepSequencer", channel: Any, *, now: datetime) -> Optional[str]:
    """Apply at most one escalation tier to ``channel``; return the tier that fired."""

    owner_id = sequencer.gateway.owner_id(channel)
    if owner_id is None:
        return None
    if sequencer.store.get(channel.id) is None and not await _has_bot_message(sequencer, channel):
        # Just created; the first question has not been posted yet.
        return None

    current = await sequencer.current_step(channel)
    if current.posted_at is None:
        return None

    elapsed = (now - current.posted_at).total_seconds()
    tier = select_tier(elapsed, has_help=bool(current.step.help))
    if tier is None:
        return None

    if tier == TIER_KICK:
        await _remove_member(sequencer, channel, owner_id)
        return tier

    body = warning_text() if tier == TIER_WARNING else str(current.step.help)
    posted = await _post_once(sequencer, channel, format_error(owner_id, body), current.posted_at)
    return tier if posted else None


async def run_idle_scan(
    bot: commands.Bot,
    sequencer: "StepSequencer",
    *,
    now: datetime | None = None,
) -> dict[str, int]:
    now = now or _utc_now()
    summary = {"checked": 0, TIER_HELP: 0, TIER_WARNING: 0, TIER_KICK: 0, "errors": 0}

    for channel in list(sequencer.gateway.onboarding_channels()):
        session = sequencer.store.get(channel.id)
        if session is not None and (not session.active or session.question_posted_at is None):
            # Finished, or the first question is still being posted.
            continue
        summary["checked"] += 1
        try:
            tier = await check_channel(sequencer, channel, now=now)
        except NoMatchingStep as exc:
            summary["errors"] += 1
            log.error("onboarding channel has no matching step", extra={"channel_id": channel.id, "text": exc.text})
            if _MISMATCH_DEDUPER.should_emit(str(channel.id)):
                await onboarding_logs.report(
                    "no_matching_step",
                    channel=channel,
                    member_id=sequencer.gateway.owner_id(channel),
                    reason=str(exc),
                )
            continue
        except Exception:
            summary["errors"] += 1
            log.exception("onboarding watchdog failed for channel", extra={"channel_id": channel.id})
            continue
        if tier:
            summary[tier] += 1
            onboarding_logs.lifecycle(f"watchdog_{tier}", channel_id=channel.id)

    return summary
