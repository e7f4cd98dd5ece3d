"""One-shot recovery of in-flight onboarding channels after a (re)start."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from modules.common import runtime as rt
from modules.common.logs import log as human_log
from modules.onboarding import logs as onboarding_logs
from modules.onboarding.errors import NoMatchingStep
from modules.onboarding.sessions import REMOVED
from shared.logfmt import LogTemplates

if TYPE_CHECKING:  # pragma: no cover - typing only
    from modules.onboarding.sequencer import StepSequencer

log = logging.getLogger("pumpkin.onboarding.startup")


async def _recover_channel(sequencer: "StepSequencer", channel: Any, summary: dict[str, int]) -> None:
    gateway = sequencer.gateway
    owner_id = gateway.owner_id(channel)
    if owner_id is None:
        return

    member = await gateway.resolve_member(channel.guild, owner_id)
    if member is None:
        sequencer.store.end(channel.id, REMOVED, member_id=owner_id)
        if await gateway.delete_channel(channel, reason="Onboarding: member left while offline"):
            summary["deleted"] += 1
        return

    try:
        resumed = await sequencer.resume(channel, member)
    except NoMatchingStep as exc:
        summary["errors"] += 1
        log.error("recovered channel has no matching step", extra={"channel_id": channel.id, "text": exc.text})
        await onboarding_logs.report("no_matching_step", channel=channel, member_id=owner_id, reason=str(exc))
        return
    if resumed is not None:
        summary["resumed"] += 1


async def recover_onboarding(bot: Any, sequencer: "StepSequencer") -> dict[str, int]:
    """Reconcile onboarding channels and sessions with the guild as it is now.

    Channels whose owner has left are deleted; the rest are resumed so steps
    that advance on their own (polls, informational posts) are armed again.
    Persisted sessions whose channel disappeared are closed.
    """

    summary = {"channels": 0, "resumed": 0, "deleted": 0, "closed": 0, "errors": 0}
    loaded = await sequencer.store.load_persisted()
    if loaded:
        log.info("loaded persisted onboarding sessions", extra={"count": loaded})

    seen: set[int] = set()
    for channel in list(sequencer.gateway.onboarding_channels()):
        summary["channels"] += 1
        seen.add(channel.id)
        try:
            await _recover_channel(sequencer, channel, summary)
        except Exception:
            summary["errors"] += 1
            log.exception("onboarding recovery failed for channel", extra={"channel_id": channel.id})

    for session in sequencer.store.active_sessions():
        if session.channel_id in seen or bot.get_channel(session.channel_id) is not None:
            continue
        sequencer.store.end(session.channel_id, REMOVED)
        summary["closed"] += 1

    human_log.human("info", "onboarding recovery finished", **summary)
    await rt.send_log_message(
        LogTemplates.recovery(
            channels=summary["channels"],
            resumed=summary["resumed"],
            deleted=summary["deleted"],
            closed=summary["closed"],
        )
    )
    return summary
