"""Discord event wiring for the onboarding flow."""

from __future__ import annotations

import logging
from typing import Any

import discord
from discord.ext import commands

from modules.onboarding import logs as onboarding_logs
from modules.onboarding.errors import NoMatchingStep
from modules.onboarding.idle_watcher import ensure_idle_watcher
from modules.onboarding.sequencer import StepSequencer
from modules.onboarding.startup import recover_onboarding
from shared.config import is_guild_allowed
from shared.logging import set_trace_id

log = logging.getLogger("pumpkin.onboarding.cog")


class OnboardingCog(commands.Cog):
    def __init__(self, bot: commands.Bot, sequencer: StepSequencer | None = None) -> None:
        self.bot = bot
        self.sequencer = sequencer or StepSequencer(bot)
        self._recovered = False

    async def cog_unload(self) -> None:
        self.sequencer.shutdown()
        await self.sequencer.store.flush()

    async def _report_failure(self, event: str, channel: Any, member_id: int | None, exc: BaseException) -> None:
        if isinstance(exc, NoMatchingStep):
            log.error(
                "onboarding channel has no matching step",
                extra={"event": event, "channel_id": getattr(channel, "id", None), "text": exc.text},
            )
            reason: object = str(exc)
        else:
            log.exception(
                "onboarding handler failed",
                extra={"event": event, "channel_id": getattr(channel, "id", None)},
                exc_info=exc,
            )
            reason = exc
        if channel is not None:
            await onboarding_logs.report("error", channel=channel, member_id=member_id, reason=reason)

    @commands.Cog.listener()
    async def on_ready(self) -> None:
        if self._recovered:
            return
        self._recovered = True
        set_trace_id()
        try:
            await recover_onboarding(self.bot, self.sequencer)
        except Exception:
            log.exception("onboarding recovery failed")
        await ensure_idle_watcher(self.bot, self.sequencer)

    @commands.Cog.listener()
    async def on_member_join(self, member: discord.Member) -> None:
        if member.bot or not is_guild_allowed(member.guild.id):
            return
        set_trace_id()
        channel = None
        try:
            channel = await self.sequencer.start(member)
        except Exception as exc:
            await self._report_failure("member_join", channel, member.id, exc)
            return
        await onboarding_logs.report("joined", channel=channel, member_id=member.id)

    @commands.Cog.listener()
    async def on_member_remove(self, member: discord.Member) -> None:
        if not is_guild_allowed(member.guild.id):
            return
        set_trace_id()
        try:
            await self.sequencer.handle_member_remove(member)
        except Exception:
            log.exception("onboarding cleanup failed", extra={"member_id": member.id})

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or message.guild is None:
            return
        channel = message.channel
        if not self.sequencer.gateway.is_onboarding_channel(channel):
            return
        set_trace_id()
        try:
            await self.sequencer.handle_message(message)
        except Exception as exc:
            await self._report_failure("message", channel, message.author.id, exc)

    @commands.Cog.listener()
    async def on_raw_reaction_add(self, payload: discord.RawReactionActionEvent) -> None:
        if payload.guild_id is None:
            return
        if payload.user_id == getattr(self.bot.user, "id", None):
            return
        channel = self.bot.get_channel(payload.channel_id)
        if channel is None or not self.sequencer.gateway.is_onboarding_channel(channel):
            return
        set_trace_id()
        try:
            await self.sequencer.handle_reaction(
                channel,
                payload.user_id,
                str(payload.emoji.name or payload.emoji),
                member=payload.member,
                message_id=payload.message_id,
            )
        except Exception as exc:
            await self._report_failure("reaction", channel, payload.user_id, exc)
