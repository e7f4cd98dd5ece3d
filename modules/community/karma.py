"""Reaction karma: one point per member per message, announced in a notifications channel."""

from __future__ import annotations

import logging
from typing import Any, Optional

import discord
from discord.ext import commands

from modules.common.embeds import get_embed_colour
from shared import db
from shared.config import get_karma_channel_id, get_karma_emoji
from shared.logs import log_lifecycle

log = logging.getLogger("pumpkin.community.karma")

_EXISTS_SQL = 'SELECT 1 FROM reputations WHERE "from" = $1 AND "messageId" = $2 LIMIT 1'
_INSERT_SQL = 'INSERT INTO reputations (points, "from", "to", "messageId") VALUES ($1, $2, $3, $4)'
_TOTAL_SQL = 'SELECT COALESCE(SUM(points), 0) FROM reputations WHERE "to" = $1'


async def award_point(pool: Any, *, giver_id: int, receiver_id: int, message_id: int) -> Optional[int]:
    """Record one point; returns the receiver's new total, ``None`` for a repeat reward."""

    async with pool.acquire() as conn:
        async with conn.transaction():
            already = await conn.fetchval(_EXISTS_SQL, str(giver_id), str(message_id))
            if already:
                return None
            await conn.execute(_INSERT_SQL, 1, str(giver_id), str(receiver_id), str(message_id))
            total = await conn.fetchval(_TOTAL_SQL, str(receiver_id))
    return int(total or 0)


def build_karma_embed(*, giver_id: int, receiver_id: int, message: Any, total: int, emoji: str) -> discord.Embed:
    description = (
        f"Well done <@{receiver_id}>! <@{giver_id}> reacted to your [post]({message.jump_url}) "
        f"in <#{message.channel.id}> with {emoji} which earned you a point.\n\n"
        f"You now have {total} karma!"
    )
    return discord.Embed(description=description, colour=get_embed_colour("karma"))


class KarmaCog(commands.Cog):
    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot

    async def _resolve_channel(self, channel_id: int) -> Any:
        channel = self.bot.get_channel(channel_id)
        if channel is not None:
            return channel
        try:
            return await self.bot.fetch_channel(channel_id)
        except discord.HTTPException:
            log.exception("karma channel lookup failed", extra={"channel_id": channel_id})
            return None

    @commands.Cog.listener()
    async def on_raw_reaction_add(self, payload: discord.RawReactionActionEvent) -> None:
        emoji = get_karma_emoji()
        if str(payload.emoji.name or payload.emoji) != emoji:
            return
        if payload.guild_id is None:
            return
        if payload.user_id == getattr(self.bot.user, "id", None):
            return
        notifications_id = get_karma_channel_id()
        if not notifications_id:
            return
        pool = db.get_pool()
        if pool is None:
            log.debug("karma skipped: identity store unavailable")
            return

        source = await self._resolve_channel(payload.channel_id)
        if source is None:
            return
        try:
            message = await source.fetch_message(payload.message_id)
        except discord.NotFound:
            return

        author = message.author
        if author.id == payload.user_id or getattr(author, "bot", False):
            return

        total = await award_point(
            pool,
            giver_id=payload.user_id,
            receiver_id=author.id,
            message_id=message.id,
        )
        if total is None:
            log.debug(
                "karma already awarded",
                extra={"from": payload.user_id, "message_id": message.id},
            )
            return

        log_lifecycle(
            log,
            "karma",
            "awarded",
            dedupe=False,
            to=author.id,
            total=total,
        )
        notifications = await self._resolve_channel(notifications_id)
        if notifications is None:
            return
        embed = build_karma_embed(
            giver_id=payload.user_id,
            receiver_id=author.id,
            message=message,
            total=total,
            emoji=emoji,
        )
        try:
            await notifications.send(embed=embed)
        except discord.HTTPException:
            log.exception("karma notification failed", extra={"channel_id": notifications_id})


async def setup(bot: commands.Bot) -> None:
    if bot.get_cog("KarmaCog") is not None:
        return
    await bot.add_cog(KarmaCog(bot))
