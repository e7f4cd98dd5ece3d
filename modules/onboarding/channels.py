"""Channel gateway: naming, lifecycle and messaging for onboarding channels."""

from __future__ import annotations

import logging
import os
import re
from datetime import datetime
from typing import Any, Iterator, Optional, Sequence

import discord

from shared.config import (
    get_history_limit,
    get_onboarding_category_id,
    get_onboarding_channel_prefix,
)

__all__ = [
    "ERROR_MARKER",
    "INFO_MARKER",
    "ChannelGateway",
    "build_channel_name",
    "format_error",
    "is_marker",
    "parse_member_id",
]

log = logging.getLogger("pumpkin.onboarding.channels")

ERROR_MARKER = "❌"
INFO_MARKER = "ℹ️"

_MEMBER_ID_RE = re.compile(r"_([^_]+)$")
_SLUG_RE = re.compile(r"[^\w-]+", re.UNICODE)
_CHANNEL_NAME_MAX = 100


def build_channel_name(prefix: str, username: str, member_id: int) -> str:
    """Return ``<prefix><username>_<member_id>`` in Discord's channel-name shape."""

    suffix = f"_{int(member_id)}"
    slug = _SLUG_RE.sub("-", (username or "").strip().lower()).strip("-") or "member"
    room = max(1, _CHANNEL_NAME_MAX - len(prefix) - len(suffix))
    return f"{prefix}{slug[:room]}{suffix}"


def parse_member_id(name: str | None) -> Optional[int]:
    match = _MEMBER_ID_RE.search(name or "")
    if match is None:
        return None
    try:
        return int(match.group(1))
    except ValueError:
        return None


def format_error(member_id: int, text: str) -> str:
    return f"{ERROR_MARKER} <@{member_id}>, {text}"


def is_marker(content: str | None) -> bool:
    """System markers (errors, info lines) never count as the current question."""

    text = content or ""
    return ERROR_MARKER in text or INFO_MARKER in text


class ChannelGateway:
    """Thin wrapper over the discord.py calls the onboarding flow needs."""

    def __init__(
        self,
        bot: Any,
        *,
        prefix: str | None = None,
        category_id: int | None = None,
        history_limit: int | None = None,
    ) -> None:
        self.bot = bot
        self.prefix = prefix if prefix is not None else get_onboarding_channel_prefix()
        self.category_id = category_id if category_id is not None else get_onboarding_category_id()
        self.history_limit = history_limit or get_history_limit()

    # --- naming -----------------------------------------------------------
    def channel_name_for(self, member: discord.Member) -> str:
        return build_channel_name(self.prefix, member.name, member.id)

    def owner_id(self, channel: Any) -> Optional[int]:
        return parse_member_id(getattr(channel, "name", None))

    def is_onboarding_channel(self, channel: Any) -> bool:
        name = getattr(channel, "name", None)
        if not isinstance(name, str) or not name.startswith(self.prefix):
            return False
        if parse_member_id(name) is None:
            return False
        if self.category_id and getattr(channel, "category_id", None) != self.category_id:
            return False
        return True

    def onboarding_channels(self) -> Iterator[Any]:
        for guild in getattr(self.bot, "guilds", []) or []:
            for channel in getattr(guild, "text_channels", []) or []:
                if self.is_onboarding_channel(channel):
                    yield channel

    def find_channel_for(self, guild: Any, member_id: int) -> Optional[Any]:
        for channel in getattr(guild, "text_channels", []) or []:
            if self.is_onboarding_channel(channel) and self.owner_id(channel) == member_id:
                return channel
        return None

    # --- lifecycle --------------------------------------------------------
    async def create_channel(self, member: discord.Member) -> Any:
        guild = member.guild
        category = guild.get_channel(self.category_id) if self.category_id else None
        overwrites = {
            guild.default_role: discord.PermissionOverwrite(view_channel=False),
            member: discord.PermissionOverwrite(view_channel=True),
            guild.me: discord.PermissionOverwrite(
                view_channel=True,
                send_messages=True,
                manage_channels=True,
                add_reactions=True,
                attach_files=True,
            ),
        }
        return await guild.create_text_channel(
            self.channel_name_for(member),
            category=category,
            overwrites=overwrites,
            reason="Onboarding: member joined",
        )

    async def delete_channel(self, channel: Any, *, reason: str = "Onboarding finished") -> bool:
        """Delete ``channel``; ``False`` when it was already gone."""

        try:
            await channel.delete(reason=reason)
        except discord.NotFound:
            log.debug("onboarding channel already deleted", extra={"channel_id": channel.id})
            return False
        return True

    async def resolve_member(self, guild: Any, member_id: int) -> Optional[discord.Member]:
        member = guild.get_member(member_id)
        if member is not None:
            return member
        try:
            return await guild.fetch_member(member_id)
        except discord.NotFound:
            return None

    # --- permissions ------------------------------------------------------
    async def disable_input(self, channel: Any, member: Any) -> None:
        await channel.set_permissions(
            member,
            overwrite=discord.PermissionOverwrite(view_channel=True, send_messages=False),
            reason="Onboarding: waiting on reaction or external step",
        )

    async def enable_input(self, channel: Any, member: Any) -> None:
        await channel.set_permissions(
            member,
            overwrite=discord.PermissionOverwrite(view_channel=True),
            reason="Onboarding: input re-enabled",
        )

    # --- messaging --------------------------------------------------------
    async def send(self, channel: Any, content: str, *, attachment: str | None = None) -> Any:
        if attachment:
            if os.path.isfile(attachment):
                return await channel.send(content, file=discord.File(attachment))
            log.warning("onboarding attachment missing; sending text only", extra={"path": attachment})
        return await channel.send(content)

    async def send_error(self, channel: Any, member_id: int, text: str) -> Any:
        return await channel.send(format_error(member_id, text))

    async def react(self, message: Any, emoji: str) -> None:
        await message.add_reaction(emoji)

    async def recent_messages(self, channel: Any, *, limit: int | None = None) -> Sequence[Any]:
        """Return recent messages, newest first."""

        return [message async for message in channel.history(limit=limit or self.history_limit)]

    async def messages_since(self, channel: Any, since: datetime) -> Sequence[Any]:
        messages = await self.recent_messages(channel)
        return [message for message in messages if message.created_at > since]

    def is_bot_message(self, message: Any) -> bool:
        user = getattr(self.bot, "user", None)
        return user is not None and getattr(message.author, "id", None) == user.id
