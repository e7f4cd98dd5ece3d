"""Pytest configuration for shared test fixtures."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import discord
import pytest


def _ensure_project_root_on_path(source_file: Path) -> None:
    """Add the repository root to ``sys.path`` when running from subpackages."""

    for candidate in [source_file.parent, *source_file.parents]:
        shared_dir = candidate / "shared"
        if shared_dir.is_dir():
            project_root = str(candidate)
            if project_root not in sys.path:
                sys.path.insert(0, project_root)
            break


_ensure_project_root_on_path(Path(__file__).resolve())

from shared.testing.environment import apply_required_test_environment

apply_required_test_environment()

from shared import health as healthmod
from shared.logs import _lifecycle_dedupe


@pytest.fixture(autouse=True)
def _reset_process_state():
    """Health components and lifecycle dedupe are process-wide."""

    healthmod.reset()
    _lifecycle_dedupe.clear()
    yield
    healthmod.reset()
    _lifecycle_dedupe.clear()


# --- discord fakes --------------------------------------------------------

_BASE_TIME = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def _http_error(cls, status: int, reason: str):
    return cls(SimpleNamespace(status=status, reason=reason), reason)


class FakeUser:
    def __init__(self, user_id: int, name: str = "user", *, bot: bool = False) -> None:
        self.id = user_id
        self.name = name
        self.bot = bot


class FakeMessage:
    def __init__(self, message_id: int, content: str, author: Any, channel: Any, created_at: datetime) -> None:
        self.id = message_id
        self.content = content
        self.author = author
        self.channel = channel
        self.guild = getattr(channel, "guild", None)
        self.created_at = created_at
        self.reactions: list[str] = []
        self.files: list[Any] = []
        self.embeds: list[Any] = []

    @property
    def jump_url(self) -> str:
        return f"https://discord.com/channels/{getattr(self.guild, 'id', '@me')}/{self.channel.id}/{self.id}"

    async def add_reaction(self, emoji: str) -> None:
        self.reactions.append(emoji)


class FakeChannel:
    def __init__(self, channel_id: int, name: str, guild: "FakeGuild", *, category_id: int | None = None) -> None:
        self.id = channel_id
        self.name = name
        self.guild = guild
        self.category_id = category_id
        self.messages: list[FakeMessage] = []
        self.permissions: dict[int, Any] = {}
        self.deleted = False
        self._clock = _BASE_TIME

    def _tick(self) -> datetime:
        self._clock = self._clock + timedelta(seconds=1)
        return self._clock

    def add_message(self, content: str, author: Any, *, created_at: datetime | None = None) -> FakeMessage:
        message = FakeMessage(
            self.guild.next_id(),
            content,
            author,
            self,
            created_at or self._tick(),
        )
        self.messages.append(message)
        return message

    async def send(self, content: str | None = None, *, file: Any = None, embed: Any = None) -> FakeMessage:
        message = self.add_message(content or "", self.guild.me)
        if file is not None:
            message.files.append(file)
        if embed is not None:
            message.embeds.append(embed)
        return message

    async def history(self, *, limit: int | None = None):
        newest_first = list(reversed(self.messages))
        for message in newest_first[:limit]:
            yield message

    async def fetch_message(self, message_id: int) -> FakeMessage:
        for message in self.messages:
            if message.id == message_id:
                return message
        raise _http_error(discord.NotFound, 404, "Unknown Message")

    async def set_permissions(self, target: Any, *, overwrite: Any = None, reason: str | None = None) -> None:
        self.permissions[target.id] = overwrite

    async def delete(self, *, reason: str | None = None) -> None:
        if self.deleted:
            raise _http_error(discord.NotFound, 404, "Unknown Channel")
        self.deleted = True
        if self in self.guild.text_channels:
            self.guild.text_channels.remove(self)

    def sent_texts(self) -> list[str]:
        return [message.content for message in self.messages if message.author is self.guild.me]


class FakeMember(FakeUser):
    def __init__(self, user_id: int, name: str, guild: "FakeGuild", *, avatar: Any = None, bot: bool = False) -> None:
        super().__init__(user_id, name, bot=bot)
        self.guild = guild
        self.avatar = avatar
        self.nick: str | None = None
        self.roles_added: list[int] = []
        self.dms: list[str] = []
        self.kicked: str | None = None
        self.fail_roles: BaseException | None = None
        self.fail_dm: BaseException | None = None
        self.fail_nick: BaseException | None = None

    async def edit(self, *, nick: str | None = None, reason: str | None = None) -> None:
        if self.fail_nick is not None:
            raise self.fail_nick
        self.nick = nick

    async def add_roles(self, *roles: Any, reason: str | None = None) -> None:
        if self.fail_roles is not None:
            raise self.fail_roles
        self.roles_added.extend(role.id for role in roles)

    async def send(self, content: str) -> None:
        if self.fail_dm is not None:
            raise self.fail_dm
        self.dms.append(content)

    async def kick(self, *, reason: str | None = None) -> None:
        self.kicked = reason or ""
        self.guild.members.pop(self.id, None)


class FakeGuild:
    def __init__(self, guild_id: int = 1000) -> None:
        self.id = guild_id
        self.members: dict[int, FakeMember] = {}
        self.text_channels: list[FakeChannel] = []
        self.default_role = FakeUser(guild_id, "@everyone")
        self.me = FakeUser(1, "Pumpkin", bot=True)
        self._ids = iter(range(5_000, 10_000_000))

    def next_id(self) -> int:
        return next(self._ids)

    def add_member(self, member_id: int, name: str = "alice", **kwargs: Any) -> FakeMember:
        member = FakeMember(member_id, name, self, **kwargs)
        self.members[member_id] = member
        return member

    def add_channel(self, name: str, *, category_id: int | None = None) -> FakeChannel:
        channel = FakeChannel(self.next_id(), name, self, category_id=category_id)
        self.text_channels.append(channel)
        return channel

    def get_member(self, member_id: int) -> FakeMember | None:
        return self.members.get(member_id)

    async def fetch_member(self, member_id: int) -> FakeMember:
        member = self.members.get(member_id)
        if member is None:
            raise _http_error(discord.NotFound, 404, "Unknown Member")
        return member

    def get_channel(self, channel_id: int) -> FakeChannel | None:
        for channel in self.text_channels:
            if channel.id == channel_id:
                return channel
        return None

    async def create_text_channel(
        self,
        name: str,
        *,
        category: Any = None,
        overwrites: Any = None,
        reason: str | None = None,
    ) -> FakeChannel:
        channel = self.add_channel(name, category_id=getattr(category, "id", None))
        channel.overwrites = overwrites
        return channel


class FakeBot:
    def __init__(self, *guilds: FakeGuild) -> None:
        self.guilds = list(guilds)
        self.user = guilds[0].me if guilds else FakeUser(1, "Pumpkin", bot=True)

    def get_channel(self, channel_id: int) -> FakeChannel | None:
        for guild in self.guilds:
            channel = guild.get_channel(channel_id)
            if channel is not None:
                return channel
        return None

    async def fetch_channel(self, channel_id: int) -> FakeChannel:
        channel = self.get_channel(channel_id)
        if channel is None:
            raise _http_error(discord.NotFound, 404, "Unknown Channel")
        return channel

    def get_guild(self, guild_id: int) -> FakeGuild | None:
        for guild in self.guilds:
            if guild.id == guild_id:
                return guild
        return None


@pytest.fixture
def fakes() -> SimpleNamespace:
    """Minimal stand-ins for the discord.py objects the bot touches."""

    return SimpleNamespace(
        BASE_TIME=_BASE_TIME,
        Bot=FakeBot,
        Channel=FakeChannel,
        Guild=FakeGuild,
        Member=FakeMember,
        Message=FakeMessage,
        User=FakeUser,
        http_error=_http_error,
    )
