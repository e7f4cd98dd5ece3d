"""Step kinds for the onboarding catalog.

Each step is an immutable value; its position in the catalog is its only
identity. Callbacks receive a :class:`StepContext` that carries the
collaborators a step may need (account lookup, channel gateway, role ids).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Union

import discord

if TYPE_CHECKING:  # pragma: no cover - typing only
    from modules.onboarding.channels import ChannelGateway
    from shared.accounts import Account

__all__ = [
    "ExternalPoll",
    "Informational",
    "ReactionGate",
    "Step",
    "StepContext",
    "TextAnswer",
]


@dataclass(frozen=True)
class StepContext:
    bot: Any
    gateway: "ChannelGateway"
    find_account: Callable[[int], Awaitable[Optional["Account"]]]
    introductions_role_id: int | None = None

    def refresh_member(self, member: discord.Member) -> discord.Member:
        """Return the cached member object (avatar and roles update in place)."""

        guild = getattr(member, "guild", None)
        getter = getattr(guild, "get_member", None)
        fresh = getter(member.id) if callable(getter) else None
        return fresh or member


SkipPredicate = Callable[[StepContext, discord.Member], Awaitable[bool]]


@dataclass(frozen=True)
class _StepBase:
    question: str
    help: str | None = None
    attachment: str | None = None
    success_message: str | None = None
    should_skip: SkipPredicate | None = None

    @property
    def process_immediately(self) -> bool:
        return False

    @property
    def expected_reaction(self) -> str | None:
        return None

    @property
    def kind(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class TextAnswer(_StepBase):
    """The member types an answer; ``validate`` may reject it."""

    validate: Callable[[str, discord.Member], Optional[str]] | None = None
    process: Callable[[StepContext, str, discord.Member, Any], Awaitable[None]] | None = None


@dataclass(frozen=True)
class ReactionGate(_StepBase):
    """The member passes by clicking ``emoji`` under the question."""

    emoji: str = "✅"

    @property
    def expected_reaction(self) -> str | None:
        return self.emoji


@dataclass(frozen=True)
class ExternalPoll(_StepBase):
    """Passes once ``condition`` holds; polled by a background task."""

    condition: Callable[[StepContext, discord.Member], Awaitable[bool]] | None = None
    on_ready: Callable[[StepContext, discord.Member, Any], Awaitable[None]] | None = None

    def __post_init__(self) -> None:
        if self.condition is None:
            raise ValueError("ExternalPoll steps need a condition")

    @property
    def process_immediately(self) -> bool:
        return True


@dataclass(frozen=True)
class Informational(_StepBase):
    """Posted and passed straight away."""

    @property
    def process_immediately(self) -> bool:
        return True


Step = Union[TextAnswer, ReactionGate, ExternalPoll, Informational]
