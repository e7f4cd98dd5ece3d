"""Default onboarding catalog: name, avatar, account link, video, introduction."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional, Sequence

import discord

from modules.onboarding.completion import ROLE_HINT
from modules.onboarding.steps import (
    ExternalPoll,
    ReactionGate,
    Step,
    StepContext,
    TextAnswer,
)
from shared.logfmt import human_reason

__all__ = [
    "AVATAR_EXAMPLE_PATH",
    "CONNECT_URL",
    "PRO_MEMBER_MESSAGE",
    "WELCOME_VIDEO_URL",
    "build_default_catalog",
    "validate_first_name",
]

log = logging.getLogger("pumpkin.onboarding.catalog")

AVATAR_EXAMPLE_PATH = str(Path(__file__).resolve().parent / "assets" / "avatar_example.png")
CONNECT_URL = "https://scrimba.com/discord/connect"
WELCOME_VIDEO_URL = "https://youtu.be/lPIi430q5fk"
PRO_MEMBER_MESSAGE = (
    "ℹ️ Oh! You are a PRO member. I will add a special badge to your profile! "
    "https://media.giphy.com/media/g9582DNuQppxC/giphy.gif"
)

_NICKNAME_MAX = 32

NAME_QUESTION = """Meow! Welcome to the Scrimba community!

I am Scrimba's mascot, Pumpkin, and I am here to lend you a helping paw in joining Scrimba Discord community.

Right now, you can only see a couple of channels 😢.

There are *tonne* more to see, which I will unlock for you once you answer some questions.

First, **what is your first name?**"""

NAME_HELP = """it's been a minute, and I still don't know your name 👉🥺👈.

Write your first name below and press ENTER to continue."""

AVATAR_QUESTION = """I couldn't help but notice you don't have a profile picture.

Please take a moment to set a Discord profile picture - it makes the communication feel more personal.

I will automatically detect when you've set a profile picture then send you the next step."""

AVATAR_HELP = (
    "**Please take a moment to set a Discord profile picture**. Not sure how? Check out this article, "
    "https://www.businessinsider.com/how-to-change-discord-picture?r=US&IR=T"
)

LINK_QUESTION = f"""Next, please take a moment to connect your Scrimba and Discord accounts: {CONNECT_URL}

I will automatically detect when you click **Authorize** then send you the next step."""

LINK_HELP = """**Please take a moment to connect your Scrimba and Discord account**.

If you don't have a Scrimba account yet, create a free account here: https://scrimba.com.

If you clicked **Authorize** but nothing happened, please ensure you are not logged in to a different Discord account in your web browser."""

VIDEO_QUESTION = f"""Please watch this welcome video then click the ✅ emoji beneath to move on to the final step.

{WELCOME_VIDEO_URL}"""

INTRODUCTION_QUESTION = """I just unlocked a channel called #introduce-yourself for you. Do you see it?

We ask all new members to introduce themselves. You can read about other new members then please write your own introduction!

You can introduce yourself any way you like but here's a template to make it easy. Just replace the `...` bits with your own information:

```
Hello 👋

My name is ... and I am from ...!

I am currently working/unemployed/studying at ...

When I am not coding, I enjoy ....

Looking forward to become a part of this epic/awesome/friendly community 🤩 🙏
```
Once you've done that, come back here and click the ✅ emoji beneath to unlock the whole server."""


def validate_first_name(answer: str, _member: discord.Member) -> Optional[str]:
    text = answer.strip()
    if not text:
        return "please write your first name below and press ENTER."
    if any(char.isspace() for char in text):
        return f'you wrote "{answer}" but that answer includes a space or line break. What is your *first* name, please?'
    if len(text) > _NICKNAME_MAX:
        return f"that name is longer than {_NICKNAME_MAX} characters. What is your *first* name, please?"
    return None


async def _set_nickname(_context: StepContext, answer: str, member: discord.Member, _channel: Any) -> None:
    try:
        await member.edit(nick=answer.strip(), reason="Onboarding: first name")
    except discord.HTTPException as exc:
        # Owners and members above the bot's role cannot be renamed.
        log.warning("nickname not set: %s", human_reason(exc), extra={"member_id": member.id})


async def _has_avatar(context: StepContext, member: discord.Member) -> bool:
    return context.refresh_member(member).avatar is not None


async def _has_linked_account(context: StepContext, member: discord.Member) -> bool:
    return await context.find_account(member.id) is not None


async def _announce_pro(context: StepContext, member: discord.Member, channel: Any) -> None:
    account = await context.find_account(member.id)
    if account is not None and account.active:
        await context.gateway.send(channel, PRO_MEMBER_MESSAGE)


async def _unlock_introductions(context: StepContext, member: discord.Member) -> bool:
    # Runs before the question is posted; never skips.
    role_id = context.introductions_role_id
    if not role_id:
        return False
    try:
        await member.add_roles(discord.Object(id=role_id), reason="Onboarding: unlock introductions")
    except discord.HTTPException as exc:
        log.error(
            "failed to grant introductions role: %s. %s",
            human_reason(exc),
            ROLE_HINT,
            extra={"member_id": member.id, "role_id": role_id},
        )
    return False


def build_default_catalog() -> Sequence[Step]:
    return (
        TextAnswer(
            question=NAME_QUESTION,
            help=NAME_HELP,
            validate=validate_first_name,
            process=_set_nickname,
            success_message="ℹ️  Nice to meet youu",
        ),
        ExternalPoll(
            question=AVATAR_QUESTION,
            help=AVATAR_HELP,
            attachment=AVATAR_EXAMPLE_PATH,
            should_skip=_has_avatar,
            condition=_has_avatar,
        ),
        ExternalPoll(
            question=LINK_QUESTION,
            help=LINK_HELP,
            should_skip=_has_linked_account,
            condition=_has_linked_account,
            on_ready=_announce_pro,
            success_message="ℹ️ Fantastik!",
        ),
        ReactionGate(
            question=VIDEO_QUESTION,
            emoji="✅",
            success_message="ℹ️ Great!",
        ),
        ReactionGate(
            question=INTRODUCTION_QUESTION,
            emoji="✅",
            should_skip=_unlock_introductions,
        ),
    )
