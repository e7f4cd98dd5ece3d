"""Completion handler: roles, marketing tag, channel cleanup and the welcome DM."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

import discord

from modules.onboarding import logs as onboarding_logs
from modules.onboarding.sessions import COMPLETED, SessionStore
from shared.accounts import Account, find_linked_account
from shared.config import get_pro_role_id, get_regular_member_role_id
from shared.logfmt import human_reason
from shared.marketing import tag_member

if TYPE_CHECKING:  # pragma: no cover - typing only
    from modules.onboarding.channels import ChannelGateway

__all__ = ["ROLE_HINT", "WELCOME_DM", "CompletionHandler"]

log = logging.getLogger("pumpkin.onboarding.completion")

ROLE_HINT = (
    "This normally happens because the bot is missing the Manage Roles permission, "
    "or because the bot's role sits below the role it is granting in the role list."
)

WELCOME_DM = """Welcome to the Scrimba Discord community 👋

Joining a new Discord server can feel overwhelming, so we've gathered the most important information for you here.

**Step 1: Check out the most important channels**
In our community, you should first #👋introduce-yourself. Then, feel free to ask for #💼career-advice, and please #💻share-your-code if you have written something you're proud of. Finally, we also have a whole section dedicated to giving and getting coding help (more info below). You can also head over to one of our help channels if you're stuck, like #css-help, #javascript-help, or #react-help.

**Step 2: Remember to be nice**
We aim to be the friendliest space for developers to hang out. This means that there's no room for negativity, harsh criticism or bullying. If you misbehave, you will be given a warning and a 24 hour ban. If you misbehave once more, we'll need to ban you permanently.

We're excited to have you here!"""


class CompletionHandler:
    def __init__(
        self,
        gateway: "ChannelGateway",
        store: SessionStore,
        *,
        find_account: Callable[[int], Awaitable[Optional[Account]]] = find_linked_account,
        tag: Callable[[str], Awaitable[Any]] = tag_member,
        regular_role_id: int | None = None,
        pro_role_id: int | None = None,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.find_account = find_account
        self.tag = tag
        self.regular_role_id = regular_role_id if regular_role_id is not None else get_regular_member_role_id()
        self.pro_role_id = pro_role_id if pro_role_id is not None else get_pro_role_id()

    async def complete(self, channel: Any, member: discord.Member) -> bool:
        """Finish onboarding for ``member``; ``False`` when it had already finished."""

        session = self.store.get(channel.id)
        if session is not None and session.status == COMPLETED:
            log.info("onboarding already completed", extra={"channel_id": channel.id, "member_id": member.id})
            await self._delete(channel)
            return False

        account = await self._lookup(member)
        if account is not None and account.active:
            await self._grant(member, self.pro_role_id, "pro")
        if account is not None:
            await self._tag(account)
        await self._grant(member, self.regular_role_id, "regular")

        self.store.end(channel.id, COMPLETED, member_id=member.id)
        await self._delete(channel)
        await self._welcome(member)

        onboarding_logs.lifecycle("completed", channel_id=channel.id, member_id=member.id, pro=bool(account and account.active))
        await onboarding_logs.report("completed", channel=channel, member_id=member.id)
        return True

    async def _lookup(self, member: discord.Member) -> Optional[Account]:
        try:
            return await self.find_account(member.id)
        except Exception:
            log.exception("linked account lookup failed", extra={"member_id": member.id})
            return None

    async def _grant(self, member: discord.Member, role_id: int | None, label: str) -> bool:
        if not role_id:
            log.warning("role not configured; skipping grant", extra={"role": label})
            return False
        try:
            await member.add_roles(discord.Object(id=role_id), reason=f"Onboarding complete ({label})")
        except discord.HTTPException as exc:
            log.error(
                "failed to grant %s role: %s. %s",
                label,
                human_reason(exc),
                ROLE_HINT,
                extra={"member_id": member.id, "role_id": role_id},
            )
            return False
        return True

    async def _tag(self, account: Account) -> None:
        try:
            await self.tag(account.email)
        except Exception:
            # Roles already granted stay granted.
            log.exception("marketing tag failed", extra={"account_id": str(account.id)})

    async def _delete(self, channel: Any) -> None:
        # The welcome DM still goes out when the channel survives.
        try:
            await self.gateway.delete_channel(channel, reason="Onboarding complete")
        except discord.HTTPException as exc:
            log.error("failed to delete onboarding channel: %s", human_reason(exc), extra={"channel_id": channel.id})

    async def _welcome(self, member: discord.Member) -> None:
        try:
            await member.send(WELCOME_DM)
        except discord.HTTPException as exc:
            log.warning("welcome DM not delivered: %s", human_reason(exc), extra={"member_id": member.id})
