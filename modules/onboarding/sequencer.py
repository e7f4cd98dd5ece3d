"""Step sequencer: resolves, validates and advances each member's onboarding step."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence, Tuple

import discord

from modules.onboarding import logs as onboarding_logs
from modules.onboarding.catalog import build_default_catalog
from modules.onboarding.channels import ChannelGateway, format_error, is_marker
from modules.onboarding.completion import CompletionHandler
from modules.onboarding.errors import NoMatchingStep
from modules.onboarding.sessions import REMOVED, SessionStore
from modules.onboarding.steps import (
    ExternalPoll,
    Informational,
    ReactionGate,
    Step,
    StepContext,
    TextAnswer,
)
from shared.accounts import find_linked_account
from shared.config import get_introductions_role_id, get_poll_interval_sec

__all__ = ["GENERIC_HELP", "CurrentStep", "StepSequencer"]

log = logging.getLogger("pumpkin.onboarding.sequencer")

GENERIC_HELP = "follow the instructions in the message above to continue. Write **help** at any time to see this again."


@dataclass(frozen=True)
class CurrentStep:
    step: Step
    index: int
    question_message_id: int | None
    posted_at: datetime | None


class StepSequencer:
    """Drives one onboarding channel at a time.

    Entry points (``start``, ``handle_message``, ``handle_reaction``,
    ``resume``, ``handle_member_remove`` and the poll tasks) hold the channel's
    lock for the whole transition and re-resolve the current step after
    acquiring it. ``submit_answer`` and ``advance_to`` expect the caller to
    hold that lock already.
    """

    def __init__(
        self,
        bot: Any,
        *,
        catalog: Sequence[Step] | None = None,
        gateway: ChannelGateway | None = None,
        store: SessionStore | None = None,
        completion: CompletionHandler | None = None,
        context: StepContext | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self.bot = bot
        self.catalog: Tuple[Step, ...] = tuple(catalog if catalog is not None else build_default_catalog())
        self.gateway = gateway or ChannelGateway(bot)
        self.store = store or SessionStore()
        self.context = context or StepContext(
            bot=bot,
            gateway=self.gateway,
            find_account=find_linked_account,
            introductions_role_id=get_introductions_role_id(),
        )
        self.completion = completion or CompletionHandler(
            self.gateway, self.store, find_account=self.context.find_account
        )
        self.poll_interval = poll_interval if poll_interval is not None else get_poll_interval_sec()

    # --- resolution -------------------------------------------------------
    async def locate_current_step(self, channel: Any) -> Tuple[Step, int, Any]:
        """Match the newest non-marker bot message against the catalog."""

        for message in await self.gateway.recent_messages(channel):
            if not self.gateway.is_bot_message(message):
                continue
            content = message.content or ""
            if is_marker(content):
                continue
            for index, step in enumerate(self.catalog):
                if step.question == content:
                    return step, index, message
            raise NoMatchingStep(channel.id, content)
        raise NoMatchingStep(channel.id)

    async def current_step(self, channel: Any) -> CurrentStep:
        session = self.store.get(channel.id)
        if (
            session is not None
            and session.active
            and session.question_posted_at is not None
            and 0 <= session.step_index < len(self.catalog)
        ):
            return CurrentStep(
                step=self.catalog[session.step_index],
                index=session.step_index,
                question_message_id=session.question_message_id,
                posted_at=session.question_posted_at,
            )

        step, index, message = await self.locate_current_step(channel)
        owner_id = self.gateway.owner_id(channel)
        if owner_id is not None:
            self.store.record_question(
                channel.id,
                owner_id,
                index,
                message_id=message.id,
                posted_at=message.created_at,
            )
        return CurrentStep(
            step=step,
            index=index,
            question_message_id=message.id,
            posted_at=message.created_at,
        )

    # --- transitions ------------------------------------------------------
    async def submit_answer(
        self,
        step: Step,
        index: int,
        channel: Any,
        member: discord.Member,
        answer: str,
    ) -> bool:
        """Validate and process ``answer`` then advance; ``False`` when rejected."""

        if isinstance(step, TextAnswer):
            if step.validate is not None:
                error = step.validate(answer, member)
                if error:
                    await self.gateway.send_error(channel, member.id, error)
                    onboarding_logs.lifecycle("answer_rejected", channel_id=channel.id, step=index)
                    return False
            if step.process is not None:
                await step.process(self.context, answer, member, channel)
        elif isinstance(step, ExternalPoll):
            if step.on_ready is not None:
                await step.on_ready(self.context, member, channel)

        if step.success_message:
            await self.gateway.send(channel, step.success_message)
        await self.advance_to(index + 1, channel, member)
        return True

    async def advance_to(self, index: int, channel: Any, member: discord.Member) -> None:
        while index < len(self.catalog):
            step = self.catalog[index]
            if step.should_skip is not None and await step.should_skip(self.context, member):
                log.debug("step skipped", extra={"channel_id": channel.id, "step": index})
                index += 1
                continue

            message = await self.gateway.send(channel, step.question, attachment=step.attachment)
            self.store.record_question(
                channel.id,
                member.id,
                index,
                message_id=message.id,
                posted_at=message.created_at,
            )
            onboarding_logs.lifecycle(
                "step_posted", channel_id=channel.id, step=index, kind=step.kind
            )

            if isinstance(step, ReactionGate):
                await self.gateway.disable_input(channel, member)
                await self.gateway.react(message, step.emoji)
            elif isinstance(step, ExternalPoll):
                await self.gateway.disable_input(channel, member)
                self._arm_poll(step, index, channel, member)
            elif isinstance(step, Informational):
                await self.submit_answer(step, index, channel, member, "")
            return

        await self.completion.complete(channel, member)

    # --- external condition waits ----------------------------------------
    def _arm_poll(self, step: ExternalPoll, index: int, channel: Any, member: discord.Member) -> asyncio.Task:
        task = asyncio.create_task(
            self._await_condition(step, index, channel, member),
            name=f"onboarding_poll:{channel.id}:{index}",
        )
        self.store.attach_waiter(channel.id, task)
        return task

    async def _await_condition(
        self, step: ExternalPoll, index: int, channel: Any, member: discord.Member
    ) -> None:
        try:
            while True:
                try:
                    ready = await step.condition(self.context, member)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    log.warning(
                        "onboarding condition check failed",
                        extra={"channel_id": channel.id, "step": index, "error": repr(exc)},
                    )
                    ready = False
                if ready:
                    break
                await asyncio.sleep(self.poll_interval)

            async with self.store.lock_for(channel.id):
                session = self.store.get(channel.id)
                if session is None or not session.active or session.step_index != index:
                    return
                await self.gateway.enable_input(channel, member)
                await self.submit_answer(step, index, channel, member, "")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.exception("onboarding poll failed", extra={"channel_id": channel.id, "step": index})
            await onboarding_logs.report("error", channel=channel, member_id=member.id, step=index, reason=exc)

    # --- entry points -----------------------------------------------------
    async def start(self, member: discord.Member) -> Any:
        """Create the member's channel and post the first applicable step."""

        channel = await self.gateway.create_channel(member)
        self.store.open(channel.id, member.id)
        onboarding_logs.lifecycle("channel_created", channel_id=channel.id, member_id=member.id)
        async with self.store.lock_for(channel.id):
            await self.advance_to(0, channel, member)
        return channel

    async def handle_message(self, message: discord.Message) -> None:
        channel = message.channel
        owner_id = self.gateway.owner_id(channel)
        if owner_id is None or message.author.id != owner_id:
            return

        async with self.store.lock_for(channel.id):
            session = self.store.get(channel.id)
            if session is not None and not session.active:
                return
            current = await self.current_step(channel)
            content = message.content or ""

            if content.strip().lower() == "help":
                text = current.step.help or GENERIC_HELP
                await self.gateway.send_error(channel, owner_id, text)
                session = self.store.get(channel.id)
                if session is not None:
                    session.notices.add(format_error(owner_id, text))
                return

            if isinstance(current.step, (ReactionGate, ExternalPoll)):
                log.debug("text ignored on non-text step", extra={"channel_id": channel.id, "step": current.index})
                return

            await self.submit_answer(current.step, current.index, channel, message.author, content)

    async def handle_reaction(
        self,
        channel: Any,
        user_id: int,
        emoji: str,
        *,
        member: discord.Member | None = None,
        message_id: int | None = None,
    ) -> None:
        owner_id = self.gateway.owner_id(channel)
        if owner_id is None or user_id != owner_id:
            return

        async with self.store.lock_for(channel.id):
            session = self.store.get(channel.id)
            if session is not None and not session.active:
                return
            current = await self.current_step(channel)
            step = current.step
            if step.process_immediately:
                return
            expected = step.expected_reaction
            if expected is not None:
                if emoji != expected:
                    return
                # Stale clicks on an earlier question never answer the current one.
                if (
                    message_id is not None
                    and current.question_message_id is not None
                    and message_id != current.question_message_id
                ):
                    return

            if member is None:
                member = await self.gateway.resolve_member(channel.guild, user_id)
                if member is None:
                    return
            await self.gateway.enable_input(channel, member)
            await self.submit_answer(step, current.index, channel, member, emoji)

    async def resume(self, channel: Any, member: discord.Member) -> Optional[CurrentStep]:
        """Re-arm steps that proceed on their own (after a restart)."""

        async with self.store.lock_for(channel.id):
            session = self.store.get(channel.id)
            if session is not None and not session.active:
                return None
            current = await self.current_step(channel)
            step = current.step
            if isinstance(step, ExternalPoll):
                await self.gateway.disable_input(channel, member)
                self._arm_poll(step, current.index, channel, member)
            elif isinstance(step, Informational):
                await self.submit_answer(step, current.index, channel, member, "")
            return current

    async def handle_member_remove(self, member: discord.Member) -> bool:
        session = self.store.find_by_member(member.id)
        channel = None
        if session is not None:
            channel = self.bot.get_channel(session.channel_id)
        if channel is None:
            channel = self.gateway.find_channel_for(member.guild, member.id)
        if channel is None and session is None:
            return False

        channel_id = channel.id if channel is not None else session.channel_id
        async with self.store.lock_for(channel_id):
            self.store.end(channel_id, REMOVED, member_id=member.id)
            if channel is not None:
                await self.gateway.delete_channel(channel, reason="Onboarding: member left")
        onboarding_logs.lifecycle("member_left", channel_id=channel_id, member_id=member.id)
        return True

    def shutdown(self) -> None:
        self.store.cancel_all()
