import asyncio
import logging

import discord
import pytest

from modules.onboarding import catalog as default_catalog
from modules.onboarding.channels import ChannelGateway
from modules.onboarding.completion import ROLE_HINT, CompletionHandler
from modules.onboarding.errors import NoMatchingStep
from modules.onboarding.sequencer import GENERIC_HELP, StepSequencer
from modules.onboarding.sessions import COMPLETED, SessionStore
from modules.onboarding.steps import (
    ExternalPoll,
    Informational,
    ReactionGate,
    StepContext,
    TextAnswer,
)
from shared.accounts import Account

MEMBER_ID = 4242


def _build(fakes, *, catalog=None, account=None, avatar="a.png"):
    guild = fakes.Guild()
    bot = fakes.Bot(guild)
    member = guild.add_member(MEMBER_ID, "Alice", avatar=avatar)
    gateway = ChannelGateway(bot, prefix="welcome-", category_id=0, history_limit=50)
    store = SessionStore(persist=False)
    state = {"account": account, "tagged": []}

    async def find_account(_member_id):
        return state["account"]

    async def tag(email):
        state["tagged"].append(email)
        return "tagged"

    context = StepContext(bot=bot, gateway=gateway, find_account=find_account, introductions_role_id=4)
    completion = CompletionHandler(
        gateway,
        store,
        find_account=find_account,
        tag=tag,
        regular_role_id=2,
        pro_role_id=3,
    )
    sequencer = StepSequencer(
        bot,
        catalog=catalog,
        gateway=gateway,
        store=store,
        completion=completion,
        context=context,
        poll_interval=0.01,
    )
    return sequencer, guild, member, state


def _say(channel, member, text):
    return channel.add_message(text, member)


def test_start_creates_named_channel_and_posts_first_question(fakes):
    async def runner():
        sequencer, guild, member, _ = _build(fakes)
        channel = await sequencer.start(member)

        assert channel.name == f"welcome-alice_{MEMBER_ID}"
        assert channel.sent_texts() == [default_catalog.NAME_QUESTION]
        session = sequencer.store.get(channel.id)
        assert session.step_index == 0
        assert session.question_message_id == channel.messages[-1].id

    asyncio.run(runner())


def test_name_with_space_is_rejected_with_marker(fakes):
    async def runner():
        sequencer, guild, member, _ = _build(fakes)
        channel = await sequencer.start(member)

        await sequencer.handle_message(_say(channel, member, "Al Ice"))

        last = channel.sent_texts()[-1]
        assert last.startswith(f"❌ <@{MEMBER_ID}>,")
        assert '"Al Ice"' in last
        assert sequencer.store.get(channel.id).step_index == 0
        assert member.nick is None

        current = await sequencer.current_step(channel)
        assert current.index == 0

    asyncio.run(runner())


def test_full_flow_skips_satisfied_polls_and_completes(fakes):
    async def runner():
        account = Account(id="u1", email="alice@example.com", active=True)
        sequencer, guild, member, state = _build(fakes, account=account)
        channel = await sequencer.start(member)

        await sequencer.handle_message(_say(channel, member, "Alice"))
        assert member.nick == "Alice"
        texts = channel.sent_texts()
        assert "ℹ️  Nice to meet youu" in texts
        # Avatar and account link already satisfied; straight to the video.
        assert texts[-1] == default_catalog.VIDEO_QUESTION
        video = channel.messages[-1]
        assert video.reactions == ["✅"]
        assert channel.permissions[MEMBER_ID].send_messages is False

        await sequencer.handle_reaction(channel, MEMBER_ID, "✅", message_id=video.id)
        texts = channel.sent_texts()
        assert "ℹ️ Great!" in texts
        assert texts[-1] == default_catalog.INTRODUCTION_QUESTION
        assert 4 in member.roles_added
        intro = channel.messages[-1]

        await sequencer.handle_reaction(channel, MEMBER_ID, "✅", member=member, message_id=intro.id)

        assert channel.deleted
        assert 3 in member.roles_added and 2 in member.roles_added
        assert state["tagged"] == ["alice@example.com"]
        assert len(member.dms) == 1
        assert sequencer.store.get(channel.id).status == COMPLETED

    asyncio.run(runner())


def test_stale_or_wrong_reactions_are_ignored(fakes):
    async def runner():
        account = Account(id="u1", email="alice@example.com", active=False)
        sequencer, guild, member, _ = _build(fakes, account=account)
        channel = await sequencer.start(member)
        await sequencer.handle_message(_say(channel, member, "Alice"))
        video = channel.messages[-1]

        await sequencer.handle_reaction(channel, MEMBER_ID, "👍", message_id=video.id)
        await sequencer.handle_reaction(channel, 999, "✅", message_id=video.id)
        assert channel.sent_texts()[-1] == default_catalog.VIDEO_QUESTION

        await sequencer.handle_reaction(channel, MEMBER_ID, "✅", message_id=video.id)
        assert channel.sent_texts()[-1] == default_catalog.INTRODUCTION_QUESTION
        posted = len(channel.messages)

        # Second click on the old video question must not answer the intro step.
        await sequencer.handle_reaction(channel, MEMBER_ID, "✅", message_id=video.id)
        assert len(channel.messages) == posted
        assert not channel.deleted

    asyncio.run(runner())


def test_help_posts_step_help_and_generic_fallback(fakes):
    async def runner():
        steps = (
            TextAnswer(question="Q1", help="say your name"),
            TextAnswer(question="Q2"),
        )
        sequencer, guild, member, _ = _build(fakes, catalog=steps)
        channel = await sequencer.start(member)

        await sequencer.handle_message(_say(channel, member, "HELP"))
        assert channel.sent_texts()[-1] == f"❌ <@{MEMBER_ID}>, say your name"

        await sequencer.handle_message(_say(channel, member, "Alice"))
        assert channel.sent_texts()[-1] == "Q2"

        await sequencer.handle_message(_say(channel, member, "help"))
        assert channel.sent_texts()[-1] == f"❌ <@{MEMBER_ID}>, {GENERIC_HELP}"
        # Markers never become the current question.
        step, index, _ = await sequencer.locate_current_step(channel)
        assert index == 1 and step.question == "Q2"

    asyncio.run(runner())


def test_text_on_reaction_step_is_ignored(fakes):
    async def runner():
        steps = (ReactionGate(question="Click it"), TextAnswer(question="Q2"))
        sequencer, guild, member, _ = _build(fakes, catalog=steps)
        channel = await sequencer.start(member)

        await sequencer.handle_message(_say(channel, member, "✅"))

        assert channel.sent_texts() == ["Click it"]

    asyncio.run(runner())


def test_all_skipped_steps_complete_without_posting(fakes):
    async def runner():
        async def always(_context, _member):
            return True

        steps = (
            TextAnswer(question="Q1", should_skip=always),
            ReactionGate(question="Q2", should_skip=always),
        )
        sequencer, guild, member, _ = _build(fakes, catalog=steps)
        channel = await sequencer.start(member)

        assert channel.sent_texts() == []
        assert channel.deleted
        assert member.roles_added == [2]

    asyncio.run(runner())


def test_informational_steps_pass_straight_through(fakes):
    async def runner():
        steps = (
            Informational(question="Heads up", success_message="ℹ️ noted"),
            TextAnswer(question="Q2"),
        )
        sequencer, guild, member, _ = _build(fakes, catalog=steps)
        channel = await sequencer.start(member)

        assert channel.sent_texts() == ["Heads up", "ℹ️ noted", "Q2"]
        assert sequencer.store.get(channel.id).step_index == 1

    asyncio.run(runner())


def test_avatar_poll_advances_once_condition_holds(fakes):
    async def runner():
        sequencer, guild, member, state = _build(fakes, avatar=None)
        state["account"] = Account(id="u1", email="a@example.com", active=False)
        channel = await sequencer.start(member)
        await sequencer.handle_message(_say(channel, member, "Alice"))

        assert channel.sent_texts()[-1] == default_catalog.AVATAR_QUESTION
        assert channel.permissions[MEMBER_ID].send_messages is False
        waiter = sequencer.store.get(channel.id).waiter
        assert waiter is not None and not waiter.done()

        member.avatar = "new.png"
        for _ in range(50):
            await asyncio.sleep(0.01)
            if channel.sent_texts()[-1] == default_catalog.VIDEO_QUESTION:
                break

        assert channel.sent_texts()[-1] == default_catalog.VIDEO_QUESTION
        assert sequencer.store.get(channel.id).step_index == 3

    asyncio.run(runner())


def test_link_poll_announces_pro_members(fakes):
    async def runner():
        sequencer, guild, member, state = _build(fakes)
        channel = await sequencer.start(member)
        await sequencer.handle_message(_say(channel, member, "Alice"))
        assert channel.sent_texts()[-1] == default_catalog.LINK_QUESTION

        state["account"] = Account(id="u1", email="a@example.com", active=True)
        for _ in range(50):
            await asyncio.sleep(0.01)
            if channel.sent_texts()[-1] == default_catalog.VIDEO_QUESTION:
                break

        texts = channel.sent_texts()
        assert default_catalog.PRO_MEMBER_MESSAGE in texts
        assert "ℹ️ Fantastik!" in texts
        assert texts[-1] == default_catalog.VIDEO_QUESTION

    asyncio.run(runner())


def test_member_remove_cancels_poll_and_deletes_channel(fakes):
    async def runner():
        sequencer, guild, member, _ = _build(fakes, avatar=None)
        channel = await sequencer.start(member)
        await sequencer.handle_message(_say(channel, member, "Alice"))
        waiter = sequencer.store.get(channel.id).waiter

        assert await sequencer.handle_member_remove(member)
        await asyncio.sleep(0.02)

        assert channel.deleted
        assert waiter.cancelled() or waiter.done()
        assert not sequencer.store.get(channel.id).active

    asyncio.run(runner())


def test_locate_current_step_uses_newest_bot_question(fakes):
    async def runner():
        steps = (TextAnswer(question="Q1"), TextAnswer(question="Q2"), TextAnswer(question="Q3"))
        sequencer, guild, member, _ = _build(fakes, catalog=steps)
        channel = guild.add_channel(f"welcome-alice_{MEMBER_ID}")
        channel.add_message("Q1", guild.me)
        channel.add_message("Alice", member)
        channel.add_message("Q2", guild.me)
        channel.add_message("ℹ️ ok", guild.me)
        channel.add_message(f"❌ <@{MEMBER_ID}>, nope", guild.me)

        step, index, message = await sequencer.locate_current_step(channel)

        assert index == 1
        assert step.question == "Q2"
        assert message.content == "Q2"

    asyncio.run(runner())


def test_locate_current_step_raises_on_unknown_question(fakes):
    async def runner():
        sequencer, guild, member, _ = _build(fakes)
        channel = guild.add_channel(f"welcome-alice_{MEMBER_ID}")
        channel.add_message("Something the catalog never asked", guild.me)

        with pytest.raises(NoMatchingStep) as excinfo:
            await sequencer.locate_current_step(channel)
        assert excinfo.value.channel_id == channel.id

        empty = guild.add_channel(f"welcome-bob_{MEMBER_ID + 1}")
        with pytest.raises(NoMatchingStep):
            await sequencer.locate_current_step(empty)

    asyncio.run(runner())


def test_external_poll_requires_condition():
    with pytest.raises(ValueError):
        ExternalPoll(question="waiting")


def test_name_with_line_break_is_rejected():
    assert default_catalog.validate_first_name("Al\nice", None) is not None
    assert default_catalog.validate_first_name("Al\tice", None) is not None
    assert default_catalog.validate_first_name("  Alice \n", None) is None


def test_duplicate_answers_delivered_together_advance_once(fakes):
    async def runner():
        account = Account(id="u1", email="alice@example.com", active=True)
        sequencer, guild, member, _ = _build(fakes, account=account)
        channel = await sequencer.start(member)

        await asyncio.gather(
            sequencer.handle_message(_say(channel, member, "Alice")),
            sequencer.handle_message(_say(channel, member, "Alice")),
        )

        texts = channel.sent_texts()
        assert texts.count("ℹ️  Nice to meet youu") == 1
        assert texts.count(default_catalog.VIDEO_QUESTION) == 1
        assert not any(text.startswith("❌") for text in texts)
        assert sequencer.store.get(channel.id).step_index == 3

    asyncio.run(runner())


def test_nickname_rejected_by_discord_does_not_stop_the_flow(fakes):
    async def runner():
        account = Account(id="u1", email="alice@example.com", active=True)
        sequencer, guild, member, _ = _build(fakes, account=account)
        member.fail_nick = fakes.http_error(discord.HTTPException, 400, "Invalid Form Body")
        channel = await sequencer.start(member)

        await sequencer.handle_message(_say(channel, member, "Alice"))

        assert member.nick is None
        assert channel.sent_texts()[-1] == default_catalog.VIDEO_QUESTION

    asyncio.run(runner())


def test_introductions_role_failure_still_posts_last_question(fakes, caplog):
    async def runner():
        account = Account(id="u1", email="alice@example.com", active=True)
        sequencer, guild, member, _ = _build(fakes, account=account)
        channel = await sequencer.start(member)
        await sequencer.handle_message(_say(channel, member, "Alice"))
        video = channel.messages[-1]
        member.fail_roles = fakes.http_error(discord.Forbidden, 403, "Missing Permissions")

        await sequencer.handle_reaction(channel, MEMBER_ID, "✅", message_id=video.id)

        assert channel.sent_texts()[-1] == default_catalog.INTRODUCTION_QUESTION
        assert sequencer.store.get(channel.id).step_index == 4
        assert sequencer.store.get(channel.id).active
        assert member.roles_added == []

    caplog.set_level(logging.ERROR, logger="pumpkin.onboarding.catalog")
    asyncio.run(runner())

    assert any(ROLE_HINT in record.getMessage() for record in caplog.records)
