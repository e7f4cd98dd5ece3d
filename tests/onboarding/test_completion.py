import asyncio
import logging

import discord

from modules.onboarding.channels import ChannelGateway
from modules.onboarding.completion import ROLE_HINT, WELCOME_DM, CompletionHandler
from modules.onboarding.sessions import COMPLETED, SessionStore
from shared.accounts import Account


def _handler(fakes, *, account=None, tag=None):
    guild = fakes.Guild()
    bot = fakes.Bot(guild)
    member = guild.add_member(77, "bob")
    channel = guild.add_channel("welcome-bob_77")
    gateway = ChannelGateway(bot, prefix="welcome-", category_id=0)
    store = SessionStore(persist=False)
    store.open(channel.id, member.id)
    tagged: list[str] = []

    async def find_account(_member_id):
        return account

    async def default_tag(email):
        tagged.append(email)
        return "subscribed"

    handler = CompletionHandler(
        gateway,
        store,
        find_account=find_account,
        tag=tag or default_tag,
        regular_role_id=2,
        pro_role_id=3,
    )
    return handler, store, member, channel, tagged


def test_completion_grants_regular_role_deletes_channel_and_dms(fakes):
    handler, store, member, channel, tagged = _handler(fakes)

    assert asyncio.run(handler.complete(channel, member)) is True

    assert member.roles_added == [2]
    assert channel.deleted
    assert member.dms == [WELCOME_DM]
    assert tagged == []
    assert store.get(channel.id).status == COMPLETED


def test_completion_is_idempotent_when_channel_already_gone(fakes):
    handler, store, member, channel, _ = _handler(fakes)

    async def runner():
        assert await handler.complete(channel, member) is True
        # Second run (double click, retried event) must not raise or repeat side effects.
        assert await handler.complete(channel, member) is False

    asyncio.run(runner())

    assert member.roles_added == [2]
    assert len(member.dms) == 1


def test_completion_tags_linked_account_and_grants_pro(fakes):
    account = Account(id="abc", email="bob@example.com", active=True)
    handler, store, member, channel, tagged = _handler(fakes, account=account)

    asyncio.run(handler.complete(channel, member))

    assert member.roles_added == [3, 2]
    assert tagged == ["bob@example.com"]


def test_completion_logs_role_failure_and_still_finishes(fakes, caplog):
    handler, store, member, channel, _ = _handler(fakes)
    member.fail_roles = fakes.http_error(discord.Forbidden, 403, "Missing Permissions")
    caplog.set_level(logging.ERROR, logger="pumpkin.onboarding.completion")

    asyncio.run(handler.complete(channel, member))

    assert channel.deleted
    assert member.dms == [WELCOME_DM]
    assert any(ROLE_HINT in record.getMessage() for record in caplog.records)


def test_completion_survives_tag_and_dm_failures(fakes):
    async def broken_tag(_email):
        raise RuntimeError("marketing down")

    account = Account(id="abc", email="bob@example.com", active=False)
    handler, store, member, channel, _ = _handler(fakes, account=account, tag=broken_tag)
    member.fail_dm = fakes.http_error(discord.Forbidden, 403, "Cannot send messages to this user")

    assert asyncio.run(handler.complete(channel, member)) is True

    assert member.roles_added == [2]
    assert channel.deleted
    assert store.get(channel.id).status == COMPLETED


def test_completion_still_sends_welcome_when_channel_delete_is_forbidden(fakes, caplog):
    handler, store, member, channel, _ = _handler(fakes)

    async def forbidden_delete(*, reason=None):
        raise fakes.http_error(discord.Forbidden, 403, "Missing Permissions")

    channel.delete = forbidden_delete
    caplog.set_level(logging.ERROR, logger="pumpkin.onboarding.completion")

    assert asyncio.run(handler.complete(channel, member)) is True

    assert member.roles_added == [2]
    assert member.dms == [WELCOME_DM]
    assert store.get(channel.id).status == COMPLETED
    assert any("failed to delete onboarding channel" in record.getMessage() for record in caplog.records)
