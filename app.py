from __future__ import annotations

import asyncio
import logging
import os

import discord
from discord.ext import commands

from config.runtime import get_bot_name, get_env_name
from modules.common.runtime import Runtime
from shared import health as healthmod
from shared.config import get_allowed_guild_ids, get_discord_token, is_guild_allowed
from shared.logging import setup_logging

setup_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    static_fields={"bot": get_bot_name(), "env": get_env_name()},
)
log = logging.getLogger("pumpkin.app")

INTENTS = discord.Intents.default()
INTENTS.message_content = True
INTENTS.members = True

bot = commands.Bot(
    command_prefix=commands.when_mentioned,
    intents=INTENTS,
)
bot.remove_command("help")

runtime = Runtime(bot)


@bot.event
async def on_ready():
    healthmod.set_component("discord", True)
    log.info(
        "Bot ready as %s | env=%s | guilds=%s",
        bot.user,
        get_env_name(),
        len(bot.guilds),
    )
    allowed = get_allowed_guild_ids()
    if allowed:
        unexpected = [guild.id for guild in bot.guilds if not is_guild_allowed(guild.id)]
        if unexpected:
            log.warning("connected to guilds outside the allow list", extra={"guild_ids": unexpected})


@bot.event
async def on_resumed():
    healthmod.set_component("discord", True)


@bot.event
async def on_disconnect():
    healthmod.set_component("discord", False)


async def main() -> None:
    token = get_discord_token()
    if not token:
        raise RuntimeError("DISCORD_TOKEN not set")
    try:
        await runtime.start(token)
    finally:
        await runtime.close()


if __name__ == "__main__":
    asyncio.run(main())
