"""Embed colours shared by the onboarding and community features."""

from __future__ import annotations

import discord

ONBOARDING_BLURPLE = discord.Colour(0x5865F2)
KARMA_BLUE = discord.Colour(0x0099FF)

_BY_FEATURE = {"onboarding": ONBOARDING_BLURPLE, "karma": KARMA_BLUE}


def get_embed_colour(feature: str) -> discord.Colour:
    return _BY_FEATURE.get(feature, discord.Colour.default())
