"""Onboarding feature: private per-member channels that walk new joiners through setup."""

from __future__ import annotations

from discord.ext import commands

from modules.onboarding.cog import OnboardingCog

__all__ = ["OnboardingCog", "setup"]


async def setup(bot: commands.Bot) -> None:
    """Register the onboarding listeners."""

    if bot.get_cog("OnboardingCog") is not None:
        return
    await bot.add_cog(OnboardingCog(bot))
