"""Exceptions raised by the onboarding sequencer."""

from __future__ import annotations

__all__ = ["NoMatchingStep", "OnboardingError"]


class OnboardingError(RuntimeError):
    """Base class for onboarding failures."""


class NoMatchingStep(OnboardingError):
    """The channel history does not end on any catalog question.

    Raised when the most recent bot message is not a known question (catalog
    text edited after deployment) or when the bot has not posted at all.
    """

    def __init__(self, channel_id: int, text: str | None = None) -> None:
        self.channel_id = int(channel_id)
        self.text = text
        preview = " ".join((text or "").split())[:80] or "<no bot message>"
        super().__init__(f"no catalog step matches channel {channel_id}: {preview!r}")
