"""Community features loaded alongside onboarding."""
