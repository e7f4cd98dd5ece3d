"""Google Sheets persistence for onboarding sessions; importing opens no connection."""
