"""Model adapters for the moderation providers."""
