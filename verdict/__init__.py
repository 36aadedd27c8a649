"""Verdict: multi-model image moderation consensus."""

__version__ = "0.1.0"
