"""Naive-UTC time helpers shared by models and the sync engine."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time without tzinfo, matching what SQLite round-trips."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
