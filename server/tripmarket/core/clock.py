"""Naive-UTC clock shared by models, services and workers."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, matching the naive DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
