"""
RedisQ Real-Time Kill Feed.

Long-polls zKillboard's RedisQ service and ingests each delivered kill
through the ingestion coordinator.
"""

from __future__ import annotations

__all__ = [
    "RedisQConfig",
    "RedisQPoller",
    "PollerStatus",
    "REDISQ_URL",
]


def __getattr__(name: str):
    """Lazy import components to avoid circular imports."""
    if name in __all__:
        from . import poller

        return getattr(poller, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
