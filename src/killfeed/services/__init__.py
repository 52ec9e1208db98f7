"""
Killfeed Services

Stateful components of the ingestion pipeline:
- killmail_store: SQLite persistence for kills, losses, checkpoints and roster
- ingestion: coordinator, fetcher, backfill and enrichment
- redisq: RedisQ long-poll consumer
- wanderer: wanderer-kills websocket consumer
- runtime: wiring and lifecycle for all of the above
"""

from __future__ import annotations

__all__ = [
    "IngestionRuntime",
    "get_runtime",
    "reset_runtime",
]


def __getattr__(name: str):
    """Lazy import components to avoid circular imports."""
    if name in __all__:
        from . import runtime

        return getattr(runtime, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
