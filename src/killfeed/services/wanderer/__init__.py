"""
Wanderer-Kills Push Feed.

Phoenix-channel websocket consumer that subscribes to tracked characters
and systems and ingests each pushed killmail.
"""

from __future__ import annotations

__all__ = [
    "WandererConfig",
    "WandererKillsClient",
    "WebsocketStatus",
    "WandererKillmail",
    "KillmailUpdate",
    "PreloadConfig",
]


def __getattr__(name: str):
    """Lazy import components to avoid circular imports."""
    if name in ("WandererConfig", "WandererKillsClient", "WebsocketStatus"):
        from . import client

        return getattr(client, name)

    if name in ("WandererKillmail", "KillmailUpdate", "PreloadConfig"):
        from . import models

        return getattr(models, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
