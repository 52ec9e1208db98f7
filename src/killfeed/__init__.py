"""
Killfeed - EVE Online Killmail Ingestion

Keeps a local SQLite record of every killmail involving a roster of
tracked characters. History is backfilled from zKillboard, new kills
arrive through RedisQ or a wanderer-kills websocket, and ESI supplies
full detail. Kills whose detail was unavailable are stored as partial
rows and upgraded later by the enrichment job.

Usage as library:
    from killfeed import IngestionRuntime

    runtime = IngestionRuntime()
    await runtime.track_character(2112625428, name="Example Pilot")
    report = await runtime.run_backfill()
    await runtime.stop()

Usage as CLI:
    python -m killfeed track 2112625428 --backfill
    python -m killfeed run --redisq
    python -m killfeed status

Package structure:
    killfeed/
    ├── core/           # Config, logging, retry, circuit breaker, HTTP client
    ├── services/       # Store, ingestion pipeline, consumers, runtime
    └── commands/       # CLI command implementations
"""

__version__ = "1.0.0"

__all__ = [
    "__version__",
    "IngestionRuntime",
    "get_runtime",
    "reset_runtime",
    "KillfeedSettings",
    "get_settings",
]


def __getattr__(name: str):
    """Lazy import components to keep CLI startup light."""
    if name in ("IngestionRuntime", "get_runtime", "reset_runtime"):
        from .services import runtime

        return getattr(runtime, name)

    if name in ("KillfeedSettings", "get_settings"):
        from .core import config

        return getattr(config, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
