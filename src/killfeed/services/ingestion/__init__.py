"""
Killmail Ingestion Pipeline.

Every feed (backfill, realtime consumers, enrichment) hands killmails to
the IngestionCoordinator, which deduplicates, fetches missing detail,
checks relevance against the tracked roster and writes atomically.
"""

from __future__ import annotations

__all__ = [
    # Models
    "Origin",
    "IngestOutcome",
    "IngestResult",
    "KillSummary",
    "DraftKillmail",
    "DraftAttacker",
    "DraftVictim",
    "parse_esi_killmail",
    # Clients and fetching
    "ZKillboardClient",
    "EsiKillmailClient",
    "KillmailFetcher",
    "FetcherConfig",
    "IndexUnavailable",
    "DetailUnavailable",
    # Roster and checkpoints
    "TrackedCharacters",
    "CheckpointStore",
    "stream_name",
    # Coordinator
    "IngestionCoordinator",
    "IngestionMetrics",
    # Jobs
    "EnrichmentScheduler",
    "EnrichmentReport",
    "BackfillOrchestrator",
    "BackfillReport",
    "StreamReport",
]


def __getattr__(name: str):
    """Lazy import components to avoid circular imports."""
    if name in (
        "Origin",
        "IngestOutcome",
        "IngestResult",
        "KillSummary",
        "DraftKillmail",
        "DraftAttacker",
        "DraftVictim",
        "parse_esi_killmail",
    ):
        from . import models

        return getattr(models, name)

    if name in ("ZKillboardClient", "EsiKillmailClient"):
        from . import clients

        return getattr(clients, name)

    if name in ("KillmailFetcher", "FetcherConfig", "IndexUnavailable", "DetailUnavailable"):
        from . import fetcher

        return getattr(fetcher, name)

    if name == "TrackedCharacters":
        from .roster import TrackedCharacters

        return TrackedCharacters

    if name in ("CheckpointStore", "stream_name"):
        from . import checkpoint

        return getattr(checkpoint, name)

    if name == "IngestionCoordinator":
        from .coordinator import IngestionCoordinator

        return IngestionCoordinator

    if name == "IngestionMetrics":
        from .metrics import IngestionMetrics

        return IngestionMetrics

    if name in ("EnrichmentScheduler", "EnrichmentReport"):
        from . import enrichment

        return getattr(enrichment, name)

    if name in ("BackfillOrchestrator", "BackfillReport", "StreamReport"):
        from . import backfill

        return getattr(backfill, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
