"""
Ingestion CLI Commands.

Commands for running the ingestion service and its administrative actions.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
from typing import Any

from ..core.formatters import get_utc_timestamp
from ..core.logging import get_logger

logger = get_logger(__name__)

STATUS_INTERVAL_SECONDS = 60


def _runtime():
    from ..services.runtime import get_runtime

    return get_runtime()


# =============================================================================
# Service Command
# =============================================================================


def cmd_run(args: argparse.Namespace) -> dict:
    """
    Run the ingestion service.

    Runs as a foreground process. Use Ctrl+C to stop; in-flight writes are
    drained before exit.
    """
    from ..core.config import get_settings
    from ..services.runtime import get_runtime, reset_runtime

    overrides = {}
    if args.redisq:
        overrides["redisq_enabled"] = True
    if args.backfill:
        overrides["backfill_on_start"] = True

    reset_runtime()
    runtime = get_runtime(get_settings().model_copy(update=overrides))

    async def run_service():
        stop_event = asyncio.Event()

        def signal_handler():
            logger.info("Shutdown signal received")
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, signal_handler)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                pass

        await runtime.start()
        print(f"\nIngestion service started ({len(runtime.roster)} tracked characters)")
        if runtime.poller is not None:
            print(f"RedisQ queue ID: {runtime.poller.ensure_queue_id()}")
        print("Press Ctrl+C to stop\n")

        try:
            while not stop_event.is_set():
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=STATUS_INTERVAL_SECONDS)
                except asyncio.TimeoutError:
                    if runtime.metrics.total > 0:
                        print(f"Status: {runtime.metrics.summary_line()}")
        finally:
            await runtime.stop()
        print("\nIngestion service stopped")

    try:
        asyncio.run(run_service())
        return {}
    except KeyboardInterrupt:
        print("\nInterrupted")
        return {}


# =============================================================================
# One-shot Commands
# =============================================================================


def _run_once(coro_factory) -> Any:
    """Open the runtime, run one action, and close it again."""
    runtime = _runtime()

    async def run():
        try:
            return await coro_factory(runtime)
        finally:
            await runtime.stop()

    return asyncio.run(run())


def cmd_backfill(args: argparse.Namespace) -> dict:
    """Backfill tracked characters' kill and loss history."""

    async def action(runtime):
        report = await runtime.run_backfill(args.characters or None, force=args.force)
        return report.to_dict()

    result = _run_once(action)
    result["query_timestamp"] = get_utc_timestamp()
    return result


def cmd_enrich(args: argparse.Namespace) -> dict:
    """Upgrade partial killmails with full ESI detail."""

    async def action(runtime):
        report = await runtime.run_enrichment()
        return report.to_dict()

    result = _run_once(action)
    result["query_timestamp"] = get_utc_timestamp()
    return result


def cmd_status(args: argparse.Namespace) -> dict:
    """Show store statistics, checkpoints and breaker states."""

    async def action(runtime):
        await runtime.open()
        metrics = await runtime.get_metrics()
        characters = await runtime.store.list_tracked_characters()
        metrics["roster"] = [
            {
                "character_id": c.character_id,
                "name": c.name,
                "last_backfill_at": c.last_backfill_at,
            }
            for c in characters
        ]
        return metrics

    result = _run_once(action)
    result["query_timestamp"] = get_utc_timestamp()
    return result


def cmd_reset_breakers(args: argparse.Namespace) -> dict:
    """
    Reset the upstream circuit breakers.

    Breakers are in-memory, so this only affects a service started in the
    same process; it is mainly useful from the library API.
    """
    states = _runtime().reset_circuit_breakers()
    return {
        "status": "reset",
        "breakers": states,
        "query_timestamp": get_utc_timestamp(),
    }


def cmd_track(args: argparse.Namespace) -> dict:
    """Add a character to the tracked roster."""

    async def action(runtime):
        character = await runtime.track_character(
            args.character_id,
            name=args.name,
            corporation_id=args.corporation_id,
            alliance_id=args.alliance_id,
        )
        result = {
            "status": "tracked",
            "character_id": character.character_id,
            "name": character.name,
        }
        if args.backfill:
            report = await runtime.run_backfill([character.character_id], force=True)
            result["backfill"] = report.to_dict()
        return result

    result = _run_once(action)
    result["query_timestamp"] = get_utc_timestamp()
    return result


def cmd_untrack(args: argparse.Namespace) -> dict:
    """Remove a character from the tracked roster."""

    async def action(runtime):
        return await runtime.untrack_character(args.character_id)

    removed = _run_once(action)
    if not removed:
        return {
            "error": "not_tracked",
            "message": f"Character {args.character_id} is not tracked",
            "query_timestamp": get_utc_timestamp(),
        }
    return {
        "status": "untracked",
        "character_id": args.character_id,
        "query_timestamp": get_utc_timestamp(),
    }


# =============================================================================
# Parser Registration
# =============================================================================


def register_parsers(subparsers) -> None:
    """Register ingestion command parsers."""

    # run
    run_parser = subparsers.add_parser("run", help="Run the ingestion service")
    run_parser.add_argument(
        "--redisq",
        action="store_true",
        help="Enable the RedisQ consumer regardless of configuration",
    )
    run_parser.add_argument(
        "--backfill",
        action="store_true",
        help="Backfill all tracked characters on startup",
    )
    run_parser.set_defaults(func=cmd_run)

    # backfill
    backfill_parser = subparsers.add_parser("backfill", help="Backfill character history")
    backfill_parser.add_argument(
        "characters",
        type=int,
        nargs="*",
        help="Character IDs (default: all tracked)",
    )
    backfill_parser.add_argument(
        "--force",
        action="store_true",
        help="Ignore the recent-backfill skip window",
    )
    backfill_parser.set_defaults(func=cmd_backfill)

    # enrich
    enrich_parser = subparsers.add_parser("enrich", help="Enrich partial killmails now")
    enrich_parser.set_defaults(func=cmd_enrich)

    # status
    status_parser = subparsers.add_parser("status", help="Show ingestion status")
    status_parser.set_defaults(func=cmd_status)

    # reset-breakers
    reset_parser = subparsers.add_parser("reset-breakers", help="Reset circuit breakers")
    reset_parser.set_defaults(func=cmd_reset_breakers)

    # track
    track_parser = subparsers.add_parser("track", help="Track a character")
    track_parser.add_argument("character_id", type=int, help="Character ID")
    track_parser.add_argument("--name", help="Character name")
    track_parser.add_argument("--corporation-id", type=int, help="Corporation ID")
    track_parser.add_argument("--alliance-id", type=int, help="Alliance ID")
    track_parser.add_argument(
        "--backfill",
        action="store_true",
        help="Backfill the character's history immediately",
    )
    track_parser.set_defaults(func=cmd_track)

    # untrack
    untrack_parser = subparsers.add_parser("untrack", help="Stop tracking a character")
    untrack_parser.add_argument("character_id", type=int, help="Character ID")
    untrack_parser.set_defaults(func=cmd_untrack)
