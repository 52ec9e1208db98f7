"""
Killfeed Commands

CLI command implementations. Each module registers its own subparsers.
"""

from . import ingest

__all__ = ["ingest"]
