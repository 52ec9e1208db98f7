"""
Ingestion counters for observability.

Counts every ingestion outcome per origin, plus write retries and
in-flight writes. Logged periodically by the runtime and exposed through
its status action.
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Optional

from .models import IngestOutcome, IngestResult, Origin


@dataclass
class IngestionMetrics:
    """Running totals since process start."""

    outcomes: Counter = field(default_factory=Counter)
    by_origin: dict[str, Counter] = field(default_factory=dict)
    write_retries: int = 0
    in_flight: int = 0
    last_write_time: Optional[float] = None
    started_at: float = field(default_factory=time.time)

    def record(self, result: IngestResult) -> None:
        outcome = result.outcome.value
        self.outcomes[outcome] += 1
        self.by_origin.setdefault(result.origin.value, Counter())[outcome] += 1
        if result.outcome.wrote:
            self.last_write_time = time.time()

    def count(self, outcome: IngestOutcome, origin: Optional[Origin] = None) -> int:
        if origin is None:
            return self.outcomes[outcome.value]
        return self.by_origin.get(origin.value, Counter())[outcome.value]

    @property
    def total(self) -> int:
        return sum(self.outcomes.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "outcomes": {o.value: self.outcomes[o.value] for o in IngestOutcome},
            "by_origin": {origin: dict(counts) for origin, counts in self.by_origin.items()},
            "write_retries": self.write_retries,
            "in_flight": self.in_flight,
            "last_write_time": self.last_write_time,
            "uptime_seconds": round(time.time() - self.started_at, 1),
        }

    def summary_line(self) -> str:
        """One-line summary for the periodic metrics log."""
        o = self.outcomes
        return (
            f"total={self.total} full={o['full']} partial={o['partial']} "
            f"duplicate={o['skipped-duplicate']} irrelevant={o['skipped-irrelevant']} "
            f"too_old={o['skipped-too-old']} skipped={o['skipped']} failed={o['failed']} "
            f"in_flight={self.in_flight}"
        )
