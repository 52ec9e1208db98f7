"""
Ingestion Data Models.

Draft killmails, index summaries and ingestion outcomes shared by every
feed. Drafts are built from ESI detail plus a zKillboard ``zkb`` block, or
from a zKillboard summary alone when detail is unavailable.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ...core.retry import InvalidUpstreamPayload
from ..killmail_store.protocol import (
    KillAttacker,
    KillCharacter,
    KillFact,
    KillmailRecord,
    KillVictim,
    LossFact,
)


class Origin(str, Enum):
    """Which feed produced an ingestion request."""

    BACKFILL = "backfill"
    REALTIME = "realtime"
    ENRICHMENT = "enrichment"


class IngestOutcome(str, Enum):
    SKIPPED_DUPLICATE = "skipped-duplicate"
    SKIPPED_IRRELEVANT = "skipped-irrelevant"
    SKIPPED_TOO_OLD = "skipped-too-old"
    SKIPPED = "skipped"
    PARTIAL = "partial"
    FULL = "full"
    FAILED = "failed"

    @property
    def wrote(self) -> bool:
        return self in (IngestOutcome.PARTIAL, IngestOutcome.FULL)


@dataclass
class IngestResult:
    """Result of one ingestion request."""

    killmail_id: int
    outcome: IngestOutcome
    origin: Origin
    reason: str | None = None
    kill_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "killmail_id": self.killmail_id,
            "outcome": self.outcome.value,
            "origin": self.origin.value,
            "reason": self.reason,
            "kill_time": self.kill_time.isoformat() if self.kill_time else None,
        }


# =============================================================================
# Time Helpers
# =============================================================================


def parse_kill_time(value: Any) -> datetime:
    """
    Parse an ISO 8601 kill time into an aware UTC datetime.

    ESI returns ``2024-01-15T12:34:56Z``.

    Raises:
        ValueError: If the value is not a parseable timestamp
    """
    if not isinstance(value, str) or not value:
        raise ValueError(f"Invalid kill time: {value!r}")
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_epoch(dt: datetime) -> int:
    return int(dt.timestamp())


def from_epoch(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Index Summary
# =============================================================================


@dataclass
class KillSummary:
    """
    Index data for one kill (zKillboard ``zkb`` block).

    Carries the hash needed for the ESI detail call plus valuation and
    flags. ``actor_ids`` is only populated by feeds that include
    participants alongside the summary.
    """

    killmail_id: int
    hash: str | None = None
    total_value: int = 0
    points: int = 0
    npc: bool = False
    solo: bool = False
    awox: bool = False
    labels: list[str] = field(default_factory=list)
    kill_time: datetime | None = None
    system_id: int | None = None
    actor_ids: frozenset[int] = frozenset()

    @classmethod
    def from_zkb(
        cls,
        killmail_id: int,
        zkb: dict[str, Any] | None,
        kill_time: datetime | None = None,
        system_id: int | None = None,
    ) -> KillSummary:
        """
        Build a summary from a ``zkb`` block.

        Args:
            killmail_id: Killmail ID
            zkb: zKillboard metadata ({hash, totalValue, points, npc, solo, awox, labels})
            kill_time: Kill time when the feed supplies it
            system_id: Solar system when the feed supplies it
        """
        zkb = zkb or {}
        labels = zkb.get("labels") or []
        return cls(
            killmail_id=killmail_id,
            hash=zkb.get("hash") or None,
            total_value=_round_isk(zkb.get("totalValue", zkb.get("total_value"))),
            points=int(zkb.get("points") or 0),
            npc=bool(zkb.get("npc", False)),
            solo=bool(zkb.get("solo", False)),
            awox=bool(zkb.get("awox", False)),
            labels=[str(label) for label in labels] if isinstance(labels, list) else [],
            kill_time=kill_time,
            system_id=system_id,
        )

    @classmethod
    def from_zkill_entry(cls, entry: Any) -> KillSummary:
        """
        Build a summary from a zKillboard API list entry.

        Entries look like ``{"killmail_id": 123, "zkb": {...}}``.

        Raises:
            InvalidUpstreamPayload: If the entry has no usable killmail_id
        """
        if not isinstance(entry, dict):
            raise InvalidUpstreamPayload("zKillboard entry is not an object", service="zkillboard")
        killmail_id = entry.get("killmail_id")
        if not isinstance(killmail_id, int) or killmail_id <= 0:
            raise InvalidUpstreamPayload(
                f"zKillboard entry has invalid killmail_id: {killmail_id!r}", service="zkillboard"
            )
        kill_time = None
        if entry.get("killmail_time"):
            try:
                kill_time = parse_kill_time(entry["killmail_time"])
            except ValueError:
                kill_time = None
        return cls.from_zkb(killmail_id, entry.get("zkb"), kill_time=kill_time)

    @classmethod
    def from_redisq_package(cls, package: dict[str, Any]) -> KillSummary:
        """
        Build a summary from a RedisQ ``package``.

        Handles both old and new (2025+) RedisQ formats:
        - New format: {"killID": 123, "zkb": {...}}
        - Old format: {"killmail": {"killmail_id": 123, ...}, "zkb": {...}}

        Raises:
            InvalidUpstreamPayload: If no killmail id can be found
        """
        killmail = package.get("killmail") or {}
        killmail_id = package.get("killID")
        if killmail_id is None:
            killmail_id = killmail.get("killmail_id")
        if not isinstance(killmail_id, int) or killmail_id <= 0:
            raise InvalidUpstreamPayload(
                f"RedisQ package has invalid killID: {killmail_id!r}", service="redisq"
            )

        kill_time = None
        if killmail.get("killmail_time"):
            try:
                kill_time = parse_kill_time(killmail["killmail_time"])
            except ValueError:
                kill_time = None

        summary = cls.from_zkb(
            killmail_id,
            package.get("zkb"),
            kill_time=kill_time,
            system_id=killmail.get("solar_system_id"),
        )
        if killmail:
            summary.actor_ids = _actor_ids_from_esi(killmail)
        return summary


def _round_isk(value: Any) -> int:
    """zKillboard values are floats; money is stored as whole ISK."""
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return 0


def _actor_ids_from_esi(killmail: dict[str, Any]) -> frozenset[int]:
    ids: set[int] = set()
    victim = killmail.get("victim") or {}
    if victim.get("character_id"):
        ids.add(victim["character_id"])
    for attacker in killmail.get("attackers") or []:
        if attacker.get("character_id"):
            ids.add(attacker["character_id"])
    return frozenset(ids)


# =============================================================================
# Draft Killmail
# =============================================================================


@dataclass
class DraftAttacker:
    character_id: int | None = None
    corporation_id: int | None = None
    alliance_id: int | None = None
    damage_done: int = 0
    final_blow: bool = False
    security_status: float | None = None
    ship_type_id: int | None = None
    weapon_type_id: int | None = None


@dataclass
class DraftVictim:
    character_id: int | None = None
    corporation_id: int | None = None
    alliance_id: int | None = None
    ship_type_id: int = 0
    damage_taken: int = 0


@dataclass
class DraftKillmail:
    """
    Normalized in-memory killmail, before relevance and persistence.

    ``has_detail`` is False for drafts built from a summary alone; those
    carry no participants and are only ever written as partial rows.
    """

    killmail_id: int
    kill_time: datetime
    system_id: int
    victim: DraftVictim
    attackers: list[DraftAttacker] = field(default_factory=list)
    total_value: int = 0
    points: int = 0
    labels: list[str] = field(default_factory=list)
    hash: str | None = None
    has_detail: bool = True

    @property
    def is_environmental(self) -> bool:
        """No attacker is a player character (rats, structures, etc.)."""
        return not any(a.character_id for a in self.attackers)

    @property
    def is_solo(self) -> bool:
        return len(self.attackers) == 1

    @property
    def is_friendly_fire(self) -> bool:
        # Corporation/alliance comparison rule is unresolved; never flag.
        return False

    def actor_ids(self) -> frozenset[int]:
        """Victim and attacker character ids."""
        ids = {a.character_id for a in self.attackers if a.character_id}
        if self.victim.character_id:
            ids.add(self.victim.character_id)
        return frozenset(ids)

    def to_fact(self) -> KillFact:
        return KillFact(
            killmail_id=self.killmail_id,
            kill_time=to_epoch(self.kill_time),
            system_id=self.system_id,
            ship_type_id=self.victim.ship_type_id,
            npc=self.is_environmental,
            solo=self.is_solo,
            awox=self.is_friendly_fire,
            labels=list(self.labels),
            total_value=self.total_value,
            points=self.points,
            hash=self.hash,
            fully_populated=self.has_detail,
        )

    def to_record(self, tracked: frozenset[int]) -> KillmailRecord:
        """
        Build the full persisted record.

        Args:
            tracked: Tracked-character snapshot; decides character links
                and whether a loss view is derived
        """
        killmail_id = self.killmail_id
        victim = self.victim

        characters = [
            KillCharacter(killmail_id=killmail_id, character_id=cid, role="attacker")
            for cid in sorted({a.character_id for a in self.attackers if a.character_id})
            if cid in tracked
        ]

        loss = None
        if victim.character_id and victim.character_id in tracked:
            characters.append(
                KillCharacter(killmail_id=killmail_id, character_id=victim.character_id, role="victim")
            )
            loss = LossFact(
                killmail_id=killmail_id,
                character_id=victim.character_id,
                kill_time=to_epoch(self.kill_time),
                ship_type_id=victim.ship_type_id,
                system_id=self.system_id,
                total_value=self.total_value,
                attacker_count=len(self.attackers),
                labels=list(self.labels),
            )

        return KillmailRecord(
            fact=self.to_fact(),
            victim=KillVictim(
                killmail_id=killmail_id,
                character_id=victim.character_id,
                corporation_id=victim.corporation_id,
                alliance_id=victim.alliance_id,
                ship_type_id=victim.ship_type_id,
                damage_taken=victim.damage_taken,
            ),
            attackers=[
                KillAttacker(
                    killmail_id=killmail_id,
                    character_id=a.character_id,
                    corporation_id=a.corporation_id,
                    alliance_id=a.alliance_id,
                    damage_done=a.damage_done,
                    final_blow=a.final_blow,
                    security_status=a.security_status,
                    ship_type_id=a.ship_type_id,
                    weapon_type_id=a.weapon_type_id,
                )
                for a in self.attackers
            ],
            characters=characters,
            loss=loss,
        )


# =============================================================================
# Parsers
# =============================================================================


def parse_esi_killmail(esi_data: Any, summary: KillSummary) -> DraftKillmail:
    """
    Parse an ESI killmail response plus zKillboard metadata into a draft.

    Args:
        esi_data: Full killmail data from ESI /killmails/{id}/{hash}/
        summary: zKillboard summary for the same kill

    Returns:
        DraftKillmail with full detail

    Raises:
        InvalidUpstreamPayload: If required ESI fields are missing or malformed
    """
    if not isinstance(esi_data, dict):
        raise InvalidUpstreamPayload("ESI killmail is not an object", service="esi")

    try:
        kill_time = parse_kill_time(esi_data.get("killmail_time"))
        system_id = int(esi_data["solar_system_id"])
        victim_data = esi_data["victim"]
        attackers_data = esi_data.get("attackers") or []

        victim = DraftVictim(
            character_id=victim_data.get("character_id"),
            corporation_id=victim_data.get("corporation_id"),
            alliance_id=victim_data.get("alliance_id"),
            ship_type_id=int(victim_data.get("ship_type_id") or 0),
            damage_taken=int(victim_data.get("damage_taken") or 0),
        )
        attackers = [
            DraftAttacker(
                character_id=a.get("character_id"),
                corporation_id=a.get("corporation_id"),
                alliance_id=a.get("alliance_id"),
                damage_done=int(a.get("damage_done") or 0),
                final_blow=bool(a.get("final_blow", False)),
                security_status=a.get("security_status"),
                ship_type_id=a.get("ship_type_id"),
                weapon_type_id=a.get("weapon_type_id"),
            )
            for a in attackers_data
        ]
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise InvalidUpstreamPayload(
            f"Malformed ESI killmail {summary.killmail_id}: {e}", service="esi", original_error=e
        ) from e

    esi_id = esi_data.get("killmail_id")
    if esi_id is not None and esi_id != summary.killmail_id:
        raise InvalidUpstreamPayload(
            f"ESI returned killmail {esi_id} for {summary.killmail_id}", service="esi"
        )

    return DraftKillmail(
        killmail_id=summary.killmail_id,
        kill_time=kill_time,
        system_id=system_id,
        victim=victim,
        attackers=attackers,
        total_value=summary.total_value,
        points=summary.points,
        labels=list(summary.labels),
        hash=summary.hash,
        has_detail=True,
    )


def draft_from_summary(summary: KillSummary, observed_at: datetime | None = None) -> DraftKillmail:
    """
    Build a summary-only draft for a partial write.

    Unknown fields default to 0 and the kill time to the observed time.
    """
    if observed_at is None:
        observed_at = from_epoch(int(time.time()))
    return DraftKillmail(
        killmail_id=summary.killmail_id,
        kill_time=summary.kill_time or observed_at,
        system_id=summary.system_id or 0,
        victim=DraftVictim(),
        attackers=[],
        total_value=summary.total_value,
        points=summary.points,
        labels=list(summary.labels),
        hash=summary.hash,
        has_detail=False,
    )


def partial_fact(summary: KillSummary, observed_at: datetime | None = None) -> KillFact:
    """Kill fact for a partial row; zkb flags are kept as reported."""
    draft = draft_from_summary(summary, observed_at)
    fact = draft.to_fact()
    fact.npc = summary.npc
    fact.solo = summary.solo
    fact.awox = summary.awox
    fact.fully_populated = False
    return fact
