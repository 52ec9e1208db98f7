"""
Pydantic models for the wanderer-kills websocket feed.

Killmail payloads arrive enriched (names, ship groups, zkb block).
Only the fields the ingestion pipeline needs are declared; the rest are
ignored.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..ingestion.models import DraftAttacker, DraftKillmail, DraftVictim

# =============================================================================
# Killmail Payload
# =============================================================================


class WandererVictim(BaseModel):
    model_config = ConfigDict(extra="ignore")

    character_id: Optional[int] = None
    corporation_id: Optional[int] = None
    alliance_id: Optional[int] = None
    ship_type_id: int
    damage_taken: int


class WandererAttacker(BaseModel):
    model_config = ConfigDict(extra="ignore")

    character_id: Optional[int] = None
    corporation_id: Optional[int] = None
    alliance_id: Optional[int] = None
    security_status: Optional[float] = None
    ship_type_id: Optional[int] = None
    weapon_type_id: Optional[int] = None
    damage_done: int
    final_blow: bool


class WandererZkb(BaseModel):
    model_config = ConfigDict(extra="ignore")

    hash: str
    total_value: float
    points: int
    npc: bool
    solo: bool
    awox: bool
    labels: list[str] = Field(default_factory=list)


class WandererPosition(BaseModel):
    x: float
    y: float
    z: float


class WandererKillmail(BaseModel):
    """One killmail inside a ``killmail_update`` event."""

    model_config = ConfigDict(extra="ignore")

    killmail_id: int = Field(gt=0)
    kill_time: datetime
    system_id: int
    victim: WandererVictim
    attackers: list[WandererAttacker]
    zkb: WandererZkb
    position: Optional[WandererPosition] = None

    def to_draft(self) -> DraftKillmail:
        """Map to a full-detail draft."""
        kill_time = self.kill_time
        if kill_time.tzinfo is None:
            kill_time = kill_time.replace(tzinfo=timezone.utc)

        return DraftKillmail(
            killmail_id=self.killmail_id,
            kill_time=kill_time.astimezone(timezone.utc),
            system_id=self.system_id,
            victim=DraftVictim(
                character_id=self.victim.character_id,
                corporation_id=self.victim.corporation_id,
                alliance_id=self.victim.alliance_id,
                ship_type_id=self.victim.ship_type_id,
                damage_taken=self.victim.damage_taken,
            ),
            attackers=[
                DraftAttacker(
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
            total_value=int(round(self.zkb.total_value)),
            points=self.zkb.points,
            labels=list(self.zkb.labels),
            hash=self.zkb.hash,
            has_detail=True,
        )


# =============================================================================
# Channel Events
# =============================================================================


class KillmailUpdate(BaseModel):
    """
    ``killmail_update`` event payload.

    Killmails are kept raw here and validated one by one, so a single bad
    entry does not reject the whole batch.
    """

    model_config = ConfigDict(extra="ignore")

    system_id: int
    killmails: list[Any]
    timestamp: str
    preload: bool = False


class KillCountUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    system_id: int
    count: int
    timestamp: Optional[str] = None


class PreloadConfig(BaseModel):
    """Historical preload requested with a subscription."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    limit_per_system: int = 5
    since_hours: int = 24
    delivery_batch_size: int = 10
    delivery_interval_ms: int = 1000
