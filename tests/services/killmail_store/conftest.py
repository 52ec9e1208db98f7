"""Fixtures for killmail_store tests."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from killfeed.services.killmail_store import (
    KillAttacker,
    KillCharacter,
    KillFact,
    KillmailRecord,
    KillVictim,
    LossFact,
)

KILL_TIME = int(datetime(2026, 1, 26, 12, 0, 0, tzinfo=timezone.utc).timestamp())


@pytest.fixture
def partial_fact() -> KillFact:
    """Summary-only kill fact."""
    return KillFact(
        killmail_id=123456789,
        kill_time=KILL_TIME,
        system_id=0,
        ship_type_id=0,
        npc=False,
        solo=True,
        awox=False,
        labels=["pvp"],
        total_value=1_500_000_000,
        points=100,
        hash="abc123def456",
        fully_populated=False,
    )


@pytest.fixture
def full_record() -> KillmailRecord:
    """Fully populated kill where tracked character 111 died to 222 and an NPC."""
    killmail_id = 123456789
    return KillmailRecord(
        fact=KillFact(
            killmail_id=killmail_id,
            kill_time=KILL_TIME,
            system_id=30000142,
            ship_type_id=587,
            npc=False,
            solo=False,
            awox=False,
            labels=["pvp", "loc:highsec"],
            total_value=1_500_000_000,
            points=100,
            hash="abc123def456",
            fully_populated=True,
        ),
        victim=KillVictim(
            killmail_id=killmail_id,
            character_id=111,
            corporation_id=98000001,
            alliance_id=None,
            ship_type_id=587,
            damage_taken=3000,
        ),
        attackers=[
            KillAttacker(
                killmail_id=killmail_id,
                character_id=222,
                corporation_id=98000002,
                alliance_id=99000001,
                damage_done=2000,
                final_blow=True,
                security_status=-5.0,
                ship_type_id=11198,
                weapon_type_id=2488,
            ),
            KillAttacker(
                killmail_id=killmail_id,
                character_id=None,
                corporation_id=1000125,
                alliance_id=None,
                damage_done=1000,
                final_blow=False,
                security_status=None,
                ship_type_id=None,
                weapon_type_id=None,
            ),
        ],
        characters=[KillCharacter(killmail_id=killmail_id, character_id=111, role="victim")],
        loss=LossFact(
            killmail_id=killmail_id,
            character_id=111,
            kill_time=KILL_TIME,
            ship_type_id=587,
            system_id=30000142,
            total_value=1_500_000_000,
            attacker_count=2,
            labels=["pvp", "loc:highsec"],
        ),
    )
