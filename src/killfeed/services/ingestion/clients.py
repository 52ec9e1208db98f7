"""
Upstream API clients.

zKillboard is the index service (hash, valuation, per-character history);
ESI is the detail service (participants, system, time).
"""

from __future__ import annotations

from typing import Any, Literal, Optional

import httpx

from ...core.async_client import DEFAULT_USER_AGENT, AsyncUpstreamClient
from ...core.logging import get_logger
from ...core.retry import InvalidUpstreamPayload
from .models import KillSummary

logger = get_logger(__name__)

ZKILL_BASE_URL = "https://zkillboard.com/api"
ESI_BASE_URL = "https://esi.evetech.net/latest"

HistoryKind = Literal["kills", "losses"]


class ZKillboardClient(AsyncUpstreamClient):
    """zKillboard API client."""

    def __init__(
        self,
        base_url: str = ZKILL_BASE_URL,
        timeout: float = 15.0,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__("zkillboard", base_url, timeout, user_agent, transport)

    async def get_killmail_summary(self, killmail_id: int) -> KillSummary:
        """
        Look up hash and valuation for one kill.

        Raises:
            InvalidUpstreamPayload: zKillboard does not know the kill
            UpstreamUnavailable: Transient failure
        """
        data = await self.get_json(f"/killID/{killmail_id}/")
        if not isinstance(data, list) or not data:
            raise InvalidUpstreamPayload(
                f"zKillboard has no entry for killmail {killmail_id}", service=self.service
            )
        return KillSummary.from_zkill_entry(data[0])

    async def get_character_history(
        self, character_id: int, kind: HistoryKind, page: int = 1
    ) -> list[KillSummary]:
        """
        Fetch one page of a character's kills or losses, newest first.

        Malformed entries are dropped; an empty list means the history is exhausted.
        """
        if kind not in ("kills", "losses"):
            raise ValueError(f"Unknown history kind: {kind}")

        data: Any = await self.get_json(f"/{kind}/characterID/{character_id}/page/{page}/")
        if not isinstance(data, list):
            raise InvalidUpstreamPayload(
                f"zKillboard {kind} page {page} for {character_id} is not a list",
                service=self.service,
            )

        summaries: list[KillSummary] = []
        for entry in data:
            try:
                summaries.append(KillSummary.from_zkill_entry(entry))
            except InvalidUpstreamPayload as e:
                logger.debug("Dropping history entry: %s", e)
        return summaries


class EsiKillmailClient(AsyncUpstreamClient):
    """ESI client for killmail detail."""

    def __init__(
        self,
        base_url: str = ESI_BASE_URL,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__("esi", base_url, timeout, user_agent, transport)

    async def get_killmail(self, killmail_id: int, killmail_hash: str) -> dict[str, Any]:
        data = await self.get_json(f"/killmails/{killmail_id}/{killmail_hash}/")
        if not isinstance(data, dict):
            raise InvalidUpstreamPayload(
                f"ESI killmail {killmail_id} is not an object", service=self.service
            )
        return data
