"""
Killmail Record Fetcher.

Turns a killmail reference (id, optional hash or summary) into a full
draft. Every upstream call runs through that service's circuit breaker
and the shared retry executor, with its own per-attempt timeout.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional, TypeVar

from ...core.circuit_breaker import BreakerOpenError, BreakerState, CircuitBreaker
from ...core.logging import get_logger
from ...core.retry import (
    DEFAULT_INITIAL_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
    InvalidUpstreamPayload,
    is_retryable_error,
    retry_async,
)
from .clients import EsiKillmailClient, HistoryKind, ZKillboardClient
from .models import DraftKillmail, KillSummary, parse_esi_killmail

logger = get_logger(__name__)

T = TypeVar("T")


class IndexUnavailable(Exception):
    """The index service (zKillboard) could not be reached."""

    def __init__(
        self,
        killmail_id: Optional[int],
        reason: str,
        original_error: Optional[BaseException] = None,
    ) -> None:
        self.killmail_id = killmail_id
        self.reason = reason
        self.original_error = original_error
        super().__init__(f"Index unavailable for {killmail_id}: {reason}")


class DetailUnavailable(Exception):
    """
    The detail service (ESI) could not be reached.

    Carries the summary that was already resolved so the caller can still
    store a partial row.
    """

    def __init__(
        self,
        killmail_id: int,
        reason: str,
        summary: KillSummary,
        original_error: Optional[BaseException] = None,
    ) -> None:
        self.killmail_id = killmail_id
        self.reason = reason
        self.summary = summary
        self.original_error = original_error
        super().__init__(f"Detail unavailable for {killmail_id}: {reason}")


def _failure_reason(error: BaseException) -> str:
    if isinstance(error, BreakerOpenError):
        return "breaker-open"
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return "timeout"
    return f"upstream-unavailable: {error}"


@dataclass
class FetcherConfig:
    """Retry, timeout and breaker settings for upstream calls."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    initial_delay: float = DEFAULT_INITIAL_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    zkill_timeout: float = 15.0
    esi_timeout: float = 30.0
    breaker_threshold: int = 3
    breaker_cooldown: float = 30.0

    @classmethod
    def from_settings(cls, settings: Any) -> FetcherConfig:
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            zkill_timeout=settings.zkill_timeout_seconds,
            esi_timeout=settings.esi_timeout_seconds,
            breaker_threshold=settings.breaker_threshold,
            breaker_cooldown=settings.breaker_cooldown_seconds,
        )


class KillmailFetcher:
    """
    Fetches kill summaries and full detail from upstream.

    Args:
        zkill: zKillboard client (must be open)
        esi: ESI client (must be open)
        config: Retry/timeout/breaker settings
        sleep: Override for the retry backoff sleep (tests)
    """

    def __init__(
        self,
        zkill: ZKillboardClient,
        esi: EsiKillmailClient,
        config: Optional[FetcherConfig] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        self.zkill = zkill
        self.esi = esi
        self.config = config or FetcherConfig()
        self._sleep = sleep
        self.zkill_breaker = CircuitBreaker(
            "zkillboard", self.config.breaker_threshold, self.config.breaker_cooldown
        )
        self.esi_breaker = CircuitBreaker(
            "esi", self.config.breaker_threshold, self.config.breaker_cooldown
        )

    async def _call(
        self,
        breaker: CircuitBreaker,
        call: Callable[[], Awaitable[T]],
        timeout: float,
        description: str,
    ) -> T:
        """Run one upstream call with timeout, breaker and retry; raise on final failure."""

        async def attempt() -> T:
            return await breaker.execute(lambda: asyncio.wait_for(call(), timeout))

        result = await retry_async(
            attempt,
            max_attempts=self.config.max_attempts,
            initial_delay=self.config.initial_delay,
            max_delay=self.config.max_delay,
            is_retryable=is_retryable_error,
            description=description,
            sleep=self._sleep,
        )
        return result.unwrap()

    async def lookup_summary(self, killmail_id: int) -> KillSummary:
        """
        Resolve hash and valuation from zKillboard.

        Raises:
            IndexUnavailable: zKillboard unreachable (after retries) or breaker open
            InvalidUpstreamPayload: zKillboard does not know the kill
        """
        try:
            return await self._call(
                self.zkill_breaker,
                lambda: self.zkill.get_killmail_summary(killmail_id),
                self.config.zkill_timeout,
                f"zKillboard lookup {killmail_id}",
            )
        except InvalidUpstreamPayload:
            raise
        except Exception as e:
            raise IndexUnavailable(killmail_id, _failure_reason(e), e) from e

    async def fetch(
        self,
        killmail_id: int,
        hash: Optional[str] = None,
        summary: Optional[KillSummary] = None,
    ) -> DraftKillmail:
        """
        Fetch a killmail with full detail.

        Args:
            killmail_id: Killmail ID
            hash: Killmail hash if already known
            summary: zKillboard summary if already known

        Returns:
            DraftKillmail with has_detail=True

        Raises:
            IndexUnavailable: Summary needed but zKillboard unavailable
            DetailUnavailable: ESI unavailable; carries the summary
            InvalidUpstreamPayload: Unknown kill or malformed response
        """
        if summary is None:
            summary = await self.lookup_summary(killmail_id)
        if not summary.hash and hash:
            summary.hash = hash
        if not summary.hash:
            raise InvalidUpstreamPayload(f"No hash known for killmail {killmail_id}", service="zkillboard")

        killmail_hash = summary.hash
        try:
            esi_data = await self._call(
                self.esi_breaker,
                lambda: self.esi.get_killmail(killmail_id, killmail_hash),
                self.config.esi_timeout,
                f"ESI killmail {killmail_id}",
            )
        except InvalidUpstreamPayload:
            raise
        except Exception as e:
            raise DetailUnavailable(killmail_id, _failure_reason(e), summary, e) from e

        return parse_esi_killmail(esi_data, summary)

    async def history(self, character_id: int, kind: HistoryKind, page: int) -> list[KillSummary]:
        """
        Fetch one page of a character's history, newest first.

        Raises:
            IndexUnavailable: zKillboard unreachable (after retries) or breaker open
            InvalidUpstreamPayload: Client error (403/404) or malformed page
        """
        try:
            return await self._call(
                self.zkill_breaker,
                lambda: self.zkill.get_character_history(character_id, kind, page),
                self.config.zkill_timeout,
                f"zKillboard {kind} page {page} for {character_id}",
            )
        except InvalidUpstreamPayload:
            raise
        except Exception as e:
            raise IndexUnavailable(None, _failure_reason(e), e) from e

    def get_breaker_states(self) -> dict[str, BreakerState]:
        return {
            self.zkill_breaker.name: self.zkill_breaker.get_state(),
            self.esi_breaker.name: self.esi_breaker.get_state(),
        }

    def reset_breakers(self) -> None:
        self.zkill_breaker.reset()
        self.esi_breaker.reset()
