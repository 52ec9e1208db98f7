"""
Wanderer-Kills Websocket Client.

Push-subscription consumer speaking the Phoenix channel protocol (v2 JSON
serializer). Frames are arrays ``[join_ref, ref, topic, event, payload]``.

Connection lifecycle, repeated on every reconnect:
1. Open the socket and join ``killmails:lobby``
2. Replay every character and system subscription
3. Start the heartbeat and the receive loop

Events that arrive before step 2 completes are buffered and handled
afterwards, so no killmail is processed against a half-built subscription.
"""

from __future__ import annotations

import asyncio
import json
from collections import Counter, deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, NamedTuple, Optional

import websockets
from pydantic import ValidationError

from ...core.logging import get_logger
from ...core.retry import InvalidUpstreamPayload, compute_backoff
from ..ingestion.models import IngestResult, Origin
from .models import KillCountUpdate, KillmailUpdate, PreloadConfig, WandererKillmail

if TYPE_CHECKING:
    from ..ingestion.coordinator import IngestionCoordinator

logger = get_logger(__name__)

LOBBY_TOPIC = "killmails:lobby"
PHOENIX_TOPIC = "phoenix"

DEFAULT_HEARTBEAT_SECONDS = 30.0
DEFAULT_RECONNECT_INITIAL_DELAY = 1.0
DEFAULT_RECONNECT_MAX_DELAY = 60.0
DEFAULT_REPLY_TIMEOUT = 10.0


class ChannelError(Exception):
    """The server rejected a join or closed the channel."""


# =============================================================================
# Wire Format
# =============================================================================


class PhoenixFrame(NamedTuple):
    join_ref: Optional[str]
    ref: Optional[str]
    topic: str
    event: str
    payload: Any


def encode_frame(
    join_ref: Optional[str], ref: Optional[str], topic: str, event: str, payload: Any
) -> str:
    return json.dumps([join_ref, ref, topic, event, payload])


def decode_frame(raw: str | bytes) -> PhoenixFrame:
    """
    Decode a v2 serializer frame.

    Raises:
        InvalidUpstreamPayload: If the frame is not a 5-element array
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise InvalidUpstreamPayload("Websocket frame is not JSON", service="wanderer") from e
    if not isinstance(data, list) or len(data) != 5:
        raise InvalidUpstreamPayload(
            f"Websocket frame is not a Phoenix message: {str(raw)[:100]}", service="wanderer"
        )
    join_ref, ref, topic, event, payload = data
    return PhoenixFrame(join_ref, ref, str(topic), str(event), payload)


def socket_url(url: str) -> str:
    """Append the v2 serializer version if the URL does not pin one."""
    if "vsn=" in url:
        return url
    return f"{url}{'&' if '?' in url else '?'}vsn=2.0.0"


# =============================================================================
# Configuration and Status
# =============================================================================


@dataclass
class WandererConfig:
    enabled: bool = False
    url: str = "ws://localhost:4004/socket/websocket"
    max_characters: int = 1000
    max_systems: int = 100
    preload: PreloadConfig = field(default_factory=PreloadConfig)
    heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS
    reconnect_initial_delay: float = DEFAULT_RECONNECT_INITIAL_DELAY
    reconnect_max_delay: float = DEFAULT_RECONNECT_MAX_DELAY
    reply_timeout: float = DEFAULT_REPLY_TIMEOUT

    @classmethod
    def from_settings(cls, settings: Any) -> WandererConfig:
        return cls(
            enabled=settings.websocket_enabled,
            url=settings.websocket_url,
            max_characters=settings.websocket_max_characters,
            max_systems=settings.websocket_max_systems,
            preload=PreloadConfig(
                enabled=settings.websocket_preload_enabled,
                limit_per_system=settings.websocket_preload_limit_per_system,
                since_hours=settings.websocket_preload_since_hours,
                delivery_batch_size=settings.websocket_preload_delivery_batch_size,
                delivery_interval_ms=settings.websocket_preload_delivery_interval_ms,
            ),
        )


@dataclass
class WebsocketStatus:
    is_running: bool = False
    connected: bool = False
    reconnects: int = 0
    subscribed_characters: int = 0
    subscribed_systems: int = 0
    events_received: int = 0
    killmails_received: int = 0
    invalid_killmails: int = 0
    last_event_time: Optional[datetime] = None
    outcomes: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "connected": self.connected,
            "reconnects": self.reconnects,
            "subscribed_characters": self.subscribed_characters,
            "subscribed_systems": self.subscribed_systems,
            "events_received": self.events_received,
            "killmails_received": self.killmails_received,
            "invalid_killmails": self.invalid_killmails,
            "last_event_time": self.last_event_time.isoformat() if self.last_event_time else None,
            "outcomes": dict(self.outcomes),
        }


# =============================================================================
# Client
# =============================================================================


class WandererKillsClient:
    """
    Websocket consumer for wanderer-kills.

    Args:
        config: Connection and subscription settings
        coordinator: Ingestion entry point (origin=realtime)
        connect: Socket factory, ``websockets.connect`` by default (tests inject fakes)
        sleep: Override for reconnect backoff sleep (tests)
    """

    def __init__(
        self,
        config: WandererConfig,
        coordinator: IngestionCoordinator,
        connect: Callable[..., Any] = websockets.connect,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.coordinator = coordinator
        self._connect = connect
        self._sleep = sleep

        self._characters: set[int] = set()
        self._systems: set[int] = set()

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._ws: Any = None
        self._send_lock = asyncio.Lock()
        self._ref = 0
        self._join_ref: Optional[str] = None
        self._backlog: deque[PhoenixFrame] = deque()

        # Metrics
        self._connected = False
        self._reconnects = 0
        self._events_received = 0
        self._killmails_received = 0
        self._invalid_killmails = 0
        self._last_event_time: Optional[datetime] = None
        self._outcomes: Counter = Counter()

    # -------------------------------------------------------------------------
    # Subscription state
    # -------------------------------------------------------------------------

    @property
    def characters(self) -> frozenset[int]:
        return frozenset(self._characters)

    @property
    def systems(self) -> frozenset[int]:
        return frozenset(self._systems)

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _cap(self, current: set[int], new: Iterable[int], limit: int, kind: str) -> list[int]:
        """Ids from ``new`` that fit under ``limit``; the rest are dropped with a warning."""
        fresh = sorted(set(new) - current)
        room = max(0, limit - len(current))
        if len(fresh) > room:
            logger.warning(
                "%s subscription cap %d reached, dropping %d ids", kind, limit, len(fresh) - room
            )
            fresh = fresh[:room]
        return fresh

    def _preload_payload(self) -> Optional[dict[str, Any]]:
        preload = self.config.preload
        if not preload.enabled:
            return None
        return preload.model_dump()

    async def update_character_subscriptions(
        self, add: Iterable[int] = (), remove: Iterable[int] = ()
    ) -> None:
        """
        Change the subscribed character set.

        Pushed immediately when connected; otherwise replayed on the next join.
        """
        removed = sorted(set(remove) & self._characters)
        self._characters.difference_update(removed)
        added = self._cap(self._characters, add, self.config.max_characters, "Character")
        self._characters.update(added)

        if not self._connected:
            return
        if added:
            payload: dict[str, Any] = {"character_ids": added}
            preload = self._preload_payload()
            if preload:
                payload["preload"] = preload
            await self._push("subscribe_characters", payload)
        if removed:
            await self._push("unsubscribe_characters", {"character_ids": removed})

    async def update_system_subscriptions(self, add: Iterable[int] = ()) -> None:
        added = self._cap(self._systems, add, self.config.max_systems, "System")
        self._systems.update(added)
        if self._connected and added:
            payload: dict[str, Any] = {"systems": added}
            preload = self._preload_payload()
            if preload:
                payload["preload"] = preload
            await self._push("subscribe_systems", payload)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            logger.warning("Websocket client already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("Websocket client started (%s)", self.config.url)

    async def stop(self) -> None:
        """Close the socket and stop reconnecting."""
        self._running = False
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug("Error closing websocket: %s", e)
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._connected = False
        logger.info(
            "Websocket client stopped (killmails=%d, reconnects=%d)",
            self._killmails_received,
            self._reconnects,
        )

    async def _run(self) -> None:
        """Reconnect loop with exponential backoff."""
        attempt = 0
        while self._running:
            established = False
            try:
                established = await self._session()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("Websocket session ended: %s", e)
            finally:
                self._connected = False
                self._ws = None

            if not self._running:
                break

            attempt = 1 if established else attempt + 1
            delay = compute_backoff(
                attempt, self.config.reconnect_initial_delay, self.config.reconnect_max_delay
            )
            self._reconnects += 1
            logger.info("Reconnecting websocket in %.1fs (attempt %d)", delay, attempt)
            try:
                await self._sleep(delay)
            except asyncio.CancelledError:
                break

    async def _session(self) -> bool:
        """
        Run one connection until it closes.

        Returns:
            True if the channel was joined (resets the backoff)
        """
        self._backlog.clear()
        async with self._connect(socket_url(self.config.url)) as ws:
            self._ws = ws
            await self._join()
            await self._replay()
            self._connected = True
            logger.info(
                "Websocket joined %s (%d characters, %d systems)",
                LOBBY_TOPIC,
                len(self._characters),
                len(self._systems),
            )

            heartbeat = asyncio.create_task(self._heartbeat_loop())
            try:
                while self._backlog:
                    await self._handle_frame(self._backlog.popleft())
                await self._receive_loop(ws)
            finally:
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass
        return True

    # -------------------------------------------------------------------------
    # Protocol
    # -------------------------------------------------------------------------

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    async def _send(self, frame: str) -> None:
        if self._ws is None:
            raise ChannelError("Websocket not connected")
        async with self._send_lock:
            await self._ws.send(frame)

    async def _push(self, event: str, payload: dict[str, Any]) -> str:
        ref = self._next_ref()
        await self._send(encode_frame(self._join_ref, ref, LOBBY_TOPIC, event, payload))
        logger.debug("Pushed %s (ref=%s)", event, ref)
        return ref

    async def _join(self) -> None:
        """Join the lobby and wait for the server's reply."""
        self._join_ref = self._next_ref()
        payload: dict[str, Any] = {}
        preload = self._preload_payload()
        if preload:
            payload["preload"] = preload
        await self._send(encode_frame(self._join_ref, self._join_ref, LOBBY_TOPIC, "phx_join", payload))

        reply = await self._await_reply(self._join_ref)
        status = reply.payload.get("status") if isinstance(reply.payload, dict) else None
        if status != "ok":
            raise ChannelError(f"Join rejected: {reply.payload!r}")

    async def _await_reply(self, ref: str) -> PhoenixFrame:
        """Read until the reply for ``ref`` arrives, buffering anything else."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.reply_timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ChannelError(f"No reply for ref {ref}")
            raw = await asyncio.wait_for(self._ws.recv(), remaining)
            try:
                frame = decode_frame(raw)
            except InvalidUpstreamPayload as e:
                logger.warning("Dropping frame: %s", e)
                continue
            if frame.event == "phx_reply" and frame.ref == ref:
                return frame
            self._backlog.append(frame)

    async def _replay(self) -> None:
        """Re-send every subscription after a (re)join."""
        preload = self._preload_payload()
        if self._characters:
            payload: dict[str, Any] = {"character_ids": sorted(self._characters)}
            if preload:
                payload["preload"] = preload
            await self._push("subscribe_characters", payload)
        if self._systems:
            payload = {"systems": sorted(self._systems)}
            if preload:
                payload["preload"] = preload
            await self._push("subscribe_systems", payload)

    async def _heartbeat_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.config.heartbeat_seconds)
                await self._send(encode_frame(None, self._next_ref(), PHOENIX_TOPIC, "heartbeat", {}))
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("Heartbeat failed: %s", e)
                break

    async def _receive_loop(self, ws: Any) -> None:
        async for raw in ws:
            try:
                frame = decode_frame(raw)
            except InvalidUpstreamPayload as e:
                logger.warning("Dropping frame: %s", e)
                continue
            await self._handle_frame(frame)

    async def _handle_frame(self, frame: PhoenixFrame) -> None:
        event = frame.event
        if event == "phx_reply":
            status = frame.payload.get("status") if isinstance(frame.payload, dict) else None
            if status != "ok":
                logger.warning("Push %s rejected: %r", frame.ref, frame.payload)
            return
        if event in ("phx_error", "phx_close") and frame.topic == LOBBY_TOPIC:
            raise ChannelError(f"Channel {event}")

        self._events_received += 1
        self._last_event_time = datetime.now(timezone.utc)

        if event == "killmail_update":
            await self._handle_killmail_update(frame.payload)
        elif event == "kill_count_update":
            try:
                update = KillCountUpdate.model_validate(frame.payload)
                logger.debug("Kill count for system %d: %d", update.system_id, update.count)
            except ValidationError as e:
                logger.debug("Invalid kill_count_update: %s", e)
        else:
            logger.debug("Ignoring websocket event %s on %s", event, frame.topic)

    async def _handle_killmail_update(self, payload: Any) -> list[IngestResult]:
        try:
            update = KillmailUpdate.model_validate(payload)
        except ValidationError as e:
            logger.warning("Invalid killmail_update payload: %s", e)
            return []

        results = []
        for raw in update.killmails:
            self._killmails_received += 1
            if not isinstance(raw, dict):
                self._invalid_killmails += 1
                logger.warning(
                    "Non-object killmail entry in system %d: %r", update.system_id, raw
                )
                continue
            try:
                draft = WandererKillmail.model_validate(raw).to_draft()
            except ValidationError as e:
                self._invalid_killmails += 1
                logger.warning(
                    "Invalid killmail %s in system %d: %s",
                    raw.get("killmail_id", "?"),
                    update.system_id,
                    e.error_count(),
                )
                continue

            try:
                # Shielded so stop() never interrupts a write; the runtime drains it
                result = await asyncio.shield(
                    self.coordinator.ingest_draft(draft, Origin.REALTIME)
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Failed to ingest killmail %d: %s", draft.killmail_id, e)
                continue
            self._outcomes[result.outcome.value] += 1
            results.append(result)

        if update.preload:
            logger.debug("Preload batch for system %d: %d killmails", update.system_id, len(results))
        return results

    def get_status(self) -> WebsocketStatus:
        return WebsocketStatus(
            is_running=self._running,
            connected=self._connected,
            reconnects=self._reconnects,
            subscribed_characters=len(self._characters),
            subscribed_systems=len(self._systems),
            events_received=self._events_received,
            killmails_received=self._killmails_received,
            invalid_killmails=self._invalid_killmails,
            last_event_time=self._last_event_time,
            outcomes=dict(self._outcomes),
        )
