"""Change notifications for the display tables.

``ChangeSource.subscribe(family_id)`` yields ``ChangeEvent`` rows for the
``mom_display_control`` and ``mom_messages`` tables of one family. Two
implementations exist: an in-process bus (tests and single-process
deployments) and a Supabase Realtime client speaking the Phoenix channel
protocol over a websocket.
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
import os
import random
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

import websockets
from websockets.exceptions import WebSocketException

from .config import CONFIG

logger = logging.getLogger(__name__)

CONTROL_TABLE = "mom_display_control"
MESSAGES_TABLE = "mom_messages"
# marker event emitted after re-joining; rows written while down were missed
RESYNC_TABLE = "realtime"
RESYNC = "RESYNC"

# a fixed token, or a callable read on every (re)join so refreshed tokens are used
TokenProvider = Union[str, Callable[[], Optional[str]], None]


@dataclass
class ChangeEvent:
    table: str
    type: str
    record: Dict[str, Any] = field(default_factory=dict)
    old_record: Dict[str, Any] = field(default_factory=dict)
    commit_timestamp: Optional[str] = None

    @property
    def is_resync(self) -> bool:
        return self.table == RESYNC_TABLE and self.type == RESYNC


@dataclass
class ConnectionStatus:
    connected: bool = False
    stale_since: Optional[datetime] = None
    attempts: int = 0
    last_error: Optional[str] = None

    def mark_connected(self) -> None:
        self.connected = True
        self.stale_since = None
        self.attempts = 0
        self.last_error = None

    def mark_disconnected(self, error: Optional[str] = None) -> None:
        if self.stale_since is None:
            self.stale_since = datetime.now(tz=timezone.utc)
        self.connected = False
        self.attempts += 1
        self.last_error = error

    def as_payload(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "stale_since": self.stale_since.isoformat() if self.stale_since else None,
            "attempts": self.attempts,
            "last_error": self.last_error,
        }


class ChangeSource(ABC):
    @abstractmethod
    def subscribe(self, family_id: str, access_token: TokenProvider = None) -> AsyncIterator[ChangeEvent]:
        """Return a stream of change events for ``family_id``."""

    def status(self, family_id: str) -> ConnectionStatus:
        return ConnectionStatus(connected=True)

    async def notify_local_write(self, family_id: str, event: ChangeEvent) -> None:
        """Hook for writes made by this process; remote sources echo them anyway."""
        return None


class Subscription:
    """Queue-backed stream registered with an ``InMemoryChangeBus`` on creation."""

    def __init__(self, bus: "InMemoryChangeBus", family_id: str) -> None:
        self._bus = bus
        self.family_id = family_id
        self.queue: asyncio.Queue[Optional[ChangeEvent]] = asyncio.Queue()
        self.closed = False
        bus._subscribers[family_id].append(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        if self.closed:
            raise StopAsyncIteration
        event = await self.queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        subscribers = self._bus._subscribers.get(self.family_id, [])
        if self in subscribers:
            subscribers.remove(self)
        self.queue.put_nowait(None)


class InMemoryChangeBus(ChangeSource):
    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Subscription]] = defaultdict(list)

    def subscribe(self, family_id: str, access_token: TokenProvider = None) -> Subscription:
        return Subscription(self, family_id)

    def subscriber_count(self, family_id: str) -> int:
        return len(self._subscribers.get(family_id, []))

    async def publish(self, family_id: str, event: ChangeEvent) -> None:
        for subscription in list(self._subscribers.get(family_id, [])):
            subscription.queue.put_nowait(event)

    async def notify_local_write(self, family_id: str, event: ChangeEvent) -> None:
        await self.publish(family_id, event)


class RealtimeJoinError(Exception):
    pass


def backoff_delay(
    attempt: int,
    initial: float,
    maximum: float,
    *,
    jitter: Callable[[float, float], float] = random.uniform,
) -> float:
    """Capped exponential backoff with equal jitter; ``attempt`` starts at 1."""
    base = min(initial * (2 ** max(attempt - 1, 0)), maximum)
    return jitter(base / 2, base)


def join_message(family_id: str, access_token: Optional[str], ref: str) -> Dict[str, Any]:
    family_filter = f"family_id=eq.{family_id}"
    return {
        "topic": f"realtime:famcare-display-{family_id}",
        "event": "phx_join",
        "ref": ref,
        "join_ref": ref,
        "payload": {
            "config": {
                "broadcast": {"ack": False, "self": False},
                "presence": {"key": ""},
                "postgres_changes": [
                    {"event": "*", "schema": "public", "table": CONTROL_TABLE, "filter": family_filter},
                    {"event": "INSERT", "schema": "public", "table": MESSAGES_TABLE, "filter": family_filter},
                    {"event": "UPDATE", "schema": "public", "table": MESSAGES_TABLE, "filter": family_filter},
                ],
            },
            "access_token": access_token,
        },
    }


def _decode(raw: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, (str, bytes)):
        return raw if isinstance(raw, dict) else None
    try:
        message = json.loads(raw)
    except ValueError:
        logger.warning("undecodable realtime frame skipped", extra={"size": len(raw)})
        return None
    return message if isinstance(message, dict) else None


def parse_change_message(raw: Any) -> Optional[ChangeEvent]:
    message = _decode(raw)
    if message is None or message.get("event") != "postgres_changes":
        return None
    data = (message.get("payload") or {}).get("data") or {}
    table = data.get("table")
    change_type = data.get("type") or data.get("eventType")
    if not table or not change_type:
        return None
    return ChangeEvent(
        table=table,
        type=str(change_type).upper(),
        record=data.get("record") or {},
        old_record=data.get("old_record") or {},
        commit_timestamp=data.get("commit_timestamp"),
    )


def join_reply(message: Optional[Dict[str, Any]], join_ref: str) -> Optional[str]:
    """``"ok"`` or the error text when ``message`` answers our join, else None."""
    if message is None or message.get("event") != "phx_reply" or message.get("ref") != join_ref:
        return None
    payload = message.get("payload") or {}
    if payload.get("status") == "ok":
        return "ok"
    return json.dumps(payload.get("response") or payload)


def _resolve_token(access_token: TokenProvider) -> Optional[str]:
    return access_token() if callable(access_token) else access_token


class SupabaseRealtimeSource(ChangeSource):
    def __init__(
        self,
        *,
        socket_url: Optional[str] = None,
        api_key: Optional[str] = None,
        heartbeat_seconds: Optional[float] = None,
        initial_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self._socket_url = socket_url
        self._api_key = api_key
        self._heartbeat_seconds = heartbeat_seconds or CONFIG.realtime_heartbeat_seconds
        self._initial_delay = initial_delay or CONFIG.reconnect_initial_delay
        self._max_delay = max_delay or CONFIG.reconnect_max_delay
        self._connect = connect
        self._statuses: Dict[str, ConnectionStatus] = {}
        self._refs = itertools.count(1)

    def _url(self) -> str:
        from .supabase import _supabase_config

        key = self._api_key
        socket = self._socket_url or os.getenv("SUPABASE_REALTIME_URL")
        if not key or not socket:
            base_url, anon_key = _supabase_config()
            key = key or anon_key
            if not socket:
                socket = base_url.replace("https://", "wss://").replace("http://", "ws://")
                socket = f"{socket}/realtime/v1/websocket"
        return f"{socket}?apikey={key}&vsn=1.0.0"

    def status(self, family_id: str) -> ConnectionStatus:
        return self._statuses.setdefault(family_id, ConnectionStatus())

    def subscribe(self, family_id: str, access_token: TokenProvider = None) -> AsyncIterator[ChangeEvent]:
        return self._stream(family_id, access_token)

    async def _heartbeat(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_seconds)
            await ws.send(
                json.dumps({"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": str(next(self._refs))})
            )

    async def _stream(self, family_id: str, access_token: TokenProvider) -> AsyncIterator[ChangeEvent]:
        status = self.status(family_id)
        while True:
            error: Optional[str] = None
            try:
                async with self._connect(self._url()) as ws:
                    join_ref = str(next(self._refs))
                    token = _resolve_token(access_token)
                    await ws.send(json.dumps(join_message(family_id, token, join_ref)))
                    heartbeat = asyncio.create_task(self._heartbeat(ws))
                    try:
                        async for raw in ws:
                            message = _decode(raw)
                            reply = join_reply(message, join_ref)
                            if reply == "ok":
                                resumed = status.stale_since is not None
                                status.mark_connected()
                                logger.info("realtime joined", extra={"family_id": family_id, "resumed": resumed})
                                if resumed:
                                    yield ChangeEvent(table=RESYNC_TABLE, type=RESYNC)
                                continue
                            if reply is not None:
                                raise RealtimeJoinError(reply)
                            event = parse_change_message(message)
                            if event is not None:
                                yield event
                    finally:
                        heartbeat.cancel()
                error = "connection closed"
            except (OSError, asyncio.TimeoutError, WebSocketException, RealtimeJoinError) as exc:
                error = str(exc) or exc.__class__.__name__
            status.mark_disconnected(error)
            delay = backoff_delay(status.attempts, self._initial_delay, self._max_delay)
            logger.warning(
                "realtime disconnected, reconnecting",
                extra={
                    "family_id": family_id,
                    "attempt": status.attempts,
                    "delay": round(delay, 2),
                    "error": error,
                    "stale_since": status.stale_since.isoformat() if status.stale_since else None,
                },
            )
            await asyncio.sleep(delay)


def build_change_source(backend: Optional[str] = None) -> ChangeSource:
    choice = (backend or CONFIG.realtime_backend).lower()
    if choice == "memory":
        return InMemoryChangeBus()
    if choice == "supabase":
        return SupabaseRealtimeSource()
    raise ValueError(f"Unknown realtime backend: {choice}")
