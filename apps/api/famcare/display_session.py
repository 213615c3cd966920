"""Per-family runtime that feeds the display state machine and pushes frames."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, AsyncIterator, Callable, Dict, Optional, Set

from fastapi import HTTPException
from pydantic import ValidationError

from .config import CONFIG
from .db import (
    fetch_display_control,
    fetch_display_settings,
    fetch_photos,
    fetch_tutorial,
    fetch_unread_messages,
)
from .display_state import DisplayFrame, DisplayStateMachine
from .realtime import (
    CONTROL_TABLE,
    MESSAGES_TABLE,
    ChangeEvent,
    ChangeSource,
    backoff_delay,
    build_change_source,
)
from .schemas import DisplayControl, DisplayView, MomMessage, Tutorial
from .supabase import AuthContext, SupabaseClient

logger = logging.getLogger(__name__)

TICK_SECONDS = 1.0
ALERT_VOLUME = 0.5


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class DisplaySession:
    def __init__(
        self,
        family_id: str,
        supabase: SupabaseClient,
        source: ChangeSource,
        *,
        access_token: Optional[str] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.family_id = family_id
        self.supabase = supabase
        self.source = source
        self.access_token = access_token
        self._clock = clock
        self.machine: Optional[DisplayStateMachine] = None
        self.clients: Set[Any] = set()
        self._stream: Optional[AsyncIterator[ChangeEvent]] = None
        self._tasks: list[asyncio.Task] = []
        self._last_signature: Optional[tuple] = None

    # lifecycle ----------------------------------------------------------------

    async def load(self) -> DisplayStateMachine:
        settings = await fetch_display_settings(self.supabase, self.family_id)
        photos = await fetch_photos(self.supabase, self.family_id)
        unread = await fetch_unread_messages(self.supabase, self.family_id)
        control = await fetch_display_control(self.supabase, self.family_id)
        machine = DisplayStateMachine(settings, photos, unread, clock=self._clock)
        if control is not None:
            machine.apply_control(control, tutorial=await self._resolve_tutorial(control))
        self.machine = machine
        return machine

    def _token(self) -> Optional[str]:
        return self.access_token

    def _subscribe(self) -> AsyncIterator[ChangeEvent]:
        return self.source.subscribe(self.family_id, self._token)

    async def reconcile(self, now: Optional[datetime] = None) -> None:
        """Re-read the display rows after a gap in the change stream."""
        machine = self.machine
        if machine is None:
            await self.load()
            await self.publish(now, force=True)
            return
        control = await fetch_display_control(self.supabase, self.family_id)
        if control is not None and not machine.is_stale(control):
            machine.apply_control(control, tutorial=await self._resolve_tutorial(control), received_at=now)
        machine.sync_unread(await fetch_unread_messages(self.supabase, self.family_id))
        machine.set_photos(await fetch_photos(self.supabase, self.family_id))
        logger.info("display state reconciled", extra={"family_id": self.family_id})
        await self.publish(now, force=True)

    async def start(self) -> None:
        # subscribe before loading so nothing written in between is missed
        self._stream = self._subscribe()
        await self.load()
        self._tasks = [
            asyncio.create_task(self._consume(), name=f"display-consume-{self.family_id}"),
            asyncio.create_task(self._tick(), name=f"display-tick-{self.family_id}"),
        ]
        logger.info("display session started", extra={"family_id": self.family_id})

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("display task failed", extra={"family_id": self.family_id, "task": task.get_name()})
        self._tasks = []
        await self._close_stream()
        logger.info("display session stopped", extra={"family_id": self.family_id})

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        closer = getattr(stream, "aclose", None)
        if closer is None:
            return
        try:
            await closer()
        except Exception as exc:
            logger.debug("change stream close failed", extra={"family_id": self.family_id, "error": str(exc)})

    async def _consume(self) -> None:
        while True:
            stream = self._stream
            assert stream is not None
            try:
                async for event in stream:
                    try:
                        await self.handle_event(event)
                    except (ValidationError, HTTPException) as exc:
                        logger.warning(
                            "display event skipped",
                            extra={"family_id": self.family_id, "table": event.table, "error": str(exc)},
                        )
                return
            except Exception as exc:
                await self._resubscribe(exc)

    async def _resubscribe(self, exc: Exception) -> None:
        status = self.source.status(self.family_id)
        status.mark_disconnected(str(exc) or exc.__class__.__name__)
        logger.exception(
            "display change stream failed",
            extra={"family_id": self.family_id, "attempt": status.attempts},
        )
        await self.publish(force=True)
        await self._close_stream()
        await asyncio.sleep(
            backoff_delay(status.attempts, CONFIG.reconnect_initial_delay, CONFIG.reconnect_max_delay)
        )
        self._stream = self._subscribe()
        try:
            await self.reconcile()
        except HTTPException as err:
            logger.warning(
                "display reconcile failed",
                extra={"family_id": self.family_id, "status": err.status_code},
            )

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(TICK_SECONDS)
            await self.publish()

    # inputs -------------------------------------------------------------------

    async def _resolve_tutorial(self, control: DisplayControl) -> Optional[Tutorial]:
        if control.current_view is not DisplayView.TUTORIAL or not control.content_id:
            return None
        try:
            return await fetch_tutorial(self.supabase, control.content_id)
        except HTTPException as exc:
            logger.warning(
                "tutorial lookup failed",
                extra={"family_id": self.family_id, "tutorial_id": control.content_id, "status": exc.status_code},
            )
            return None

    async def handle_event(self, event: ChangeEvent, now: Optional[datetime] = None) -> None:
        if event.is_resync:
            await self.reconcile(now)
            return
        machine = self.machine or await self.load()
        record = event.record or {}
        if record.get("family_id") not in (None, self.family_id):
            return
        if event.table == CONTROL_TABLE:
            if event.type == "DELETE":
                return
            control = DisplayControl.model_validate({**record, "family_id": self.family_id})
            if machine.is_stale(control):
                logger.debug(
                    "stale display push discarded",
                    extra={"family_id": self.family_id, "version": control.version},
                )
                return
            tutorial = await self._resolve_tutorial(control)
            machine.apply_control(control, tutorial=tutorial, received_at=now)
        elif event.table == MESSAGES_TABLE:
            machine.message_inserted(MomMessage.model_validate(record))
        else:
            return
        await self.publish(now, force=True)

    async def refresh_photos(self) -> None:
        if self.machine is None:
            return
        self.machine.set_photos(await fetch_photos(self.supabase, self.family_id))
        await self.publish(force=True)

    async def refresh_settings(self) -> None:
        if self.machine is None:
            return
        self.machine.settings = await fetch_display_settings(self.supabase, self.family_id)
        await self.publish(force=True)

    async def interaction(self, now: Optional[datetime] = None) -> DisplayFrame:
        machine = self.machine or await self.load()
        machine.interaction(now)
        return await self.publish(now, force=True)

    async def dismiss(self, now: Optional[datetime] = None) -> DisplayFrame:
        machine = self.machine or await self.load()
        machine.dismiss(now)
        return await self.publish(now, force=True)

    async def acknowledge(
        self,
        message_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[MomMessage]:
        machine = self.machine or await self.load()
        moment = now or self._clock()
        # persist first so a failed write leaves the message on screen
        target = machine.pending_acknowledgement(message_id)
        if target is not None:
            await self.supabase.update(
                MESSAGES_TABLE,
                {"is_read": True, "read_at": moment.isoformat()},
                params={"id": f"eq.{target.id}", "family_id": f"eq.{self.family_id}"},
            )
            message_id = target.id
        message = machine.acknowledge(message_id, now=moment)
        await self.publish(moment, force=True)
        return message

    # output -------------------------------------------------------------------

    def connection(self) -> Dict[str, Any]:
        return self.source.status(self.family_id).as_payload()

    def snapshot(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        assert self.machine is not None
        frame = self.machine.evaluate(now)
        return {**frame.as_payload(), "connection": self.connection()}

    async def publish(self, now: Optional[datetime] = None, *, force: bool = False) -> DisplayFrame:
        machine = self.machine or await self.load()
        frame = machine.evaluate(now)
        connection = self.connection()
        for alert in machine.drain_alerts():
            await self._send_all(
                {
                    "type": "alert",
                    "sound": CONFIG.notification_sound,
                    "volume": ALERT_VOLUME,
                    "message": alert.message,
                }
            )
        signature = (*frame.signature(), connection["connected"], connection["stale_since"])
        if force or signature != self._last_signature:
            self._last_signature = signature
            await self._send_all({**frame.as_payload(), "connection": connection})
        return frame

    async def send_current(self, client: Any) -> None:
        if self.machine is None:
            return
        try:
            await client.send_json(self.snapshot())
        except Exception as exc:
            logger.debug("display send failed", extra={"family_id": self.family_id, "error": str(exc)})
            self.clients.discard(client)

    async def _send_all(self, payload: Dict[str, Any]) -> None:
        dead = []
        for client in list(self.clients):
            try:
                await client.send_json(payload)
            except Exception as exc:
                # alert sounds and frames are best-effort per client
                logger.debug(
                    "display send failed",
                    extra={"family_id": self.family_id, "type": payload.get("type"), "error": str(exc)},
                )
                dead.append(client)
        for client in dead:
            self.clients.discard(client)


class DisplayHub:
    """One live ``DisplaySession`` per family, torn down with its last screen."""

    def __init__(self, source: ChangeSource) -> None:
        self.source = source
        self._sessions: Dict[str, DisplaySession] = {}
        self._lock = asyncio.Lock()

    def get(self, family_id: str) -> Optional[DisplaySession]:
        return self._sessions.get(family_id)

    async def attach(self, auth: AuthContext, client: Any) -> DisplaySession:
        async with self._lock:
            session = self._sessions.get(auth.family_id)
            if session is None:
                session = DisplaySession(
                    auth.family_id,
                    auth.supabase,
                    self.source,
                    access_token=auth.access_token,
                )
                await session.start()
                self._sessions[auth.family_id] = session
            else:
                session.supabase = auth.supabase
                session.access_token = auth.access_token
            session.clients.add(client)
        await session.send_current(client)
        return session

    async def detach(self, family_id: str, client: Any) -> None:
        async with self._lock:
            session = self._sessions.get(family_id)
            if session is None:
                return
            session.clients.discard(client)
            if not session.clients:
                del self._sessions[family_id]
                await session.stop()

    async def session_for(self, auth: AuthContext) -> DisplaySession:
        """Live session when a screen is attached, otherwise a freshly loaded one."""
        session = self._sessions.get(auth.family_id)
        if session is not None:
            return session
        session = DisplaySession(auth.family_id, auth.supabase, self.source, access_token=auth.access_token)
        await session.load()
        return session

    async def shutdown(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            await session.stop()


@lru_cache
def get_display_hub() -> DisplayHub:
    return DisplayHub(build_change_source())
