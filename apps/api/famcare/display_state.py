"""Render-mode resolution for mom's display.

The display shows exactly one of five modes. Inputs are the shared
``DisplayControl`` row (pushed remotely), unread urgent messages, the local
idle timer and the configured night window. Precedence, highest first:

1. an unread urgent message             -> urgent_message
2. control view ``tutorial`` (resolved) -> tutorial
3. control view ``message`` with text   -> urgent_message (ad-hoc, not persisted)
4. remote screensaver, idle or night    -> screensaver, only when photos exist
5. night window                         -> night
6. otherwise                            -> dashboard
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from .schedule import hour_in_range, parse_hour
from .schemas import DisplayControl, DisplaySettings, DisplayView, MomMessage, Photo, Tutorial


class RenderMode(str, Enum):
    NIGHT = "night"
    SCREENSAVER = "screensaver"
    TUTORIAL = "tutorial"
    URGENT_MESSAGE = "urgent_message"
    DASHBOARD = "dashboard"


def is_night_window(hour: int, start: Optional[str], end: Optional[str]) -> bool:
    start_hour = parse_hour(start)
    end_hour = parse_hour(end)
    if start_hour is None or end_hour is None:
        return False
    return hour_in_range(hour, start_hour, end_hour)


def resolve_mode(
    *,
    urgent_pending: bool,
    control_view: DisplayView,
    tutorial_ready: bool,
    adhoc_message: bool,
    remote_screensaver: bool,
    idle: bool,
    night: bool,
    has_photos: bool,
) -> RenderMode:
    if urgent_pending:
        return RenderMode.URGENT_MESSAGE
    if control_view is DisplayView.TUTORIAL and tutorial_ready:
        return RenderMode.TUTORIAL
    if control_view is DisplayView.MESSAGE and adhoc_message:
        return RenderMode.URGENT_MESSAGE
    if (remote_screensaver or idle or night) and has_photos:
        return RenderMode.SCREENSAVER
    if night:
        return RenderMode.NIGHT
    return RenderMode.DASHBOARD


@dataclass
class Alert:
    key: str
    message: Dict[str, Any]


@dataclass
class DisplayFrame:
    mode: RenderMode
    at: datetime
    control_view: DisplayView = DisplayView.DASHBOARD
    control_version: Optional[int] = None
    photo: Optional[Photo] = None
    photo_index: Optional[int] = None
    message: Optional[Dict[str, Any]] = None
    tutorial: Optional[Tutorial] = None
    night: bool = False
    idle: bool = False
    unread_count: int = 0
    latest_unread: Optional[MomMessage] = None

    def signature(self) -> tuple:
        """Everything that changes what the screen draws; ``at`` is excluded."""
        return (
            self.mode,
            self.photo_index,
            (self.message or {}).get("id") or (self.message or {}).get("message"),
            self.tutorial.id if self.tutorial else None,
            self.control_version,
            self.unread_count,
        )

    def as_payload(self) -> Dict[str, Any]:
        return {
            "type": "frame",
            "mode": self.mode.value,
            "at": self.at.isoformat(),
            "control_view": self.control_view.value,
            "control_version": self.control_version,
            "photo": self.photo.model_dump(mode="json") if self.photo else None,
            "photo_index": self.photo_index,
            "message": self.message,
            "tutorial": (
                {**self.tutorial.model_dump(mode="json"), "embed_url": self.tutorial.embed_url}
                if self.tutorial
                else None
            ),
            "night": self.night,
            "idle": self.idle,
            "unread_count": self.unread_count,
            "latest_unread": self.latest_unread.model_dump(mode="json") if self.latest_unread else None,
        }


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _adhoc_payload(control: Optional[DisplayControl]) -> Optional[Dict[str, Any]]:
    if control is None or control.current_view is not DisplayView.MESSAGE:
        return None
    data = control.content_data or {}
    if not data.get("message"):
        return None
    return data


class DisplayStateMachine:
    """Holds the display inputs for one family and resolves them into frames.

    All time-dependent methods take ``now`` explicitly (falling back to the
    injected clock) so transitions can be driven deterministically.
    """

    def __init__(
        self,
        settings: Optional[DisplaySettings] = None,
        photos: Iterable[Photo] = (),
        unread_messages: Iterable[MomMessage] = (),
        *,
        clock: Callable[[], datetime] = _utcnow,
        now: Optional[datetime] = None,
    ) -> None:
        self._clock = clock
        started = now or clock()
        self.settings = settings or DisplaySettings()
        self.photos: List[Photo] = []
        self.set_photos(photos)
        self._unread: Dict[str, MomMessage] = {}
        self._alerted: set[str] = set()
        self._acknowledged: set[str] = set()
        self._alerts: List[Alert] = []
        for message in unread_messages:
            self.message_inserted(message, alert=False)

        self.control: Optional[DisplayControl] = None
        self.tutorial: Optional[Tutorial] = None
        self._control_received_at: Optional[datetime] = None
        self._dismissed_control = False

        self._started_at = started
        self._last_activity = started
        self._last_interaction: Optional[datetime] = None
        self._screensaver_since: Optional[datetime] = None
        self.frame: Optional[DisplayFrame] = None

    # inputs -----------------------------------------------------------------

    def set_photos(self, photos: Iterable[Photo]) -> None:
        active = [photo for photo in photos if photo.is_active]
        self.photos = sorted(active, key=lambda photo: photo.display_order)

    def is_stale(self, control: DisplayControl) -> bool:
        current = self.control
        if current is None:
            return False
        if control.version is not None and current.version is not None:
            return control.version <= current.version
        if control.updated_at is not None and current.updated_at is not None:
            return control.updated_at <= current.updated_at
        return False

    def apply_control(
        self,
        control: DisplayControl,
        *,
        tutorial: Optional[Tutorial] = None,
        received_at: Optional[datetime] = None,
    ) -> bool:
        """Apply a remote control push. Returns False when the push is stale."""
        if self.is_stale(control):
            return False
        received = received_at or self._clock()
        self.control = control
        self.tutorial = tutorial if control.current_view is DisplayView.TUTORIAL else None
        self._control_received_at = received
        self._dismissed_control = False
        # a push counts as activity for the idle timer
        self._last_activity = received
        self._prune()
        return True

    def message_inserted(self, message: MomMessage, *, alert: bool = True) -> None:
        """Track an inserted or updated message row; read rows leave the unread set."""
        if message.is_read:
            self._unread.pop(message.id, None)
            return
        self._unread[message.id] = message
        if not alert:
            self._alerted.add(message.id)

    def sync_unread(self, messages: Iterable[MomMessage]) -> None:
        """Replace the unread set with a fresh read of the table."""
        fresh = {message.id: message for message in messages if not message.is_read}
        for message_id in list(self._unread):
            if message_id not in fresh:
                del self._unread[message_id]
        for message in fresh.values():
            self.message_inserted(message)

    def interaction(self, now: Optional[datetime] = None) -> DisplayFrame:
        moment = now or self._clock()
        self._last_activity = moment
        self._last_interaction = moment
        return self.evaluate(moment)

    def pending_acknowledgement(self, message_id: Optional[str] = None) -> Optional[MomMessage]:
        """The persisted message ``acknowledge`` would mark read, without changing state."""
        if message_id is None:
            return self._shown_urgent()
        return self._unread.get(message_id)

    def acknowledge(
        self,
        message_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[MomMessage]:
        """Acknowledge what mom is looking at.

        With ``message_id`` the persisted message is dropped from the unread
        set and returned so the caller can store ``is_read``. Without it the
        currently shown message is acknowledged, or the ad-hoc message or
        tutorial override is dismissed.
        """
        moment = now or self._clock()
        if message_id is None:
            shown = self._shown_urgent()
            if shown is not None:
                message_id = shown.id
        acknowledged: Optional[MomMessage] = None
        if message_id is not None:
            acknowledged = self._unread.pop(message_id, None)
            self._acknowledged.add(message_id)
            adhoc = _adhoc_payload(self.control)
            if adhoc and adhoc.get("message_id") == message_id:
                self._dismissed_control = True
        elif self.control is not None and self.control.current_view in (
            DisplayView.MESSAGE,
            DisplayView.TUTORIAL,
        ):
            self._dismissed_control = True
        self.interaction(moment)
        return acknowledged

    def dismiss(self, now: Optional[datetime] = None) -> DisplayFrame:
        """Close a tutorial or ad-hoc message without touching persisted rows."""
        if self.control is not None and self.control.current_view in (
            DisplayView.MESSAGE,
            DisplayView.TUTORIAL,
        ):
            self._dismissed_control = True
        return self.interaction(now)

    # evaluation ---------------------------------------------------------------

    @property
    def unread(self) -> List[MomMessage]:
        return list(self._unread.values())

    def _shown_urgent(self) -> Optional[MomMessage]:
        urgent = [message for message in self._unread.values() if message.is_urgent]
        if not urgent:
            return None
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return max(urgent, key=lambda message: message.created_at or epoch)

    def _local_hour(self, now: datetime) -> int:
        if now.tzinfo is None:
            return now.hour
        return now.astimezone(ZoneInfo(self.settings.resolved_timezone)).hour

    def is_idle(self, now: datetime) -> bool:
        timeout = timedelta(seconds=self.settings.idle_timeout_seconds)
        return now - self._last_activity > timeout

    def in_night_window(self, now: datetime) -> bool:
        return is_night_window(
            self._local_hour(now),
            self.settings.night_mode_start,
            self.settings.night_mode_end,
        )

    def _night_active(self, now: datetime) -> bool:
        if not self.in_night_window(now):
            return False
        # an interaction wakes the screen until the idle timeout runs out again
        if self._last_interaction is None:
            return True
        return self.is_idle(now)

    def _remote_screensaver(self) -> bool:
        if self.control is None or self.control.current_view is not DisplayView.SCREENSAVER:
            return False
        if self._last_interaction is None or self._control_received_at is None:
            return True
        return self._last_interaction <= self._control_received_at

    def _photo_at(self, now: datetime, anchor: datetime) -> tuple[Optional[Photo], Optional[int]]:
        if not self.photos:
            return None, None
        interval = self.settings.photo_interval_seconds
        elapsed = max((now - anchor).total_seconds(), 0.0)
        index = int(elapsed // interval) % len(self.photos)
        return self.photos[index], index

    def evaluate(self, now: Optional[datetime] = None) -> DisplayFrame:
        moment = now or self._clock()
        urgent = self._shown_urgent()
        control_view = self.control.current_view if self.control else DisplayView.DASHBOARD
        adhoc = None if self._dismissed_control else _adhoc_payload(self.control)
        if adhoc is not None and adhoc.get("message_id") in self._acknowledged:
            adhoc = None
        tutorial_ready = self.tutorial is not None and not self._dismissed_control
        idle = self.is_idle(moment)
        night = self._night_active(moment)

        mode = resolve_mode(
            urgent_pending=urgent is not None,
            control_view=control_view,
            tutorial_ready=tutorial_ready,
            adhoc_message=adhoc is not None,
            remote_screensaver=self._remote_screensaver() and not self._dismissed_control,
            idle=idle,
            night=night,
            has_photos=bool(self.photos),
        )

        if mode is RenderMode.SCREENSAVER:
            if self._screensaver_since is None:
                self._screensaver_since = moment
            photo, index = self._photo_at(moment, self._screensaver_since)
        else:
            self._screensaver_since = None
            photo, index = self._photo_at(moment, self._started_at)

        message: Optional[Dict[str, Any]] = None
        if mode is RenderMode.URGENT_MESSAGE:
            if urgent is not None:
                message = urgent.model_dump(mode="json")
                self._queue_alert(urgent.id, message)
            elif adhoc is not None:
                message = dict(adhoc)
                key = adhoc.get("message_id") or f"control:{self._control_key()}"
                self._queue_alert(str(key), message)

        latest = None
        if self._unread:
            epoch = datetime.min.replace(tzinfo=timezone.utc)
            latest = max(self._unread.values(), key=lambda item: item.created_at or epoch)

        frame = DisplayFrame(
            mode=mode,
            at=moment,
            control_view=control_view,
            control_version=self.control.version if self.control else None,
            photo=photo,
            photo_index=index,
            message=message,
            tutorial=self.tutorial if mode is RenderMode.TUTORIAL else None,
            night=self.in_night_window(moment),
            idle=idle,
            unread_count=len(self._unread),
            latest_unread=latest,
        )
        self.frame = frame
        return frame

    def tick(self, now: Optional[datetime] = None) -> DisplayFrame:
        return self.evaluate(now)

    # side effects -------------------------------------------------------------

    def _control_key(self) -> str:
        if self.control is None:
            return "none"
        if self.control.version is not None:
            return str(self.control.version)
        if self.control.updated_at is not None:
            return self.control.updated_at.isoformat()
        return str(id(self.control))

    def _prune(self) -> None:
        # only unread rows and the current push can still be shown
        keep = set(self._unread)
        keep.add(f"control:{self._control_key()}")
        adhoc = _adhoc_payload(self.control)
        if adhoc and adhoc.get("message_id"):
            keep.add(str(adhoc["message_id"]))
        self._alerted &= keep
        self._acknowledged &= keep

    def _queue_alert(self, key: str, message: Dict[str, Any]) -> None:
        if key in self._alerted:
            return
        self._alerted.add(key)
        self._alerts.append(Alert(key=key, message=message))

    def drain_alerts(self) -> List[Alert]:
        alerts, self._alerts = self._alerts, []
        return alerts
