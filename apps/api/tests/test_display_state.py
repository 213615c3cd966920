from datetime import datetime, timedelta
from itertools import product

import pytest

from famcare.display_state import DisplayStateMachine, RenderMode, is_night_window, resolve_mode
from famcare.schemas import DisplayControl, DisplaySettings, DisplayView, MomMessage, Photo, Tutorial

FAMILY = "fam-1"
T0 = datetime(2025, 3, 4, 12, 0, 0)


def _settings(**overrides) -> DisplaySettings:
    data = {
        "family_id": FAMILY,
        "screensaver_timeout": 300,
        "photo_interval": 30,
        "night_mode_start": "22:00",
        "night_mode_end": "06:00",
    }
    data.update(overrides)
    return DisplaySettings(**data)


def _photos():
    return [
        Photo(id="photo-b", url="https://img/b.jpg", display_order=1),
        Photo(id="photo-a", url="https://img/a.jpg", display_order=0),
        Photo(id="photo-hidden", url="https://img/x.jpg", display_order=2, is_active=False),
    ]


def _machine(*, photos=None, unread=(), settings=None, now=T0) -> DisplayStateMachine:
    return DisplayStateMachine(
        settings or _settings(),
        _photos() if photos is None else photos,
        unread,
        clock=lambda: now,
        now=now,
    )


def _control(view: DisplayView, version: int, **fields) -> DisplayControl:
    return DisplayControl(family_id=FAMILY, current_view=view, version=version, **fields)


def _urgent(message_id: str = "msg-1", created_at: datetime = T0) -> MomMessage:
    return MomMessage(id=message_id, family_id=FAMILY, message="Call Jerry", is_urgent=True, created_at=created_at)


def test_resolve_mode_selects_exactly_one_mode_for_every_input():
    views = list(DisplayView)
    flags = [True, False]
    for view, urgent, tutorial, adhoc, remote, idle, night, photos in product(views, *([flags] * 7)):
        mode = resolve_mode(
            urgent_pending=urgent,
            control_view=view,
            tutorial_ready=tutorial,
            adhoc_message=adhoc,
            remote_screensaver=remote,
            idle=idle,
            night=night,
            has_photos=photos,
        )
        assert isinstance(mode, RenderMode)
        if urgent:
            assert mode is RenderMode.URGENT_MESSAGE


def test_resolve_mode_precedence_order():
    base = dict(
        urgent_pending=False,
        control_view=DisplayView.DASHBOARD,
        tutorial_ready=False,
        adhoc_message=False,
        remote_screensaver=False,
        idle=False,
        night=False,
        has_photos=True,
    )
    assert resolve_mode(**base) is RenderMode.DASHBOARD
    assert resolve_mode(**{**base, "night": True, "has_photos": False}) is RenderMode.NIGHT
    assert resolve_mode(**{**base, "night": True}) is RenderMode.SCREENSAVER
    assert resolve_mode(**{**base, "idle": True, "has_photos": False}) is RenderMode.DASHBOARD
    assert (
        resolve_mode(**{**base, "control_view": DisplayView.TUTORIAL, "tutorial_ready": True, "idle": True})
        is RenderMode.TUTORIAL
    )
    assert (
        resolve_mode(**{**base, "control_view": DisplayView.TUTORIAL, "tutorial_ready": False})
        is RenderMode.DASHBOARD
    )
    assert (
        resolve_mode(**{**base, "control_view": DisplayView.MESSAGE, "adhoc_message": True, "night": True})
        is RenderMode.URGENT_MESSAGE
    )


@pytest.mark.parametrize("hour", [22, 23, 0, 3, 5])
def test_night_window_wraps_midnight(hour):
    assert is_night_window(hour, "22:00", "06:00")


@pytest.mark.parametrize("hour", range(6, 22))
def test_daytime_hours_are_not_night(hour):
    assert not is_night_window(hour, "22:00", "06:00")


def test_night_window_unset_or_malformed_is_never_night():
    assert not is_night_window(23, None, "06:00")
    assert not is_night_window(23, "late", "06:00")


def test_idle_screensaver_rotates_photos_in_display_order():
    machine = _machine()
    assert machine.evaluate(T0).mode is RenderMode.DASHBOARD
    assert machine.evaluate(T0 + timedelta(seconds=300)).mode is RenderMode.DASHBOARD

    first = machine.evaluate(T0 + timedelta(seconds=301))
    assert first.mode is RenderMode.SCREENSAVER
    assert first.photo.id == "photo-a"

    second = machine.evaluate(T0 + timedelta(seconds=331))
    assert second.photo.id == "photo-b"

    wrapped = machine.evaluate(T0 + timedelta(seconds=361))
    assert wrapped.photo.id == "photo-a"

    woken = machine.interaction(T0 + timedelta(seconds=365))
    assert woken.mode is RenderMode.DASHBOARD


def test_idle_without_photos_stays_on_dashboard():
    machine = _machine(photos=[])
    frame = machine.evaluate(T0 + timedelta(hours=1))
    assert frame.idle
    assert frame.mode is RenderMode.DASHBOARD
    assert frame.photo is None


def test_night_without_photos_shows_clock_and_interaction_wakes_it():
    night = datetime(2025, 3, 4, 23, 0, 0)
    machine = _machine(photos=[], now=night)
    assert machine.evaluate(night).mode is RenderMode.NIGHT

    awake = machine.interaction(night + timedelta(seconds=5))
    assert awake.mode is RenderMode.DASHBOARD
    assert awake.night

    again = machine.evaluate(night + timedelta(seconds=5 + 301))
    assert again.mode is RenderMode.NIGHT


def test_urgent_message_preempts_screensaver_and_alerts_once():
    machine = _machine()
    idle_at = T0 + timedelta(seconds=400)
    assert machine.evaluate(idle_at).mode is RenderMode.SCREENSAVER

    machine.message_inserted(_urgent())
    frame = machine.evaluate(idle_at + timedelta(seconds=1))
    assert frame.mode is RenderMode.URGENT_MESSAGE
    assert frame.message["id"] == "msg-1"
    alerts = machine.drain_alerts()
    assert [alert.key for alert in alerts] == ["msg-1"]

    machine.evaluate(idle_at + timedelta(seconds=2))
    assert machine.drain_alerts() == []


def test_urgent_message_preempts_tutorial_and_night():
    night = datetime(2025, 3, 4, 23, 30, 0)
    machine = _machine(now=night)
    tutorial = Tutorial(id="tut-1", title="Video call")
    machine.apply_control(_control(DisplayView.TUTORIAL, 1, content_id="tut-1"), tutorial=tutorial, received_at=night)
    machine.message_inserted(_urgent(created_at=night))
    assert machine.evaluate(night).mode is RenderMode.URGENT_MESSAGE


def test_acknowledge_falls_through_to_next_state():
    machine = _machine()
    machine.message_inserted(_urgent())
    assert machine.evaluate(T0).mode is RenderMode.URGENT_MESSAGE

    acked = machine.acknowledge(now=T0 + timedelta(seconds=10))
    assert acked.id == "msg-1"
    frame = machine.evaluate(T0 + timedelta(seconds=11))
    assert frame.mode is RenderMode.DASHBOARD
    assert frame.unread_count == 0


def test_non_urgent_message_only_counts_as_unread():
    machine = _machine()
    machine.message_inserted(MomMessage(id="msg-2", message="Hi mom", created_at=T0))
    frame = machine.evaluate(T0)
    assert frame.mode is RenderMode.DASHBOARD
    assert frame.unread_count == 1
    assert frame.latest_unread.id == "msg-2"


def test_read_update_removes_message():
    machine = _machine()
    machine.message_inserted(_urgent())
    machine.message_inserted(_urgent().model_copy(update={"is_read": True}))
    assert machine.evaluate(T0).mode is RenderMode.DASHBOARD


def test_preloaded_urgent_message_is_shown_without_alert():
    machine = _machine(unread=[_urgent()])
    assert machine.evaluate(T0).mode is RenderMode.URGENT_MESSAGE
    assert machine.drain_alerts() == []


def test_tutorial_push_requires_resolved_tutorial():
    machine = _machine()
    machine.apply_control(_control(DisplayView.TUTORIAL, 1, content_id="missing"), tutorial=None, received_at=T0)
    assert machine.evaluate(T0).mode is RenderMode.DASHBOARD

    tutorial = Tutorial(id="tut-1", title="Video call", video_url="https://www.youtube.com/watch?v=abc")
    machine.apply_control(_control(DisplayView.TUTORIAL, 2, content_id="tut-1"), tutorial=tutorial, received_at=T0)
    frame = machine.evaluate(T0)
    assert frame.mode is RenderMode.TUTORIAL
    assert frame.as_payload()["tutorial"]["embed_url"] == "https://www.youtube.com/embed/abc"

    machine.dismiss(T0 + timedelta(seconds=1))
    assert machine.evaluate(T0 + timedelta(seconds=2)).mode is RenderMode.DASHBOARD


def test_stale_control_push_is_discarded():
    machine = _machine()
    assert machine.apply_control(_control(DisplayView.SCREENSAVER, 5), received_at=T0)
    assert not machine.apply_control(_control(DisplayView.DASHBOARD, 4), received_at=T0)
    assert not machine.apply_control(_control(DisplayView.DASHBOARD, 5), received_at=T0)
    assert machine.control.current_view is DisplayView.SCREENSAVER

    assert machine.apply_control(_control(DisplayView.DASHBOARD, 6), received_at=T0)
    assert machine.evaluate(T0).mode is RenderMode.DASHBOARD


def test_stale_push_falls_back_to_updated_at():
    machine = _machine()
    newer = DisplayControl(family_id=FAMILY, current_view=DisplayView.SCREENSAVER, updated_at=T0)
    older = DisplayControl(family_id=FAMILY, current_view=DisplayView.DASHBOARD, updated_at=T0 - timedelta(seconds=1))
    assert machine.apply_control(newer, received_at=T0)
    assert machine.is_stale(older)


def test_remote_screensaver_and_interaction_cancels_it():
    machine = _machine()
    machine.apply_control(_control(DisplayView.SCREENSAVER, 1), received_at=T0)
    frame = machine.evaluate(T0 + timedelta(seconds=1))
    assert frame.mode is RenderMode.SCREENSAVER
    assert frame.photo.id == "photo-a"

    assert machine.interaction(T0 + timedelta(seconds=2)).mode is RenderMode.DASHBOARD


def test_remote_screensaver_without_photos_falls_through():
    machine = _machine(photos=[])
    machine.apply_control(_control(DisplayView.SCREENSAVER, 1), received_at=T0)
    assert machine.evaluate(T0).mode is RenderMode.DASHBOARD


def test_adhoc_message_push_alerts_and_dismisses():
    machine = _machine()
    machine.apply_control(
        _control(DisplayView.MESSAGE, 3, content_data={"message": "Dinner at 7", "is_urgent": True}),
        received_at=T0,
    )
    frame = machine.evaluate(T0)
    assert frame.mode is RenderMode.URGENT_MESSAGE
    assert frame.message["message"] == "Dinner at 7"
    assert [alert.key for alert in machine.drain_alerts()] == ["control:3"]

    machine.dismiss(T0 + timedelta(seconds=5))
    assert machine.evaluate(T0 + timedelta(seconds=6)).mode is RenderMode.DASHBOARD


def test_message_push_without_text_is_ignored():
    machine = _machine()
    machine.apply_control(_control(DisplayView.MESSAGE, 1, content_data={}), received_at=T0)
    assert machine.evaluate(T0).mode is RenderMode.DASHBOARD


def test_urgent_message_and_matching_push_alert_once_and_ack_together():
    machine = _machine()
    machine.message_inserted(_urgent("msg-9"))
    machine.apply_control(
        _control(
            DisplayView.MESSAGE,
            7,
            content_data={"message": "Call Jerry", "is_urgent": True, "message_id": "msg-9"},
        ),
        received_at=T0,
    )
    assert machine.evaluate(T0).mode is RenderMode.URGENT_MESSAGE
    machine.acknowledge(now=T0 + timedelta(seconds=1))
    assert machine.evaluate(T0 + timedelta(seconds=2)).mode is RenderMode.DASHBOARD
    assert [alert.key for alert in machine.drain_alerts()] == ["msg-9"]


def test_push_after_acknowledged_message_stays_hidden():
    machine = _machine()
    machine.message_inserted(_urgent("msg-3"))
    machine.acknowledge("msg-3", now=T0)
    machine.apply_control(
        _control(DisplayView.MESSAGE, 2, content_data={"message": "Call Jerry", "message_id": "msg-3"}),
        received_at=T0 + timedelta(seconds=1),
    )
    assert machine.evaluate(T0 + timedelta(seconds=2)).mode is RenderMode.DASHBOARD


def test_latest_urgent_message_is_shown_first():
    machine = _machine()
    machine.message_inserted(_urgent("old", created_at=T0 - timedelta(minutes=5)))
    machine.message_inserted(_urgent("new", created_at=T0))
    assert machine.evaluate(T0).message["id"] == "new"
    machine.acknowledge(now=T0)
    assert machine.evaluate(T0).message["id"] == "old"


def test_frame_signature_ignores_timestamp():
    machine = _machine()
    first = machine.evaluate(T0)
    second = machine.evaluate(T0 + timedelta(seconds=1))
    assert first.signature() == second.signature()
    assert first.as_payload()["type"] == "frame"


def test_alert_bookkeeping_is_pruned_when_control_is_replaced():
    machine = _machine()
    for version in range(1, 6):
        machine.apply_control(
            _control(DisplayView.MESSAGE, version, content_data={"message": f"Note {version}"}),
            received_at=T0,
        )
        machine.evaluate(T0)
        machine.dismiss(T0)
    machine.message_inserted(_urgent("msg-live"))
    machine.evaluate(T0)
    machine.acknowledge("msg-old", now=T0)

    machine.apply_control(_control(DisplayView.DASHBOARD, 6), received_at=T0)

    assert machine._alerted == {"msg-live"}
    assert machine._acknowledged == set()
    assert len(machine.drain_alerts()) == 6


def test_pruning_keeps_acknowledgement_of_the_pushed_message():
    machine = _machine()
    machine.message_inserted(_urgent("msg-4"))
    machine.acknowledge("msg-4", now=T0)
    machine.apply_control(
        _control(DisplayView.MESSAGE, 3, content_data={"message": "Call Jerry", "message_id": "msg-4"}),
        received_at=T0 + timedelta(seconds=1),
    )
    assert machine.evaluate(T0 + timedelta(seconds=2)).mode is RenderMode.DASHBOARD


def test_sync_unread_adds_missed_and_drops_read_messages():
    machine = _machine(unread=[_urgent("msg-read-elsewhere")])
    machine.sync_unread([_urgent("msg-missed")])

    assert [message.id for message in machine.unread] == ["msg-missed"]
    machine.evaluate(T0)
    assert [alert.key for alert in machine.drain_alerts()] == ["msg-missed"]


def test_pending_acknowledgement_does_not_change_state():
    machine = _machine()
    machine.message_inserted(_urgent("msg-5"))

    assert machine.pending_acknowledgement().id == "msg-5"
    assert machine.pending_acknowledgement("unknown") is None
    assert [message.id for message in machine.unread] == ["msg-5"]
