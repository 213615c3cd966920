from __future__ import annotations

import logging
from datetime import datetime, time, timedelta
from typing import Any, Dict

from fastapi import APIRouter, Depends

from ..db import (
    fetch_display_settings,
    fetch_doses,
    fetch_events,
    fetch_holidays,
    fetch_medications,
    fetch_members,
    fetch_photos,
    fetch_rotation,
    fetch_unread_messages,
    medication_progress,
)
from ..schedule import current_window, local_now, next_friday
from ..supabase import AuthContext, get_auth_context

router = APIRouter(prefix="/api/v1", tags=["mom"])
logger = logging.getLogger(__name__)

EVENTS_AHEAD_DAYS = 7
EVENTS_LIMIT = 5
HOLIDAYS_AHEAD_DAYS = 30
HOLIDAYS_LIMIT = 3


@router.get("/mom")
async def mom_dashboard_endpoint(auth: AuthContext = Depends(get_auth_context)) -> Dict[str, Any]:
    """Everything mom's dashboard renders, in one request."""
    supabase = auth.supabase
    settings = await fetch_display_settings(supabase, auth.family_id)
    now = local_now(settings.resolved_timezone)
    today = now.date()

    members = await fetch_members(supabase, auth.family_id)
    today_rotation = await fetch_rotation(supabase, auth.family_id, today)
    weekend_rotation = await fetch_rotation(supabase, auth.family_id, next_friday(today))
    events = await fetch_events(
        supabase,
        auth.family_id,
        datetime.combine(today, time.min, tzinfo=now.tzinfo),
        now + timedelta(days=EVENTS_AHEAD_DAYS),
        mother_only=True,
        limit=EVENTS_LIMIT,
    )
    holidays = await fetch_holidays(
        supabase,
        today,
        today + timedelta(days=HOLIDAYS_AHEAD_DAYS),
        limit=HOLIDAYS_LIMIT,
    )
    medications = await fetch_medications(supabase, auth.family_id)
    doses = await fetch_doses(supabase, auth.family_id, today)
    photos = await fetch_photos(supabase, auth.family_id)
    messages = await fetch_unread_messages(supabase, auth.family_id)

    logger.info(
        "mom dashboard loaded",
        extra={"family_id": auth.family_id, "photos": len(photos), "unread": len(messages)},
    )
    window = current_window(now)
    return {
        "member": auth.member.model_dump(mode="json"),
        "members": [member.model_dump(mode="json") for member in members],
        "today_rotation": today_rotation.model_dump(mode="json") if today_rotation else None,
        "weekend_rotation": weekend_rotation.model_dump(mode="json") if weekend_rotation else None,
        "upcoming_events": [event.model_dump(mode="json") for event in events],
        "upcoming_holidays": [
            {**holiday.model_dump(mode="json"), "days_until": (holiday.date - today).days}
            for holiday in holidays
        ],
        "medications": medication_progress(medications, doses),
        "current_window": window.value if window else None,
        "photos": [photo.model_dump(mode="json") for photo in photos],
        "messages": [message.model_dump(mode="json") for message in messages],
        "display_settings": {
            **settings.model_dump(mode="json"),
            "screensaver_timeout": settings.idle_timeout_seconds,
            "photo_interval": settings.photo_interval_seconds,
            "timezone": settings.resolved_timezone,
        },
    }
