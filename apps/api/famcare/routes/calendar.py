from __future__ import annotations

import calendar
import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..db import fetch_events, fetch_holidays, fetch_members, fetch_rotations
from ..schedule import is_weekend, local_now
from ..schemas import CalendarEvent, Holiday, RotationEntry
from ..supabase import AuthContext, get_auth_context, resolve_optional_uuid

router = APIRouter(prefix="/api/v1", tags=["calendar"])
logger = logging.getLogger(__name__)


def leading_blanks(first: date) -> int:
    """Empty cells before the 1st in a Sunday-first week grid."""
    return (first.weekday() + 1) % 7


def build_month(
    first: date,
    rotations: List[RotationEntry],
    events: List[CalendarEvent],
    holidays: List[Holiday],
    member_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    by_date = {entry.date: entry for entry in rotations}
    holiday_by_date = {holiday.date: holiday for holiday in holidays}
    days = []
    for offset in range(calendar.monthrange(first.year, first.month)[1]):
        day = first + timedelta(days=offset)
        rotation = by_date.get(day)
        owner = rotation.assigned_member_id if rotation else None
        holiday = holiday_by_date.get(day)
        days.append(
            {
                "date": day.isoformat(),
                "weekend": is_weekend(day),
                "rotation": rotation.model_dump(mode="json") if rotation else None,
                "events": [
                    event.model_dump(mode="json") for event in events if event.start_datetime.date() == day
                ],
                "holiday": holiday.model_dump(mode="json") if holiday else None,
                "dimmed": bool(member_id) and owner != member_id,
            }
        )
    return days


@router.get("/calendar")
async def month_endpoint(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    month: Optional[int] = Query(None, ge=1, le=12),
    member_id: Optional[str] = Query(None, description="Dim days rotated to other members"),
    auth: AuthContext = Depends(get_auth_context),
) -> Dict[str, Any]:
    today = local_now().date()
    first = date(year or today.year, month or today.month, 1)
    last = first + timedelta(days=calendar.monthrange(first.year, first.month)[1] - 1)
    member_uuid = resolve_optional_uuid(member_id, "member_id")

    members = await fetch_members(auth.supabase, auth.family_id)
    if member_uuid and all(member.id != member_uuid for member in members):
        raise HTTPException(status_code=404, detail="Member not found")
    rotations = await fetch_rotations(auth.supabase, auth.family_id, first, last)
    events = await fetch_events(
        auth.supabase,
        auth.family_id,
        datetime.combine(first, time.min),
        datetime.combine(last, time.max),
    )
    holidays = await fetch_holidays(auth.supabase, first, last)

    logger.info(
        "calendar month loaded",
        extra={"family_id": auth.family_id, "month": first.isoformat(), "events": len(events)},
    )
    return {
        "year": first.year,
        "month": first.month,
        "today": today.isoformat(),
        "leading_blanks": leading_blanks(first),
        "member_id": member_uuid,
        "members": [member.model_dump(mode="json") for member in members],
        "days": build_month(first, rotations, events, holidays, member_uuid),
    }
