"""Family-scoped row helpers on top of the Supabase REST client."""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from .schemas import (
    COMPLETED_DOSE_STATUSES,
    CalendarEvent,
    DisplayControl,
    DisplaySettings,
    DoseLog,
    Holiday,
    Medication,
    Member,
    MomMessage,
    Photo,
    RotationEntry,
    TimeWindow,
    Tutorial,
)
from .supabase import MEMBER_COLUMNS, SupabaseClient


def family_params(family_id: str, **filters: str) -> Dict[str, str]:
    params = {"select": "*", "family_id": f"eq.{family_id}"}
    params.update(filters)
    return params


def first_row(rows: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    return rows[0] if rows else None


async def fetch_members(supabase: SupabaseClient, family_id: str) -> List[Member]:
    rows = await supabase.select(
        "family_members",
        params={
            "select": MEMBER_COLUMNS,
            "family_id": f"eq.{family_id}",
            "order": "is_mother.desc",
        },
    )
    return [Member.model_validate(row) for row in rows]


async def fetch_rotation(supabase: SupabaseClient, family_id: str, day: date) -> Optional[RotationEntry]:
    rows = await supabase.select(
        "rotation_schedule",
        params={
            "select": "*,assigned_member:family_members(*)",
            "family_id": f"eq.{family_id}",
            "date": f"eq.{day.isoformat()}",
            "limit": "1",
        },
    )
    row = first_row(rows)
    return RotationEntry.model_validate(row) if row else None


async def fetch_rotations(
    supabase: SupabaseClient,
    family_id: str,
    start: date,
    end: date,
) -> List[RotationEntry]:
    rows = await supabase.select(
        "rotation_schedule",
        params={
            "select": "*,assigned_member:family_members(*)",
            "family_id": f"eq.{family_id}",
            "and": f"(date.gte.{start.isoformat()},date.lte.{end.isoformat()})",
            "order": "date.asc",
        },
    )
    return [RotationEntry.model_validate(row) for row in rows]


async def fetch_medications(supabase: SupabaseClient, family_id: str) -> List[Medication]:
    rows = await supabase.select("medications", params=family_params(family_id, is_active="eq.true"))
    return [Medication.model_validate(row) for row in rows]


async def fetch_doses(supabase: SupabaseClient, family_id: str, day: date) -> List[DoseLog]:
    rows = await supabase.select(
        "med_dose_logs",
        params=family_params(family_id, date=f"eq.{day.isoformat()}"),
    )
    return [DoseLog.model_validate(row) for row in rows]


def medication_progress(
    medications: List[Medication],
    doses: List[DoseLog],
) -> Dict[str, Dict[str, Any]]:
    progress: Dict[str, Dict[str, Any]] = {}
    for window in TimeWindow:
        scheduled = sum(1 for med in medications if med.time_window is window)
        completed = sum(
            1
            for dose in doses
            if dose.time_window is window and dose.status in COMPLETED_DOSE_STATUSES
        )
        progress[window.value] = {
            "completed": completed,
            "scheduled": scheduled,
            "done": completed >= scheduled,
        }
    return progress


async def fetch_photos(supabase: SupabaseClient, family_id: str) -> List[Photo]:
    rows = await supabase.select(
        "gallery_photos",
        params=family_params(family_id, is_active="eq.true", order="display_order.asc"),
    )
    return [Photo.model_validate(row) for row in rows]


async def fetch_unread_messages(supabase: SupabaseClient, family_id: str) -> List[MomMessage]:
    rows = await supabase.select(
        "mom_messages",
        params=family_params(family_id, is_read="eq.false", order="created_at.desc"),
    )
    return [MomMessage.model_validate(row) for row in rows]


async def fetch_display_settings(supabase: SupabaseClient, family_id: str) -> DisplaySettings:
    rows = await supabase.select(
        "mom_display_settings",
        params=family_params(family_id, limit="1"),
    )
    row = first_row(rows)
    return DisplaySettings.model_validate(row) if row else DisplaySettings(family_id=family_id)


async def fetch_display_control(supabase: SupabaseClient, family_id: str) -> Optional[DisplayControl]:
    rows = await supabase.select(
        "mom_display_control",
        params=family_params(family_id, limit="1"),
    )
    row = first_row(rows)
    return DisplayControl.model_validate(row) if row else None


async def fetch_tutorial(supabase: SupabaseClient, tutorial_id: str) -> Optional[Tutorial]:
    rows = await supabase.select(
        "tutorials",
        params={"select": "*", "id": f"eq.{tutorial_id}", "limit": "1"},
    )
    row = first_row(rows)
    return Tutorial.model_validate(row) if row else None


async def fetch_events(
    supabase: SupabaseClient,
    family_id: str,
    start: datetime,
    end: datetime,
    *,
    mother_only: bool = False,
    limit: Optional[int] = None,
) -> List[CalendarEvent]:
    params = {
        "select": "*",
        "family_id": f"eq.{family_id}",
        "and": f"(start_datetime.gte.{start.isoformat()},start_datetime.lte.{end.isoformat()})",
        "order": "start_datetime.asc",
    }
    if mother_only:
        params["visible_to_mother"] = "eq.true"
    if limit:
        params["limit"] = str(limit)
    rows = await supabase.select("events", params=params)
    return [CalendarEvent.model_validate(row) for row in rows]


async def fetch_holidays(
    supabase: SupabaseClient,
    start: date,
    end: date,
    *,
    limit: Optional[int] = None,
) -> List[Holiday]:
    params = {
        "select": "*",
        "and": f"(date.gte.{start.isoformat()},date.lte.{end.isoformat()})",
        "order": "date.asc",
    }
    if limit:
        params["limit"] = str(limit)
    rows = await supabase.select("israeli_holidays", params=params)
    return [Holiday.model_validate(row) for row in rows]
