from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..db import fetch_display_settings, fetch_members
from ..display_session import DisplayHub, get_display_hub
from ..permissions import require_admin
from ..schedule import parse_hour
from ..schemas import DisplaySettings, Member
from ..supabase import AuthContext, get_auth_context

router = APIRouter(prefix="/api/v1/settings", tags=["settings"])
logger = logging.getLogger(__name__)


class NotificationLevel(str, Enum):
    AGGRESSIVE = "aggressive"
    FREQUENT = "frequent"
    CALM = "calm"


class NotificationPayload(BaseModel):
    notification_level: NotificationLevel


class DisplaySettingsPayload(BaseModel):
    screensaver_timeout: Optional[int] = Field(default=None, ge=10, le=24 * 3600)
    photo_interval: Optional[int] = Field(default=None, ge=1, le=3600)
    night_mode_start: Optional[str] = None
    night_mode_end: Optional[str] = None
    timezone: Optional[str] = None


@router.get("")
async def get_settings_endpoint(auth: AuthContext = Depends(get_auth_context)) -> Dict[str, Any]:
    members = await fetch_members(auth.supabase, auth.family_id)
    display = await fetch_display_settings(auth.supabase, auth.family_id)
    return {
        "member": auth.member.model_dump(mode="json"),
        "members": [member.model_dump(mode="json") for member in members],
        "display": display.model_dump(mode="json"),
        "is_admin": auth.member.role.value == "admin",
    }


@router.put("/notifications", response_model=Member)
async def update_notifications_endpoint(
    payload: NotificationPayload,
    auth: AuthContext = Depends(get_auth_context),
) -> Member:
    rows = await auth.supabase.update(
        "family_members",
        {"notification_level": payload.notification_level.value},
        params={"id": f"eq.{auth.member.id}"},
    )
    if rows:
        return Member.model_validate(rows[0])
    return auth.member.model_copy(update={"notification_level": payload.notification_level.value})


@router.put("/display", response_model=DisplaySettings)
async def update_display_endpoint(
    payload: DisplaySettingsPayload,
    auth: AuthContext = Depends(require_admin),
    hub: DisplayHub = Depends(get_display_hub),
) -> DisplaySettings:
    updates = payload.model_dump(exclude_unset=True)
    for key in ("night_mode_start", "night_mode_end"):
        value = updates.get(key)
        if value is not None and parse_hour(value) is None:
            raise HTTPException(status_code=400, detail=f"{key} must be HH:MM")
    if updates.get("timezone"):
        try:
            ZoneInfo(updates["timezone"])
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise HTTPException(status_code=400, detail="Unknown timezone") from exc
    if not updates:
        return await fetch_display_settings(auth.supabase, auth.family_id)

    rows = await auth.supabase.upsert(
        "mom_display_settings",
        {"family_id": auth.family_id, **updates},
        on_conflict="family_id",
    )
    logger.info("display settings updated", extra={"family_id": auth.family_id, "fields": sorted(updates)})
    session = hub.get(auth.family_id)
    if session is not None:
        await session.refresh_settings()
    if rows:
        return DisplaySettings.model_validate(rows[0])
    return DisplaySettings(family_id=auth.family_id, **updates)
