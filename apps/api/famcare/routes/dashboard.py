from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse

from ..db import (
    family_params,
    fetch_display_settings,
    fetch_doses,
    fetch_medications,
    fetch_members,
    fetch_rotation,
    medication_progress,
)
from ..permissions import can_edit
from ..schedule import current_window, greeting_period, local_now, window_bounds
from ..schemas import COMPLETED_DOSE_STATUSES, Task
from ..supabase import AuthContext, get_auth_context

router = APIRouter(prefix="/api/v1", tags=["dashboard"])
logger = logging.getLogger(__name__)

PREVIEW_TASKS = 3


@router.get("/dashboard", response_model=None)
async def dashboard_endpoint(auth: AuthContext = Depends(get_auth_context)) -> Any:
    """Caregiver home screen. Mom is sent to her own dashboard."""
    if auth.member.is_mother:
        return RedirectResponse("/api/v1/mom", status_code=307)

    supabase = auth.supabase
    settings = await fetch_display_settings(supabase, auth.family_id)
    now = local_now(settings.resolved_timezone)
    today = now.date()

    members = await fetch_members(supabase, auth.family_id)
    rotation = await fetch_rotation(supabase, auth.family_id, today)
    medications = await fetch_medications(supabase, auth.family_id)
    doses = await fetch_doses(supabase, auth.family_id, today)
    tasks = await supabase.select(
        "tasks",
        params=family_params(
            auth.family_id,
            status="not.in.(completed,cancelled)",
            order="priority.asc,created_at.desc",
        ),
    )
    shopping = await supabase.select(
        "shopping_items",
        params={"select": "id", "family_id": f"eq.{auth.family_id}", "status": "eq.open"},
    )

    window = current_window(now)
    due_now: list[Dict[str, Any]] = []
    if window is not None:
        done_ids = {
            dose.medication_id
            for dose in doses
            if dose.time_window is window and dose.status in COMPLETED_DOSE_STATUSES
        }
        due_now = [
            {**med.model_dump(mode="json"), "done": med.id in done_ids}
            for med in medications
            if med.time_window is window
        ]

    logger.info(
        "family-scoped request",
        extra={"method": "GET", "path": "/dashboard", "family_id": auth.family_id},
    )
    return {
        "member": auth.member.model_dump(mode="json"),
        "members": [member.model_dump(mode="json") for member in members],
        "today_rotation": rotation.model_dump(mode="json") if rotation else None,
        "medications": medication_progress(medications, doses),
        "current_window": window.value if window else None,
        "current_window_label": window_bounds(window).label if window else None,
        "due_now": due_now,
        "open_tasks": len(tasks),
        "pending_tasks": [
            Task.model_validate(row).model_dump(mode="json") for row in tasks[:PREVIEW_TASKS]
        ],
        "open_shopping": len(shopping),
        "greeting": greeting_period(now),
        "show_control_panel": can_edit(auth.member),
    }
