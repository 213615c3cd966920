from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from ..db import family_params, fetch_display_settings, fetch_doses, fetch_medications, first_row
from ..permissions import require_editor
from ..schedule import current_window, is_late, local_now, window_bounds
from ..schemas import COMPLETED_DOSE_STATUSES, DoseLog, DoseStatus, Medication, TimeWindow
from ..supabase import AuthContext, get_auth_context, resolve_optional_uuid

router = APIRouter(prefix="/api/v1/medications", tags=["medications"])
logger = logging.getLogger(__name__)


class MedicationStatus(BaseModel):
    medication: Medication
    status: DoseStatus
    dose: Optional[DoseLog] = None


class MedicationWindowResponse(BaseModel):
    window: TimeWindow
    window_label: str
    current_window: Optional[TimeWindow] = None
    completed: int
    total: int
    percentage: int
    medications: List[MedicationStatus]


class ConfirmPayload(BaseModel):
    window: Optional[TimeWindow] = None


def _percentage(completed: int, total: int) -> int:
    if total <= 0:
        return 0
    return round(completed * 100 / total)


@router.get("", response_model=MedicationWindowResponse)
async def list_medications_endpoint(
    window: Optional[TimeWindow] = Query(None, description="morning | evening; defaults to the current window"),
    auth: AuthContext = Depends(get_auth_context),
) -> MedicationWindowResponse:
    settings = await fetch_display_settings(auth.supabase, auth.family_id)
    now = local_now(settings.resolved_timezone)
    active_now = current_window(now)
    selected = window or active_now or TimeWindow.MORNING

    medications = [
        med for med in await fetch_medications(auth.supabase, auth.family_id) if med.time_window is selected
    ]
    doses = {
        dose.medication_id: dose
        for dose in await fetch_doses(auth.supabase, auth.family_id, now.date())
        if dose.time_window is selected
    }
    items = [
        MedicationStatus(
            medication=med,
            status=doses[med.id].status if med.id in doses else DoseStatus.PENDING,
            dose=doses.get(med.id),
        )
        for med in medications
    ]
    completed = sum(1 for item in items if item.status in COMPLETED_DOSE_STATUSES)
    return MedicationWindowResponse(
        window=selected,
        window_label=window_bounds(selected).label,
        current_window=active_now,
        completed=completed,
        total=len(items),
        percentage=_percentage(completed, len(items)),
        medications=items,
    )


@router.post("/{medication_id}/confirm", response_model=DoseLog)
async def confirm_dose_endpoint(
    medication_id: str,
    payload: Optional[ConfirmPayload] = None,
    auth: AuthContext = Depends(require_editor),
) -> DoseLog:
    med_uuid = resolve_optional_uuid(medication_id, "medication_id")
    row = first_row(
        await auth.supabase.select(
            "medications",
            params=family_params(auth.family_id, id=f"eq.{med_uuid}", limit="1"),
        )
    )
    if not row:
        raise HTTPException(status_code=404, detail="Medication not found")
    medication = Medication.model_validate(row)

    settings = await fetch_display_settings(auth.supabase, auth.family_id)
    now = local_now(settings.resolved_timezone)
    window = (payload.window if payload else None) or medication.time_window
    status = DoseStatus.DONE_LATE if is_late(window, now) else DoseStatus.DONE
    record: Dict[str, Any] = {
        "family_id": auth.family_id,
        "medication_id": medication.id,
        "date": now.date().isoformat(),
        "time_window": window.value,
        "status": status.value,
        "performed_by": auth.member.id,
        "confirmed_at": now.isoformat(),
    }
    rows = await auth.supabase.upsert("med_dose_logs", record, on_conflict="medication_id,date,time_window")
    logger.info(
        "dose confirmed",
        extra={"family_id": auth.family_id, "medication_id": medication.id, "status": status.value},
    )
    return DoseLog.model_validate(rows[0] if rows else record)
