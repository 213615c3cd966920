"""Producer side of mom's display: control pushes and messages."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import HTTPException

from .realtime import CONTROL_TABLE, MESSAGES_TABLE, ChangeEvent, ChangeSource
from .schemas import DisplayControl, DisplayView, MomMessage
from .supabase import AuthContext

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    message: MomMessage
    display: Optional[DisplayControl] = None
    display_pushed: bool = False
    display_error: Optional[str] = None


def _rpc_row(result: Any) -> Optional[Dict[str, Any]]:
    if isinstance(result, list):
        return result[0] if result else None
    if isinstance(result, dict):
        return result
    return None


async def change_display(
    auth: AuthContext,
    view: DisplayView,
    *,
    content_id: Optional[str] = None,
    content_data: Optional[Dict[str, Any]] = None,
    source: Optional[ChangeSource] = None,
) -> DisplayControl:
    """Overwrite the family's display control row, attributed to the caller."""
    result = await auth.supabase.rpc(
        "update_mom_display",
        {
            "p_family_id": auth.family_id,
            "p_view": view.value,
            "p_content_id": content_id,
            "p_content_data": content_data,
            "p_triggered_by": auth.member.id,
        },
    )
    row = _rpc_row(result) or {
        "current_view": view.value,
        "content_id": content_id,
        "content_data": content_data,
        "triggered_by": auth.member.id,
    }
    control = DisplayControl.model_validate({**row, "family_id": auth.family_id})
    logger.info(
        "display control updated",
        extra={
            "family_id": auth.family_id,
            "view": view.value,
            "version": control.version,
            "triggered_by": auth.member.id,
        },
    )
    if source is not None:
        await source.notify_local_write(
            auth.family_id,
            ChangeEvent(table=CONTROL_TABLE, type="UPDATE", record=control.model_dump(mode="json")),
        )
    return control


async def send_message(
    auth: AuthContext,
    text: str,
    *,
    is_urgent: bool = False,
    source: Optional[ChangeSource] = None,
) -> SendResult:
    """Store a message for mom; urgent ones also switch her display.

    The two writes are independent. A failed display push leaves the stored
    message in place and is reported on the result.
    """
    body = (text or "").strip()
    if not body:
        raise HTTPException(status_code=400, detail="message is required")
    rows = await auth.supabase.insert(
        MESSAGES_TABLE,
        {
            "family_id": auth.family_id,
            "from_member_id": auth.member.id,
            "message": body,
            "is_urgent": is_urgent,
        },
    )
    if not rows:
        raise HTTPException(status_code=502, detail="Supabase insert returned no message row")
    message = MomMessage.model_validate(rows[0])
    if source is not None:
        await source.notify_local_write(
            auth.family_id,
            ChangeEvent(table=MESSAGES_TABLE, type="INSERT", record=message.model_dump(mode="json")),
        )

    result = SendResult(message=message)
    if not is_urgent:
        return result
    try:
        result.display = await change_display(
            auth,
            DisplayView.MESSAGE,
            content_data={
                "message": body,
                "from_member_id": auth.member.id,
                "is_urgent": True,
                "message_id": message.id,
            },
            source=source,
        )
        result.display_pushed = True
    except HTTPException as exc:
        logger.warning(
            "urgent message stored but display push failed",
            extra={"family_id": auth.family_id, "message_id": message.id, "status": exc.status_code},
        )
        result.display_error = str(exc.detail)
    return result
