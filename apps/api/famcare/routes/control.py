from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..control import change_display, send_message
from ..db import family_params, fetch_display_control, fetch_tutorial, fetch_unread_messages
from ..display_session import DisplayHub, get_display_hub
from ..permissions import require_editor
from ..schemas import DisplayControl, DisplayView, MomMessage, Tutorial, TutorialCategory
from ..supabase import AuthContext

router = APIRouter(prefix="/api/v1", tags=["control"])
logger = logging.getLogger(__name__)


class ControlPayload(BaseModel):
    view: DisplayView
    content_id: Optional[str] = None
    content_data: Optional[Dict[str, Any]] = None


class MessagePayload(BaseModel):
    message: str = Field(..., description="Text shown on mom's display")
    is_urgent: bool = False


class MessageResponse(BaseModel):
    message: MomMessage
    display: Optional[DisplayControl] = None
    display_pushed: bool = False
    display_error: Optional[str] = None


class TutorialCatalog(BaseModel):
    categories: List[TutorialCategory]
    tutorials: List[Tutorial]


@router.post("/display/control", response_model=DisplayControl)
async def change_display_endpoint(
    payload: ControlPayload,
    auth: AuthContext = Depends(require_editor),
    hub: DisplayHub = Depends(get_display_hub),
) -> DisplayControl:
    content_id = payload.content_id
    if payload.view is DisplayView.TUTORIAL:
        if not content_id:
            raise HTTPException(status_code=400, detail="content_id is required for tutorials")
        if await fetch_tutorial(auth.supabase, content_id) is None:
            raise HTTPException(status_code=404, detail="Tutorial not found")
    if payload.view is DisplayView.MESSAGE and not (payload.content_data or {}).get("message"):
        raise HTTPException(status_code=400, detail="content_data.message is required")
    return await change_display(
        auth,
        payload.view,
        content_id=content_id,
        content_data=payload.content_data,
        source=hub.source,
    )


@router.get("/display/control", response_model=Optional[DisplayControl])
async def current_display_endpoint(auth: AuthContext = Depends(require_editor)) -> Optional[DisplayControl]:
    return await fetch_display_control(auth.supabase, auth.family_id)


@router.post("/messages", response_model=MessageResponse)
async def send_message_endpoint(
    payload: MessagePayload,
    auth: AuthContext = Depends(require_editor),
    hub: DisplayHub = Depends(get_display_hub),
) -> MessageResponse:
    result = await send_message(auth, payload.message, is_urgent=payload.is_urgent, source=hub.source)
    return MessageResponse(
        message=result.message,
        display=result.display,
        display_pushed=result.display_pushed,
        display_error=result.display_error,
    )


@router.get("/messages/unread", response_model=List[MomMessage])
async def unread_messages_endpoint(auth: AuthContext = Depends(require_editor)) -> List[MomMessage]:
    return await fetch_unread_messages(auth.supabase, auth.family_id)


@router.get("/display/tutorials", response_model=TutorialCatalog)
async def tutorial_picker_endpoint(auth: AuthContext = Depends(require_editor)) -> TutorialCatalog:
    categories = await auth.supabase.select(
        "tutorial_categories",
        params=family_params(auth.family_id, is_active="eq.true", order="display_order.asc"),
    )
    tutorials = await auth.supabase.select(
        "tutorials",
        params=family_params(auth.family_id, is_active="eq.true", order="title.asc"),
    )
    return TutorialCatalog(
        categories=[TutorialCategory.model_validate(row) for row in categories],
        tutorials=[Tutorial.model_validate(row) for row in tutorials],
    )
