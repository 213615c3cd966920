from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..db import family_params, first_row
from ..permissions import require_admin
from ..schemas import Tutorial, TutorialCategory, TutorialContentType, TutorialStep
from ..supabase import AuthContext, resolve_optional_uuid

router = APIRouter(prefix="/api/v1/tutorials", tags=["tutorials"])
logger = logging.getLogger(__name__)


class CategoryPayload(BaseModel):
    name: str
    icon: Optional[str] = "📺"


class TutorialPayload(BaseModel):
    title: str
    category_id: str
    content_type: TutorialContentType = TutorialContentType.IMAGES
    video_url: Optional[str] = None
    steps: List[TutorialStep] = []


class TutorialLibrary(BaseModel):
    categories: List[TutorialCategory]
    tutorials: List[Tutorial]


@router.get("", response_model=TutorialLibrary)
async def list_tutorials_endpoint(auth: AuthContext = Depends(require_admin)) -> TutorialLibrary:
    categories = await auth.supabase.select(
        "tutorial_categories",
        params=family_params(auth.family_id, order="display_order.asc"),
    )
    tutorials = await auth.supabase.select(
        "tutorials",
        params={
            "select": "*,category:tutorial_categories(*)",
            "family_id": f"eq.{auth.family_id}",
            "order": "created_at.desc",
        },
    )
    return TutorialLibrary(
        categories=[TutorialCategory.model_validate(row) for row in categories],
        tutorials=[Tutorial.model_validate(row) for row in tutorials],
    )


@router.post("/categories", response_model=TutorialCategory)
async def create_category_endpoint(
    payload: CategoryPayload,
    auth: AuthContext = Depends(require_admin),
) -> TutorialCategory:
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    existing = await auth.supabase.select(
        "tutorial_categories",
        params={"select": "id", "family_id": f"eq.{auth.family_id}"},
    )
    rows = await auth.supabase.insert(
        "tutorial_categories",
        {
            "family_id": auth.family_id,
            "name": name,
            "icon": payload.icon,
            "display_order": len(existing),
        },
    )
    if not rows:
        raise HTTPException(status_code=502, detail="Supabase insert returned no category row")
    return TutorialCategory.model_validate(rows[0])


@router.post("", response_model=Tutorial)
async def create_tutorial_endpoint(
    payload: TutorialPayload,
    auth: AuthContext = Depends(require_admin),
) -> Tutorial:
    title = payload.title.strip()
    if not title:
        raise HTTPException(status_code=400, detail="title is required")
    category_id = resolve_optional_uuid(payload.category_id, "category_id")
    if not category_id:
        raise HTTPException(status_code=400, detail="category_id is required")

    video_url = None
    steps = None
    if payload.content_type is TutorialContentType.VIDEO:
        video_url = (payload.video_url or "").strip()
        if not video_url:
            raise HTTPException(status_code=400, detail="video_url is required for video tutorials")
    else:
        steps = [step.model_dump() for step in payload.steps if step.text.strip()]
        if not steps:
            raise HTTPException(status_code=400, detail="at least one step is required")

    rows = await auth.supabase.insert(
        "tutorials",
        {
            "family_id": auth.family_id,
            "title": title,
            "category_id": category_id,
            "content_type": payload.content_type.value,
            "video_url": video_url,
            "steps": steps,
            "created_by": auth.member.id,
        },
        params={"select": "*,category:tutorial_categories(*)"},
    )
    if not rows:
        raise HTTPException(status_code=502, detail="Supabase insert returned no tutorial row")
    logger.info("tutorial created", extra={"family_id": auth.family_id, "content_type": payload.content_type.value})
    return Tutorial.model_validate(rows[0])


@router.delete("/{tutorial_id}")
async def delete_tutorial_endpoint(
    tutorial_id: str,
    auth: AuthContext = Depends(require_admin),
) -> dict:
    tutorial_uuid = resolve_optional_uuid(tutorial_id, "tutorial_id")
    row = first_row(
        await auth.supabase.select(
            "tutorials",
            params=family_params(auth.family_id, id=f"eq.{tutorial_uuid}", limit="1"),
        )
    )
    if not row:
        raise HTTPException(status_code=404, detail="Tutorial not found")
    await auth.supabase.delete(
        "tutorials",
        params={"id": f"eq.{tutorial_uuid}", "family_id": f"eq.{auth.family_id}"},
    )
    return {"deleted": tutorial_uuid}
