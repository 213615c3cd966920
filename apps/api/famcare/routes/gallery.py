from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..db import family_params, first_row
from ..display_session import DisplayHub, get_display_hub
from ..permissions import require_admin
from ..schemas import Photo
from ..supabase import AuthContext, resolve_optional_uuid

router = APIRouter(prefix="/api/v1", tags=["gallery"])
logger = logging.getLogger(__name__)


class PhotoPayload(BaseModel):
    url: str
    caption: Optional[str] = None


async def _load_photo(auth: AuthContext, photo_id: str) -> Photo:
    photo_uuid = resolve_optional_uuid(photo_id, "photo_id")
    row = first_row(
        await auth.supabase.select(
            "gallery_photos",
            params=family_params(auth.family_id, id=f"eq.{photo_uuid}", limit="1"),
        )
    )
    if not row:
        raise HTTPException(status_code=404, detail="Photo not found")
    return Photo.model_validate(row)


async def _refresh_display(hub: DisplayHub, auth: AuthContext) -> None:
    session = hub.get(auth.family_id)
    if session is not None:
        await session.refresh_photos()


@router.get("/gallery", response_model=List[Photo])
async def list_photos_endpoint(auth: AuthContext = Depends(require_admin)) -> List[Photo]:
    rows = await auth.supabase.select(
        "gallery_photos",
        params=family_params(auth.family_id, order="display_order.asc"),
    )
    return [Photo.model_validate(row) for row in rows]


@router.post("/gallery", response_model=Photo)
async def add_photo_endpoint(
    payload: PhotoPayload,
    auth: AuthContext = Depends(require_admin),
    hub: DisplayHub = Depends(get_display_hub),
) -> Photo:
    url = payload.url.strip()
    if not url:
        raise HTTPException(status_code=400, detail="url is required")
    existing = await auth.supabase.select(
        "gallery_photos",
        params={"select": "id", "family_id": f"eq.{auth.family_id}"},
    )
    rows = await auth.supabase.insert(
        "gallery_photos",
        {
            "family_id": auth.family_id,
            "url": url,
            "caption": (payload.caption or "").strip() or None,
            "display_order": len(existing),
            "uploaded_by": auth.member.id,
        },
    )
    if not rows:
        raise HTTPException(status_code=502, detail="Supabase insert returned no photo row")
    logger.info("gallery photo added", extra={"family_id": auth.family_id})
    await _refresh_display(hub, auth)
    return Photo.model_validate(rows[0])


@router.post("/gallery/{photo_id}/toggle", response_model=Photo)
async def toggle_photo_endpoint(
    photo_id: str,
    auth: AuthContext = Depends(require_admin),
    hub: DisplayHub = Depends(get_display_hub),
) -> Photo:
    photo = await _load_photo(auth, photo_id)
    rows = await auth.supabase.update(
        "gallery_photos",
        {"is_active": not photo.is_active},
        params={"id": f"eq.{photo.id}", "family_id": f"eq.{auth.family_id}"},
    )
    await _refresh_display(hub, auth)
    if rows:
        return Photo.model_validate(rows[0])
    return photo.model_copy(update={"is_active": not photo.is_active})


@router.delete("/gallery/{photo_id}")
async def delete_photo_endpoint(
    photo_id: str,
    auth: AuthContext = Depends(require_admin),
    hub: DisplayHub = Depends(get_display_hub),
) -> dict:
    photo = await _load_photo(auth, photo_id)
    await auth.supabase.delete(
        "gallery_photos",
        params={"id": f"eq.{photo.id}", "family_id": f"eq.{auth.family_id}"},
    )
    await _refresh_display(hub, auth)
    return {"deleted": photo.id}
