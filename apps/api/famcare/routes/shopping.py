from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..db import family_params, first_row
from ..permissions import require_editor
from ..schemas import ShoppingCategory, ShoppingItem, ShoppingStatus
from ..supabase import AuthContext, get_auth_context, resolve_optional_uuid

router = APIRouter(prefix="/api/v1/shopping", tags=["shopping"])
logger = logging.getLogger(__name__)


class ShoppingPayload(BaseModel):
    name: str
    category: ShoppingCategory = ShoppingCategory.GROCERIES


class ShoppingList(BaseModel):
    open: List[ShoppingItem]
    bought: List[ShoppingItem]


async def _load_item(auth: AuthContext, item_id: str) -> ShoppingItem:
    item_uuid = resolve_optional_uuid(item_id, "item_id")
    row = first_row(
        await auth.supabase.select(
            "shopping_items",
            params=family_params(auth.family_id, id=f"eq.{item_uuid}", limit="1"),
        )
    )
    if not row:
        raise HTTPException(status_code=404, detail="Shopping item not found")
    return ShoppingItem.model_validate(row)


@router.get("", response_model=ShoppingList)
async def list_shopping_endpoint(auth: AuthContext = Depends(get_auth_context)) -> ShoppingList:
    rows = await auth.supabase.select(
        "shopping_items",
        params=family_params(auth.family_id, order="status.asc,created_at.desc"),
    )
    items = [ShoppingItem.model_validate(row) for row in rows]
    return ShoppingList(
        open=[item for item in items if item.status is ShoppingStatus.OPEN],
        bought=[item for item in items if item.status is ShoppingStatus.BOUGHT],
    )


@router.post("", response_model=ShoppingItem)
async def add_shopping_endpoint(
    payload: ShoppingPayload,
    auth: AuthContext = Depends(require_editor),
) -> ShoppingItem:
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    rows = await auth.supabase.insert(
        "shopping_items",
        {
            "family_id": auth.family_id,
            "name": name,
            "category": payload.category.value,
            "added_by": auth.member.id,
            "status": ShoppingStatus.OPEN.value,
        },
    )
    if not rows:
        raise HTTPException(status_code=502, detail="Supabase insert returned no shopping row")
    return ShoppingItem.model_validate(rows[0])


@router.post("/{item_id}/toggle", response_model=ShoppingItem)
async def toggle_shopping_endpoint(
    item_id: str,
    auth: AuthContext = Depends(require_editor),
) -> ShoppingItem:
    item = await _load_item(auth, item_id)
    status = ShoppingStatus.OPEN if item.status is ShoppingStatus.BOUGHT else ShoppingStatus.BOUGHT
    rows = await auth.supabase.update(
        "shopping_items",
        {"status": status.value},
        params={"id": f"eq.{item.id}", "family_id": f"eq.{auth.family_id}"},
    )
    if rows:
        return ShoppingItem.model_validate(rows[0])
    return item.model_copy(update={"status": status})


@router.delete("/{item_id}")
async def delete_shopping_endpoint(
    item_id: str,
    auth: AuthContext = Depends(require_editor),
) -> dict:
    item = await _load_item(auth, item_id)
    await auth.supabase.delete(
        "shopping_items",
        params={"id": f"eq.{item.id}", "family_id": f"eq.{auth.family_id}"},
    )
    logger.info("shopping item deleted", extra={"family_id": auth.family_id})
    return {"deleted": item.id}
