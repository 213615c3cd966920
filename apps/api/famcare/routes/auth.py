from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import RedirectResponse

from ..supabase import (
    AuthContext,
    _parse_bearer_token,
    _supabase_config,
    get_auth_context,
    get_optional_user,
)

router = APIRouter(tags=["auth"])
logger = logging.getLogger(__name__)

HOME_PATH = "/api/v1/home"


def authorize_url(redirect_to: str) -> str:
    base_url, _ = _supabase_config()
    query = urlencode({"provider": "google", "redirect_to": redirect_to})
    return f"{base_url}/auth/v1/authorize?{query}"


@router.get("/auth/login", response_model=None)
async def login_endpoint(
    redirect_to: str = Query("/auth/callback", description="Where GoTrue sends the browser back"),
    user: Optional[Dict[str, Any]] = Depends(get_optional_user),
) -> Any:
    if user is not None:
        return RedirectResponse(HOME_PATH, status_code=303)
    return {"authorize_url": authorize_url(redirect_to)}


@router.post("/auth/logout")
async def logout_endpoint(authorization: Optional[str] = Header(None)) -> Dict[str, bool]:
    token = _parse_bearer_token(authorization)
    base_url, anon_key = _supabase_config()
    async with httpx.AsyncClient(timeout=10.0) as client:
        resp = await client.post(
            f"{base_url}/auth/v1/logout",
            headers={"Authorization": f"Bearer {token}", "apikey": anon_key},
        )
    # an expired session is already logged out
    if resp.status_code >= 400 and resp.status_code != 401:
        raise HTTPException(status_code=resp.status_code, detail=f"Supabase logout failed: {resp.text}")
    return {"ok": True}


@router.get("/api/v1/home")
async def home_endpoint(auth: AuthContext = Depends(get_auth_context)) -> Dict[str, Any]:
    path = "/mom" if auth.member.is_mother else "/dashboard"
    logger.info("home resolved", extra={"family_id": auth.family_id, "path": path})
    return {"path": path, "member": auth.member.model_dump(mode="json")}
