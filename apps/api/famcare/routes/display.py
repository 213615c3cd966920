from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from ..display_session import DisplayHub, get_display_hub
from ..supabase import AuthContext, build_auth_context, get_auth_context, not_authenticated

router = APIRouter(tags=["display"])
logger = logging.getLogger(__name__)

# websocket close codes mirroring 401/403
CLOSE_NOT_AUTHENTICATED = 4401
CLOSE_FORBIDDEN = 4403


class AckPayload(BaseModel):
    message_id: Optional[str] = None


async def _socket_auth_or_close(websocket: WebSocket) -> Optional[AuthContext]:
    """Browsers cannot set headers on websockets, so the token rides in the query."""
    try:
        token = websocket.query_params.get("access_token")
        if not token:
            raise not_authenticated()
        return await build_auth_context(token, websocket.query_params.get("family_id"))
    except HTTPException as exc:
        code = CLOSE_NOT_AUTHENTICATED if exc.status_code == 401 else CLOSE_FORBIDDEN
        logger.info("display socket rejected", extra={"status": exc.status_code})
        await websocket.close(code=code)
        return None


async def _handle_action(hub: DisplayHub, auth: AuthContext, data: Dict[str, Any]) -> None:
    session = hub.get(auth.family_id)
    if session is None:
        return
    action = data.get("action")
    if action == "interaction":
        await session.interaction()
    elif action == "ack":
        await session.acknowledge(data.get("message_id"))
    elif action == "dismiss":
        await session.dismiss()
    else:
        logger.debug("unknown display action", extra={"family_id": auth.family_id, "action": action})


@router.websocket("/ws/display")
async def display_socket(websocket: WebSocket, hub: DisplayHub = Depends(get_display_hub)) -> None:
    auth = await _socket_auth_or_close(websocket)
    if auth is None:
        return
    await websocket.accept()
    await hub.attach(auth, websocket)
    logger.info("display socket attached", extra={"family_id": auth.family_id, "member_id": auth.member.id})
    try:
        while True:
            try:
                data = await websocket.receive_json()
            except ValueError:
                logger.warning("undecodable display action skipped", extra={"family_id": auth.family_id})
                continue
            if not isinstance(data, dict):
                continue
            try:
                await _handle_action(hub, auth, data)
            except HTTPException as exc:
                logger.warning(
                    "display action failed",
                    extra={"family_id": auth.family_id, "action": data.get("action"), "status": exc.status_code},
                )
                await websocket.send_json(
                    {"type": "error", "action": data.get("action"), "status": exc.status_code, "detail": exc.detail}
                )
    except WebSocketDisconnect:
        pass
    finally:
        await hub.detach(auth.family_id, websocket)
        logger.info("display socket detached", extra={"family_id": auth.family_id})


@router.get("/api/v1/display/state")
async def display_state_endpoint(
    auth: AuthContext = Depends(get_auth_context),
    hub: DisplayHub = Depends(get_display_hub),
) -> Dict[str, Any]:
    session = await hub.session_for(auth)
    return session.snapshot()


@router.post("/api/v1/display/interaction")
async def display_interaction_endpoint(
    auth: AuthContext = Depends(get_auth_context),
    hub: DisplayHub = Depends(get_display_hub),
) -> Dict[str, Any]:
    session = await hub.session_for(auth)
    await session.interaction()
    return session.snapshot()


@router.post("/api/v1/display/ack")
async def display_ack_endpoint(
    payload: AckPayload,
    auth: AuthContext = Depends(get_auth_context),
    hub: DisplayHub = Depends(get_display_hub),
) -> Dict[str, Any]:
    session = await hub.session_for(auth)
    message = await session.acknowledge(payload.message_id)
    return {
        "acknowledged": message.model_dump(mode="json") if message else None,
        "frame": session.snapshot(),
    }
