from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Optional
from uuid import UUID

import httpx
import jwt
from fastapi import Header, HTTPException
from jwt import PyJWKClient
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from .config import CONFIG
from .schemas import Member

logger = logging.getLogger(__name__)

LOGIN_URL = "/auth/login"
MEMBER_COLUMNS = (
    "id,family_id,user_id,role,is_mother,first_name,last_name,email,phone,"
    "avatar_character,notification_level"
)
_RETRYABLE_STATUS = {502, 503, 504}
# a write that may have been applied must not be replayed; only these mean it never ran
_UNSENT_STATUS = {503}
_UNSENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


@lru_cache
def _supabase_config() -> tuple[str, str]:
    url = os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL")
    anon_key = os.getenv("SUPABASE_ANON_KEY") or os.getenv("NEXT_PUBLIC_SUPABASE_ANON_KEY")
    if not url or not anon_key:
        raise RuntimeError("Missing SUPABASE_URL/SUPABASE_ANON_KEY for API access.")
    return url.rstrip("/"), anon_key


@lru_cache
def _jwks_url() -> str:
    base_url, _ = _supabase_config()
    return os.getenv("SUPABASE_JWKS_URL") or f"{base_url}/auth/v1/keys"


@lru_cache
def _jwks_client() -> PyJWKClient:
    return PyJWKClient(_jwks_url())


def not_authenticated(reason: str = "Missing authorization token.") -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"error": "not_authenticated", "reason": reason, "login_url": LOGIN_URL},
    )


def _parse_bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise not_authenticated()
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise not_authenticated("Invalid authorization token.")
    return parts[1]


def _parse_uuid(value: Optional[str], label: str) -> str:
    if not value:
        raise HTTPException(status_code=400, detail=f"Missing {label}.")
    try:
        return str(UUID(value))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {label}.") from exc


def resolve_optional_uuid(value: Optional[str], label: str) -> Optional[str]:
    if not value:
        return None
    return _parse_uuid(value, label)


async def _raise_supabase_error(resp: httpx.Response, action: str, target: str) -> None:
    body = resp.text or "<empty response>"
    logger.warning(
        "supabase request failed",
        extra={"action": action, "target": target, "status": resp.status_code},
    )
    raise HTTPException(
        status_code=resp.status_code if resp.status_code >= 400 else 500,
        detail=f"Supabase {action} failed ({target}): status={resp.status_code}, body={body}",
    )


class _RetryableStatus(Exception):
    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"retryable status {response.status_code}")
        self.response = response


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "retrying supabase request",
        extra={
            "attempt": state.attempt_number,
            "error": str(exc) if exc else None,
            "sleep": state.next_action.sleep if state.next_action else None,
        },
    )


def _retrying(idempotent: bool) -> AsyncRetrying:
    errors = (httpx.TransportError,) if idempotent else _UNSENT_ERRORS
    return AsyncRetrying(
        wait=wait_random_exponential(
            multiplier=CONFIG.write_retry_multiplier,
            max=CONFIG.write_retry_max_wait,
        ),
        stop=stop_after_attempt(CONFIG.write_retry_attempts),
        retry=retry_if_exception_type((*errors, _RetryableStatus)),
        before_sleep=_log_retry,
        reraise=True,
    )


async def _verify_access_token(token: str) -> Dict[str, Any]:
    audience = os.getenv("SUPABASE_JWT_AUD", "authenticated")
    options = {"verify_aud": bool(audience)}
    try:
        signing_key = _jwks_client().get_signing_key_from_jwt(token)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            audience=audience if audience else None,
            options=options,
        )
    except Exception:
        pass

    secret = os.getenv("SUPABASE_JWT_SECRET")
    if secret:
        try:
            return jwt.decode(
                token,
                secret,
                algorithms=["HS256"],
                audience=audience if audience else None,
                options=options,
            )
        except Exception as exc:
            raise not_authenticated("Invalid or expired token.") from exc

    base_url, anon_key = _supabase_config()
    async with httpx.AsyncClient(timeout=10.0) as client:
        resp = await client.get(
            f"{base_url}/auth/v1/user",
            headers={
                "Authorization": f"Bearer {token}",
                "apikey": anon_key,
            },
        )
    if resp.status_code >= 400:
        raise not_authenticated("Invalid or expired token.")
    data = resp.json() if resp.content else {}
    user_id = data.get("id")
    if not user_id:
        raise not_authenticated("Invalid or expired token.")
    return {"sub": user_id, "email": data.get("email")}


@dataclass
class SupabaseClient:
    base_url: str
    anon_key: str
    access_token: str
    transport: Optional[httpx.AsyncBaseTransport] = field(default=None, repr=False)

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]],
        json: Any,
        headers: Dict[str, str],
    ) -> httpx.Response:
        async with httpx.AsyncClient(timeout=15.0, transport=self.transport) as client:
            return await client.request(method, url, params=params, json=json, headers=headers)

    async def request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        *,
        idempotent: Optional[bool] = None,
    ) -> httpx.Response:
        url = f"{self.base_url}/rest/v1/{table}"
        merged = self._headers(headers)
        if idempotent is None:
            idempotent = method != "POST"
        statuses = _RETRYABLE_STATUS if idempotent else _UNSENT_STATUS
        try:
            async for attempt in _retrying(idempotent):
                with attempt:
                    resp = await self._send(method, url, params, json, merged)
                    if resp.status_code in statuses:
                        raise _RetryableStatus(resp)
        except _RetryableStatus as exc:
            return exc.response
        except httpx.TransportError as exc:
            logger.error("supabase unreachable", extra={"method": method, "table": table})
            raise HTTPException(
                status_code=503,
                detail=f"Supabase {method} unavailable (table={table}): {exc}",
            ) from exc
        return resp

    async def select(self, table: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        resp = await self.request("GET", table, params=params)
        if resp.status_code >= 400:
            await _raise_supabase_error(resp, "select", f"table={table}")
        return resp.json()

    async def insert(
        self,
        table: str,
        payload: Dict[str, Any],
        *,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        resp = await self.request(
            "POST",
            table,
            params=params,
            json=payload,
            headers={"Prefer": "return=representation"},
        )
        if resp.status_code >= 400:
            await _raise_supabase_error(resp, "insert", f"table={table}")
        return resp.json() if resp.content else []

    async def upsert(
        self,
        table: str,
        payload: Dict[str, Any],
        *,
        on_conflict: str,
    ) -> List[Dict[str, Any]]:
        resp = await self.request(
            "POST",
            table,
            params={"on_conflict": on_conflict},
            json=payload,
            headers={
                "Prefer": "resolution=merge-duplicates,return=representation",
            },
            idempotent=True,
        )
        if resp.status_code >= 400:
            await _raise_supabase_error(resp, "upsert", f"table={table}")
        return resp.json() if resp.content else []

    async def update(
        self,
        table: str,
        payload: Dict[str, Any],
        params: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        resp = await self.request(
            "PATCH",
            table,
            params=params,
            json=payload,
            headers={"Prefer": "return=representation"},
        )
        if resp.status_code >= 400:
            await _raise_supabase_error(resp, "update", f"table={table}")
        return resp.json() if resp.content else []

    async def rpc(self, fn: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        resp = await self.request("POST", f"rpc/{fn}", json=payload)
        if resp.status_code >= 400:
            await _raise_supabase_error(resp, "rpc", f"fn={fn}")
        return resp.json() if resp.content else None

    async def delete(self, table: str, params: Dict[str, Any]) -> None:
        resp = await self.request("DELETE", table, params=params)
        if resp.status_code >= 400:
            await _raise_supabase_error(resp, "delete", f"table={table}")


@dataclass
class AuthContext:
    user_id: str
    user_email: Optional[str]
    family_id: str
    access_token: str
    supabase: SupabaseClient
    member: Member


def _select_membership(
    memberships: List[Dict[str, Any]],
    family_id: Optional[str],
) -> Dict[str, Any]:
    if not memberships:
        raise HTTPException(status_code=403, detail={"error": "not_a_member"})
    if family_id:
        resolved = _parse_uuid(family_id, "family_id")
        for row in memberships:
            if row.get("family_id") == resolved:
                return row
        raise HTTPException(status_code=403, detail={"error": "not_a_member", "family_id": resolved})
    if len(memberships) == 1:
        return memberships[0]
    raise HTTPException(
        status_code=409,
        detail={"error": "family_required", "count": len(memberships)},
    )


async def build_auth_context(token: str, family_id: Optional[str] = None) -> AuthContext:
    payload = await _verify_access_token(token)
    user_id = _parse_uuid(payload.get("sub"), "user_id")
    user_email = payload.get("email") if isinstance(payload, dict) else None

    base_url, anon_key = _supabase_config()
    supabase = SupabaseClient(base_url=base_url, anon_key=anon_key, access_token=token)

    memberships = await supabase.select(
        "family_members",
        params={"select": MEMBER_COLUMNS, "user_id": f"eq.{user_id}"},
    )
    row = _select_membership(memberships, family_id)
    member = Member.model_validate(row)

    return AuthContext(
        user_id=user_id,
        user_email=user_email,
        family_id=member.family_id,
        access_token=token,
        supabase=supabase,
        member=member,
    )


async def get_auth_context(
    authorization: Optional[str] = Header(None),
    family_id: Optional[str] = Header(None, alias="X-Family-Id"),
) -> AuthContext:
    token = _parse_bearer_token(authorization)
    return await build_auth_context(token, family_id)


async def get_optional_user(
    authorization: Optional[str] = Header(None),
) -> Optional[Dict[str, Any]]:
    """Return the verified token payload, or None for anonymous callers."""
    if not authorization:
        return None
    try:
        token = _parse_bearer_token(authorization)
        return await _verify_access_token(token)
    except HTTPException:
        return None
