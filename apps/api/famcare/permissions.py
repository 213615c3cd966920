"""
Role checks for family members.

Every family member carries one of three roles:

    role     can do
    ───────  ──────────────────────────────────────────────────────────
    admin    everything, including gallery/tutorial/display settings
    editor   drive mom's display, send messages, edit tasks/shopping/doses
    viewer   read-only

``is_mother`` is independent of the role and selects the simplified display.
Owners of a task may toggle it regardless of role.
"""
from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, HTTPException

from .schemas import Member, Role
from .supabase import AuthContext, get_auth_context

EDITOR_ROLES = (Role.ADMIN, Role.EDITOR)


def forbidden(member: Member, required: tuple[Role, ...]) -> HTTPException:
    return HTTPException(
        status_code=403,
        detail={
            "error": "forbidden",
            "role": member.role.value,
            "required_roles": [role.value for role in required],
        },
    )


def can_edit(member: Member) -> bool:
    return member.role in EDITOR_ROLES


def can_edit_owned(member: Member, owner_id: Optional[str]) -> bool:
    return can_edit(member) or (owner_id is not None and owner_id == member.id)


def require_roles(*roles: Role) -> Callable[..., AuthContext]:
    """Build a dependency that admits only members holding one of ``roles``."""

    async def _dependency(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if auth.member.role not in roles:
            raise forbidden(auth.member, roles)
        return auth

    return _dependency


require_editor = require_roles(*EDITOR_ROLES)
require_admin = require_roles(Role.ADMIN)
