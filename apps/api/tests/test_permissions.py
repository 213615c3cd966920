import asyncio

import pytest
from fastapi import HTTPException

from supabase_fakes import make_auth, make_member

from famcare.permissions import can_edit, can_edit_owned, require_admin, require_editor
from famcare.schemas import Role


def test_editor_roles():
    assert can_edit(make_member(Role.ADMIN))
    assert can_edit(make_member(Role.EDITOR))
    assert not can_edit(make_member(Role.VIEWER))


def test_owner_may_edit_own_item():
    viewer = make_member(Role.VIEWER)
    assert can_edit_owned(viewer, viewer.id)
    assert not can_edit_owned(viewer, "someone-else")
    assert not can_edit_owned(viewer, None)


def test_require_admin_rejects_editor_with_role_detail():
    auth = make_auth(role=Role.EDITOR)
    with pytest.raises(HTTPException) as exc:
        asyncio.run(require_admin(auth))
    assert exc.value.status_code == 403
    assert exc.value.detail == {"error": "forbidden", "role": "editor", "required_roles": ["admin"]}


def test_require_editor_passes_context_through():
    auth = make_auth(role=Role.EDITOR)
    assert asyncio.run(require_editor(auth)) is auth
