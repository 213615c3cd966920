from __future__ import annotations

import logging
from datetime import date
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from ..db import family_params, first_row
from ..permissions import EDITOR_ROLES, can_edit_owned, forbidden, require_editor
from ..schemas import Member, Task, TaskPriority, TaskStatus
from ..supabase import AuthContext, get_auth_context, resolve_optional_uuid

router = APIRouter(prefix="/api/v1", tags=["tasks"])
logger = logging.getLogger(__name__)

CLOSED_STATUSES = {TaskStatus.COMPLETED, TaskStatus.CANCELLED}
GROUPS = (TaskStatus.NEW, TaskStatus.IN_PROGRESS, TaskStatus.WAITING, TaskStatus.COMPLETED)


class TaskOut(Task):
    owner: Optional[Member] = None


class CreateTaskPayload(BaseModel):
    title: str
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[date] = None


class TaskBoard(BaseModel):
    filter: str
    count: int
    groups: Dict[str, List[TaskOut]]


def filter_tasks(tasks: List[TaskOut], view: str, member_id: str) -> List[TaskOut]:
    if view == "mine":
        return [task for task in tasks if task.owner_id == member_id]
    if view == "completed":
        return [task for task in tasks if task.status is TaskStatus.COMPLETED]
    return [task for task in tasks if task.status not in CLOSED_STATUSES]


def group_tasks(tasks: List[TaskOut]) -> Dict[str, List[TaskOut]]:
    return {status.value: [task for task in tasks if task.status is status] for status in GROUPS}


@router.get("/tasks", response_model=TaskBoard)
async def list_tasks_endpoint(
    view: str = Query("all", alias="filter", description="View filter: all | mine | completed"),
    auth: AuthContext = Depends(get_auth_context),
) -> TaskBoard:
    if view not in {"all", "mine", "completed"}:
        raise HTTPException(status_code=400, detail="filter must be one of all, mine, completed")
    rows = await auth.supabase.select(
        "tasks",
        params={
            "select": "*,owner:family_members!owner_id(*)",
            "family_id": f"eq.{auth.family_id}",
            "order": "priority.asc,created_at.desc",
        },
    )
    tasks = filter_tasks([TaskOut.model_validate(row) for row in rows], view, auth.member.id)
    return TaskBoard(filter=view, count=len(tasks), groups=group_tasks(tasks))


@router.post("/tasks", response_model=Task)
async def create_task_endpoint(
    payload: CreateTaskPayload,
    auth: AuthContext = Depends(require_editor),
) -> Task:
    title = payload.title.strip()
    if not title:
        raise HTTPException(status_code=400, detail="title is required")
    rows = await auth.supabase.insert(
        "tasks",
        {
            "family_id": auth.family_id,
            "title": title,
            "priority": payload.priority.value,
            "owner_id": auth.member.id,
            "created_by": auth.member.id,
            "status": TaskStatus.NEW.value,
            "is_mother_related": True,
            "due_date": payload.due_date.isoformat() if payload.due_date else None,
        },
    )
    if not rows:
        raise HTTPException(status_code=502, detail="Supabase insert returned no task row")
    logger.info("task created", extra={"family_id": auth.family_id, "priority": payload.priority.value})
    return Task.model_validate(rows[0])


@router.post("/tasks/{task_id}/toggle", response_model=Task)
async def toggle_task_endpoint(
    task_id: str,
    auth: AuthContext = Depends(get_auth_context),
) -> Task:
    task_uuid = resolve_optional_uuid(task_id, "task_id")
    row = first_row(
        await auth.supabase.select(
            "tasks",
            params=family_params(auth.family_id, id=f"eq.{task_uuid}", limit="1"),
        )
    )
    if not row:
        raise HTTPException(status_code=404, detail="Task not found")
    task = Task.model_validate(row)
    if not can_edit_owned(auth.member, task.owner_id):
        raise forbidden(auth.member, EDITOR_ROLES)

    status = TaskStatus.NEW if task.status is TaskStatus.COMPLETED else TaskStatus.COMPLETED
    rows = await auth.supabase.update(
        "tasks",
        {"status": status.value},
        params={"id": f"eq.{task.id}", "family_id": f"eq.{auth.family_id}"},
    )
    if rows:
        return Task.model_validate(rows[0])
    return task.model_copy(update={"status": status})
