# routers/tasks.py — Task board: visibility-scoped CRUD, assignments, history
import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select, delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

import lifecycle
from auth import CurrentUser, get_current_user, require_capability
from database import get_db_session
from errors import Conflict, InvalidTransition, NotFound, PermissionDenied, ValidationFailed
from models import (
    Organisation, Task, TaskAssignment, TaskEditHistory, User,
    HistoryAction, TaskPriority, TaskStatus,
)
from task_fields import (
    canonical_priority, canonical_status, day_bounds, format_due_date, parse_due_date,
)
from visibility import candidate_scope, filter_visible, is_task_visible

logger = logging.getLogger("taskboard.tasks")

router = APIRouter(prefix="/api/v1/tasks", tags=["Tasks"])


# ============================================================
# SCHEMAS
# ============================================================

class TaskCreate(BaseModel):
    title: str = Field(..., max_length=500)
    description: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    due_date: Optional[str] = None
    assigned_user_ids: List[str] = Field(default_factory=list)
    is_private: bool = False
    organisation_id: Optional[str] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(default=None, max_length=500)
    description: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    due_date: Optional[str] = None
    is_private: Optional[bool] = None
    assigned_user_ids: Optional[List[str]] = None
    expected_version: Optional[int] = None


class AssignmentReplace(BaseModel):
    user_ids: List[str] = Field(default_factory=list)


class AssigneeOut(BaseModel):
    id: str
    display_name: str


class TaskOut(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    status: str
    priority: str
    due_date: Optional[str] = None
    is_private: bool
    organisation_id: str
    created_by: str
    creator_name: Optional[str] = None
    assigned_users: List[AssigneeOut] = []
    completed_at: Optional[str] = None
    version: int
    created_at: str
    updated_at: str


class HistoryOut(BaseModel):
    id: str
    action: str
    edited_by: str
    changes: dict
    created_at: str


# ============================================================
# HELPERS
# ============================================================

def _ts(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


def _value(v):
    return v.value if isinstance(v, (TaskStatus, TaskPriority, HistoryAction)) else v


def _escape_like(text: str) -> str:
    """Typed % and _ match literally"""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def _load_assignments(db: AsyncSession, task_ids: Iterable[str]) -> Dict[str, Set[str]]:
    task_ids = list(task_ids)
    out: Dict[str, Set[str]] = {tid: set() for tid in task_ids}
    if not task_ids:
        return out
    stmt = select(TaskAssignment.task_id, TaskAssignment.user_id).where(TaskAssignment.task_id.in_(task_ids))
    for task_id, user_id in (await db.execute(stmt)).all():
        out[task_id].add(user_id)
    return out


async def _get_visible_task(task_id: str, user: CurrentUser, db: AsyncSession) -> Tuple[Task, Set[str]]:
    """Missing and invisible tasks produce the same 404"""
    task = (await db.execute(select(Task).where(Task.id == task_id))).scalar_one_or_none()
    if not task:
        raise NotFound("Task")
    assignee_ids = (await _load_assignments(db, [task.id]))[task.id]
    if not is_task_visible(task, user, user.permissions, assignee_ids):
        raise NotFound("Task")
    return task, assignee_ids


async def _validate_assignees(db: AsyncSession, user_ids: Iterable[str], org_id: str) -> List[str]:
    """Deduplicate, preserving order; every id must be an active member of org_id"""
    wanted = list(dict.fromkeys(uid for uid in user_ids if uid))
    if not wanted:
        return []
    stmt = select(User.id).where(
        User.id.in_(wanted),
        User.organisation_id == org_id,
        User.is_active == True,
    )
    found = set((await db.execute(stmt)).scalars().all())
    missing = [uid for uid in wanted if uid not in found]
    if missing:
        raise ValidationFailed(f"Invalid assignees: {', '.join(missing)}")
    return wanted


async def _replace_assignments(db: AsyncSession, task_id: str, user_ids: List[str], actor_id: str) -> None:
    """Replace-all: drop every existing row, insert the new set"""
    await db.execute(delete(TaskAssignment).where(TaskAssignment.task_id == task_id))
    for uid in user_ids:
        db.add(TaskAssignment(task_id=task_id, user_id=uid, assigned_by=actor_id))


async def _get_org(db: AsyncSession, org_id: str) -> Organisation:
    org = (await db.execute(select(Organisation).where(Organisation.id == org_id))).scalar_one_or_none()
    if not org:
        raise NotFound("Organisation")
    return org


def _snapshot(task: Task, fields: Iterable[str], assignee_ids: Iterable[str] = ()) -> dict:
    snap = {}
    for field in fields:
        if field == "assigned_user_ids":
            snap[field] = sorted(assignee_ids)
        elif field == "due_date":
            snap[field] = format_due_date(task.due_date)
        else:
            snap[field] = _value(getattr(task, field))
    return snap


async def _tasks_to_out(db: AsyncSession, tasks: List[Task], assignments: Dict[str, Set[str]]) -> List[TaskOut]:
    user_ids: Set[str] = {t.created_by for t in tasks}
    for ids in assignments.values():
        user_ids |= ids
    names: Dict[str, str] = {}
    if user_ids:
        rows = await db.execute(select(User.id, User.display_name).where(User.id.in_(user_ids)))
        names = {uid: name for uid, name in rows.all()}

    return [
        TaskOut(
            id=t.id,
            title=t.title,
            description=t.description,
            status=_value(t.status),
            priority=_value(t.priority),
            due_date=format_due_date(t.due_date),
            is_private=bool(t.is_private),
            organisation_id=t.organisation_id,
            created_by=t.created_by,
            creator_name=names.get(t.created_by),
            assigned_users=[
                AssigneeOut(id=uid, display_name=names.get(uid, ""))
                for uid in sorted(assignments.get(t.id, ()))
            ],
            completed_at=_ts(t.completed_at),
            version=t.version or 1,
            created_at=_ts(t.created_at) or "",
            updated_at=_ts(t.updated_at) or "",
        )
        for t in tasks
    ]


async def _task_to_out(db: AsyncSession, task: Task) -> TaskOut:
    assignments = await _load_assignments(db, [task.id])
    return (await _tasks_to_out(db, [task], assignments))[0]


def _check_due_date_change(task: Task, user: CurrentUser, org: Organisation) -> None:
    if user.permissions.tasks.edit_due_date:
        return
    if task.created_by == user.id and org.feature("can_edit_due_dates"):
        return
    raise PermissionDenied("Insufficient permissions to change the due date")


# ============================================================
# ENDPOINTS
# ============================================================

@router.get("", response_model=List[TaskOut])
async def list_tasks(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    status: Optional[str] = None,
    priority: Optional[str] = None,
    assigned_to: Optional[str] = None,
    created_by: Optional[str] = None,
    search: Optional[str] = None,
    due_from: Optional[str] = None,
    due_to: Optional[str] = None,
    organisation_id: Optional[str] = None,
    limit: int = Query(default=200, le=500),
):
    """List the tasks the caller may see, with optional filters"""
    perms = user.permissions
    stmt = select(Task).where(candidate_scope(user, perms))
    if organisation_id:
        if organisation_id != user.organisation_id and not perms.is_super_tenant:
            raise PermissionDenied()
        stmt = stmt.where(Task.organisation_id == organisation_id)

    if status:
        stmt = stmt.where(Task.status == canonical_status(status))
    if priority:
        stmt = stmt.where(Task.priority == canonical_priority(priority, strict=True))
    if assigned_to:
        stmt = stmt.where(Task.id.in_(
            select(TaskAssignment.task_id).where(TaskAssignment.user_id == assigned_to)
        ))
    if created_by:
        stmt = stmt.where(Task.created_by == created_by)
    if search:
        pattern = f"%{_escape_like(search.strip())}%"
        stmt = stmt.where(or_(
            Task.title.ilike(pattern, escape="\\"),
            Task.description.ilike(pattern, escape="\\"),
        ))
    if due_from:
        stmt = stmt.where(Task.due_date >= day_bounds(due_from)[0])
    if due_to:
        stmt = stmt.where(Task.due_date < day_bounds(due_to)[1])

    stmt = stmt.order_by(
        Task.due_date.is_(None), Task.due_date.asc(), Task.created_at.desc(),
    ).limit(limit)

    tasks = (await db.execute(stmt)).scalars().all()
    assignments = await _load_assignments(db, [t.id for t in tasks])
    visible = filter_visible(tasks, user, perms, assignments)
    return await _tasks_to_out(db, visible, assignments)


@router.get("/{task_id}", response_model=TaskOut)
async def get_task(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task, assignee_ids = await _get_visible_task(task_id, user, db)
    return (await _tasks_to_out(db, [task], {task.id: assignee_ids}))[0]


@router.get("/{task_id}/history", response_model=List[HistoryOut])
async def get_task_history(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Edit history, newest first"""
    await _get_visible_task(task_id, user, db)
    stmt = (
        select(TaskEditHistory)
        .where(TaskEditHistory.task_id == task_id)
        .order_by(TaskEditHistory.created_at.desc())
    )
    entries = (await db.execute(stmt)).scalars().all()
    return [
        HistoryOut(
            id=h.id,
            action=_value(h.action),
            edited_by=h.edited_by,
            changes=h.changes or {},
            created_at=_ts(h.created_at) or "",
        )
        for h in entries
    ]


@router.post("", response_model=TaskOut, status_code=201)
async def create_task(
    data: TaskCreate,
    user: CurrentUser = Depends(require_capability(lambda p: p.tasks.create)),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a task in the caller's organisation"""
    title = data.title.strip()
    if not title:
        raise ValidationFailed("Title is required")

    org_id = data.organisation_id or user.organisation_id
    if org_id != user.organisation_id and not user.permissions.is_super_tenant:
        raise PermissionDenied()
    org = await _get_org(db, org_id)

    if data.is_private and not org.feature("allow_private_tasks"):
        raise ValidationFailed("Private tasks are disabled for this organisation")

    status = canonical_status(data.status) if data.status else TaskStatus.PENDING
    if status != TaskStatus.PENDING and not lifecycle.can_transition(TaskStatus.PENDING, status):
        raise InvalidTransition(TaskStatus.PENDING.value, status.value)

    assignee_ids = await _validate_assignees(db, data.assigned_user_ids, org.id)

    task = Task(
        organisation_id=org.id,
        title=title,
        description=data.description,
        priority=canonical_priority(data.priority),
        due_date=parse_due_date(data.due_date),
        is_private=data.is_private,
        created_by=user.id,
        version=1,
    )
    lifecycle.apply_status(task, status)
    db.add(task)
    await db.flush()

    await _replace_assignments(db, task.id, assignee_ids, user.id)
    fields = ["title", "description", "status", "priority", "due_date", "is_private", "assigned_user_ids"]
    db.add(TaskEditHistory(
        task_id=task.id,
        edited_by=user.id,
        action=HistoryAction.CREATED,
        changes={"before": {}, "after": _snapshot(task, fields, assignee_ids)},
    ))
    await db.commit()
    await db.refresh(task)

    logger.info(f"Task {task.id} created by {user.id} in {org.id}")
    return await _task_to_out(db, task)


@router.put("/{task_id}", response_model=TaskOut)
@router.patch("/{task_id}", response_model=TaskOut)
async def update_task(
    task_id: str,
    data: TaskUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Partial update: only fields present in the body are touched"""
    task, assignee_ids = await _get_visible_task(task_id, user, db)
    perms = user.permissions

    if not lifecycle.can_modify(task, user.id, assignee_ids, perms):
        raise PermissionDenied()
    if data.expected_version is not None and data.expected_version != task.version:
        raise Conflict(f"Task was modified (current version {task.version})")

    present = data.model_fields_set - {"expected_version"}
    org = await _get_org(db, task.organisation_id)

    # Validate everything before mutating anything
    new_values = {}
    if "title" in present:
        title = (data.title or "").strip()
        if not title:
            raise ValidationFailed("Title is required")
        new_values["title"] = title
    if "description" in present:
        new_values["description"] = data.description
    if "priority" in present:
        new_values["priority"] = canonical_priority(data.priority)
    if "is_private" in present and data.is_private is not None:
        if data.is_private and not org.feature("allow_private_tasks"):
            raise ValidationFailed("Private tasks are disabled for this organisation")
        new_values["is_private"] = data.is_private
    if "due_date" in present:
        due = parse_due_date(data.due_date)
        if due != task.due_date:
            _check_due_date_change(task, user, org)
            new_values["due_date"] = due
    new_status = canonical_status(data.status) if "status" in present and data.status else None
    new_assignees = None
    if "assigned_user_ids" in present and data.assigned_user_ids is not None:
        new_assignees = await _validate_assignees(db, data.assigned_user_ids, task.organisation_id)

    changed = [f for f, v in new_values.items() if v != getattr(task, f)]
    if new_assignees is not None and set(new_assignees) != assignee_ids:
        changed.append("assigned_user_ids")

    status_entry = None
    if new_status is not None:
        status_entry = lifecycle.transition(task, new_status, user.id, assignee_ids, perms)

    if not changed and status_entry is None:
        return await _task_to_out(db, task)

    if changed:
        before = _snapshot(task, changed, assignee_ids)
        for field in changed:
            if field != "assigned_user_ids":
                setattr(task, field, new_values[field])
        if "assigned_user_ids" in changed:
            await _replace_assignments(db, task.id, new_assignees, user.id)
        after = _snapshot(task, changed, new_assignees if new_assignees is not None else assignee_ids)
        db.add(TaskEditHistory(
            task_id=task.id,
            edited_by=user.id,
            action=HistoryAction.UPDATED,
            changes={"before": before, "after": after},
        ))
    if status_entry is not None:
        db.add(status_entry)

    task.version = (task.version or 1) + 1
    db.add(task)
    await db.commit()
    await db.refresh(task)
    return await _task_to_out(db, task)


@router.put("/{task_id}/assignments", response_model=TaskOut)
async def replace_assignments(
    task_id: str,
    data: AssignmentReplace,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Idempotent replace-all of the task's assignees"""
    task, assignee_ids = await _get_visible_task(task_id, user, db)
    if not lifecycle.can_modify(task, user.id, assignee_ids, user.permissions):
        raise PermissionDenied()

    new_ids = await _validate_assignees(db, data.user_ids, task.organisation_id)
    if set(new_ids) != assignee_ids:
        await _replace_assignments(db, task.id, new_ids, user.id)
        db.add(TaskEditHistory(
            task_id=task.id,
            edited_by=user.id,
            action=HistoryAction.ASSIGNED,
            changes={
                "before": {"assigned_user_ids": sorted(assignee_ids)},
                "after": {"assigned_user_ids": sorted(new_ids)},
            },
        ))
        task.version = (task.version or 1) + 1
        db.add(task)
        await db.commit()
        await db.refresh(task)
    return await _task_to_out(db, task)


@router.delete("/{task_id}")
async def delete_task(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a task; assignment rows go first"""
    task, _ = await _get_visible_task(task_id, user, db)
    if not lifecycle.can_delete(task, user.id, user.permissions):
        raise PermissionDenied()

    await db.execute(delete(TaskAssignment).where(TaskAssignment.task_id == task_id))
    await db.execute(delete(TaskEditHistory).where(TaskEditHistory.task_id == task_id))
    await db.execute(delete(Task).where(Task.id == task_id))
    await db.commit()

    logger.info(f"Task {task_id} deleted by {user.id}")
    return {"status": "deleted", "task_id": task_id}
