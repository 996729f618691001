# routers/reports.py — Organisation summaries, CSV export, cross-organisation stats
import csv
import io
import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse
from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, require_capability
from database import get_db_session
from errors import PermissionDenied
from models import Organisation, Task, TaskAssignment, TaskPriority, TaskStatus, User, utcnow
from task_fields import format_due_date
from visibility import candidate_scope, filter_visible

logger = logging.getLogger("taskboard.reports")

router = APIRouter(prefix="/api/v1/reports", tags=["Reports"])

OPEN_STATUSES = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)

CSV_COLUMNS = [
    "id", "title", "status", "priority", "due_date", "is_private",
    "created_by", "assigned_user_ids", "completed_at", "created_at",
]


def _completion_rate(completed: int, total: int) -> float:
    return round(completed / total * 100, 1) if total else 0.0


def _key(v) -> str:
    return v.value if hasattr(v, "value") else str(v)


def _resolve_org(user: CurrentUser, organisation_id: Optional[str]) -> str:
    if organisation_id and organisation_id != user.organisation_id:
        if not user.permissions.is_super_tenant:
            raise PermissionDenied()
        return organisation_id
    return user.organisation_id


@router.get("/summary")
async def task_summary(
    organisation_id: Optional[str] = None,
    user: CurrentUser = Depends(require_capability(lambda p: p.reports.view)),
    db: AsyncSession = Depends(get_db_session),
):
    """Task totals for one organisation"""
    org_id = _resolve_org(user, organisation_id)
    org_filter = Task.organisation_id == org_id

    total = (await db.execute(select(func.count(Task.id)).where(org_filter))).scalar() or 0

    by_status_q = await db.execute(
        select(Task.status, func.count(Task.id)).where(org_filter).group_by(Task.status)
    )
    by_status = {s.value: 0 for s in TaskStatus}
    by_status.update({_key(row[0]): row[1] for row in by_status_q.all()})

    by_priority_q = await db.execute(
        select(Task.priority, func.count(Task.id)).where(org_filter).group_by(Task.priority)
    )
    by_priority = {p.value: 0 for p in TaskPriority}
    by_priority.update({_key(row[0]): row[1] for row in by_priority_q.all()})

    overdue_q = await db.execute(
        select(func.count(Task.id)).where(
            and_(org_filter, Task.due_date.isnot(None),
                 Task.due_date < utcnow(),
                 Task.status.in_(OPEN_STATUSES))
        )
    )
    overdue = overdue_q.scalar() or 0
    completed = by_status[TaskStatus.COMPLETED.value]

    return {
        "organisation_id": org_id,
        "total_tasks": total,
        "by_status": by_status,
        "by_priority": by_priority,
        "completed_tasks": completed,
        "overdue_tasks": overdue,
        "completion_rate": _completion_rate(completed, total),
        "generated_at": utcnow().isoformat(),
    }


@router.get("/export")
async def export_tasks(
    limit: int = Query(default=5000, le=20000),
    user: CurrentUser = Depends(require_capability(lambda p: p.reports.export)),
    db: AsyncSession = Depends(get_db_session),
):
    """CSV of the caller's visible tasks"""
    stmt = select(Task).where(
        Task.organisation_id == user.organisation_id,
        candidate_scope(user, user.permissions),
    )
    tasks = (await db.execute(stmt.order_by(Task.created_at.asc()).limit(limit))).scalars().all()

    assignments: Dict[str, set] = {t.id: set() for t in tasks}
    if tasks:
        rows = await db.execute(
            select(TaskAssignment.task_id, TaskAssignment.user_id)
            .where(TaskAssignment.task_id.in_(list(assignments)))
        )
        for task_id, user_id in rows.all():
            assignments[task_id].add(user_id)
    visible = filter_visible(tasks, user, user.permissions, assignments)

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_COLUMNS)
    for t in visible:
        writer.writerow([
            t.id,
            t.title,
            _key(t.status),
            _key(t.priority),
            format_due_date(t.due_date) or "",
            "true" if t.is_private else "false",
            t.created_by,
            ";".join(sorted(assignments.get(t.id, ()))),
            t.completed_at.isoformat() if t.completed_at else "",
            t.created_at.isoformat() if t.created_at else "",
        ])

    logger.info(f"📤 Exported {len(visible)} tasks for {user.id}")
    return PlainTextResponse(
        content=output.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="tasks.csv"'},
    )


@router.get("/organisations")
async def organisation_stats(
    include_inactive: bool = True,
    user: CurrentUser = Depends(require_capability(lambda p: p.reports.view_cross_organisation)),
    db: AsyncSession = Depends(get_db_session),
):
    """Per-organisation user and task counts, plus global totals"""
    stmt = select(Organisation).order_by(Organisation.name.asc())
    if not include_inactive:
        stmt = stmt.where(Organisation.is_active == True)
    orgs = (await db.execute(stmt)).scalars().all()

    users_q = await db.execute(
        select(User.organisation_id, func.count(User.id))
        .where(User.is_active == True)
        .group_by(User.organisation_id)
    )
    users_by_org = dict(users_q.all())

    tasks_q = await db.execute(
        select(Task.organisation_id, Task.status, func.count(Task.id))
        .group_by(Task.organisation_id, Task.status)
    )
    tasks_by_org: Dict[str, Dict[str, int]] = {}
    for org_id, status, count in tasks_q.all():
        tasks_by_org.setdefault(org_id, {})[_key(status)] = count

    results = []
    for org in orgs:
        counts = tasks_by_org.get(org.id, {})
        total = sum(counts.values())
        completed = counts.get(TaskStatus.COMPLETED.value, 0)
        active = sum(counts.get(s.value, 0) for s in OPEN_STATUSES)
        results.append({
            "id": org.id,
            "name": org.name,
            "code": org.code,
            "org_type": _key(org.org_type),
            "is_active": org.is_active,
            "total_users": users_by_org.get(org.id, 0),
            "total_tasks": total,
            "active_tasks": active,
            "completed_tasks": completed,
            "completion_rate": _completion_rate(completed, total),
        })

    total_tasks = sum(r["total_tasks"] for r in results)
    total_completed = sum(r["completed_tasks"] for r in results)
    return {
        "organisations": results,
        "totals": {
            "organisations": len(results),
            "users": sum(r["total_users"] for r in results),
            "tasks": total_tasks,
            "active_tasks": sum(r["active_tasks"] for r in results),
            "completed_tasks": total_completed,
            "completion_rate": _completion_rate(total_completed, total_tasks),
        },
    }
