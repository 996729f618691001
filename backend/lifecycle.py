# lifecycle.py — Task status state machine and who may drive it
#
#   pending ──► in_progress ──► completed
#      │             │              │
#      └──► cancelled ◄┘              └──► pending | in_progress   (reopen)
#
# completed_at is non-null exactly while status == completed.

import logging
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, Optional

from errors import InvalidTransition, PermissionDenied
from models import Task, TaskEditHistory, TaskStatus, HistoryAction, utcnow
from permissions import PermissionSet

logger = logging.getLogger("taskboard.lifecycle")

_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS}),
    TaskStatus.CANCELLED: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return TaskStatus(target) in _TRANSITIONS.get(TaskStatus(current), frozenset())


def allowed_targets(current: TaskStatus) -> FrozenSet[TaskStatus]:
    return _TRANSITIONS.get(TaskStatus(current), frozenset())


def is_terminal(status: TaskStatus) -> bool:
    return not _TRANSITIONS.get(TaskStatus(status))


def apply_status(task: Task, status: TaskStatus, now: Optional[datetime] = None) -> None:
    """Set status and keep completed_at in lockstep with it"""
    status = TaskStatus(status)
    task.status = status
    if status == TaskStatus.COMPLETED:
        task.completed_at = now or utcnow()
    else:
        task.completed_at = None


def can_modify(task: Task, actor_id: str, assignee_ids: Iterable[str], perms: PermissionSet) -> bool:
    """Creator, any assignee, or a role with cross-task editing"""
    if task.created_by == actor_id:
        return True
    if actor_id in set(assignee_ids):
        return True
    return perms.is_elevated_for_tasks


def can_delete(task: Task, actor_id: str, perms: PermissionSet) -> bool:
    """Stricter than can_modify: assignees alone may not delete"""
    return task.created_by == actor_id or perms.tasks.delete


def transition(
    task: Task,
    target: TaskStatus,
    actor_id: str,
    assignee_ids: Iterable[str],
    perms: PermissionSet,
    now: Optional[datetime] = None,
) -> Optional[TaskEditHistory]:
    """Move a task to ``target``.

    Returns the history row to persist, or None when the task is already in
    ``target``. Raises PermissionDenied / InvalidTransition without touching
    the task.
    """
    if not can_modify(task, actor_id, assignee_ids, perms):
        raise PermissionDenied()

    current = TaskStatus(task.status)
    target = TaskStatus(target)
    if current == target:
        return None
    if not can_transition(current, target):
        raise InvalidTransition(current.value, target.value)

    before = {
        "status": current.value,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
    }
    apply_status(task, target, now)
    after = {
        "status": target.value,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
    }
    logger.debug(f"Task {task.id}: {current.value} → {target.value} by {actor_id}")

    return TaskEditHistory(
        task_id=task.id,
        edited_by=actor_id,
        action=HistoryAction.STATUS_CHANGED,
        changes={"before": before, "after": after},
    )
