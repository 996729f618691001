# visibility.py — Which tasks an identity may see
# Pure functions of (task, identity, permission set, assignees): nothing is
# cached between requests.

from typing import Dict, Iterable, List, Protocol, Set

from sqlalchemy import and_, or_, select

from models import Task, TaskAssignment
from permissions import PermissionSet


class Identity(Protocol):
    id: str
    organisation_id: str


def is_task_visible(task: Task, identity: Identity, perms: PermissionSet, assignee_ids: Iterable[str] = ()) -> bool:
    if task.created_by == identity.id or identity.id in set(assignee_ids):
        return True

    if task.organisation_id != identity.organisation_id and not perms.organisation.switch_organisation:
        return False

    if not task.is_private:
        return True
    # Private tasks never cross organisations, whatever the role
    return task.organisation_id == identity.organisation_id and perms.tasks.view_private


def filter_visible(
    tasks: Iterable[Task],
    identity: Identity,
    perms: PermissionSet,
    assignments: Dict[str, Set[str]],
) -> List[Task]:
    """``assignments`` maps task id → assigned user ids"""
    return [
        t for t in tasks
        if is_task_visible(t, identity, perms, assignments.get(t.id, ()))
    ]


def candidate_scope(identity: Identity, perms: PermissionSet):
    """SQL form of is_task_visible, so LIMIT counts visible rows only"""
    assigned = select(TaskAssignment.task_id).where(TaskAssignment.user_id == identity.id)
    own_org = Task.organisation_id == identity.organisation_id
    if not perms.tasks.view_private:
        own_org = and_(own_org, Task.is_private == False)

    clauses = [Task.created_by == identity.id, Task.id.in_(assigned), own_org]
    if perms.organisation.switch_organisation:
        # Private tasks never cross organisations
        clauses.append(and_(
            Task.organisation_id != identity.organisation_id,
            Task.is_private == False,
        ))
    return or_(*clauses)
