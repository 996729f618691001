# permissions.py — Role → capability resolver
# Every authorisation decision routes through permissions_for(); the
# can_* predicates are closed role lists kept in agreement with it.

from typing import Dict, Optional, Union

from pydantic import BaseModel, ConfigDict

from models import UserRole, OrgType


# ============================================================
# PERMISSION SET
# ============================================================

class TaskPermissions(BaseModel):
    model_config = ConfigDict(frozen=True)

    create: bool = False
    edit: bool = False
    delete: bool = False
    edit_due_date: bool = False
    view_all: bool = False
    view_private: bool = False


class UserPermissions(BaseModel):
    model_config = ConfigDict(frozen=True)

    create: bool = False
    edit: bool = False
    delete: bool = False
    view_all: bool = False
    reset_password: bool = False


class ReportPermissions(BaseModel):
    model_config = ConfigDict(frozen=True)

    view: bool = False
    export: bool = False
    view_cross_organisation: bool = False


class OrganisationPermissions(BaseModel):
    model_config = ConfigDict(frozen=True)

    manage_settings: bool = False
    view_settings: bool = False
    switch_organisation: bool = False


class PermissionSet(BaseModel):
    model_config = ConfigDict(frozen=True)

    tasks: TaskPermissions = TaskPermissions()
    users: UserPermissions = UserPermissions()
    reports: ReportPermissions = ReportPermissions()
    organisation: OrganisationPermissions = OrganisationPermissions()

    @property
    def is_elevated_for_tasks(self) -> bool:
        """Cross-task editing: may act on any visible task in the org"""
        return self.tasks.edit and self.tasks.view_all

    @property
    def is_super_tenant(self) -> bool:
        return self.organisation.switch_organisation

    def covers(self, other: "PermissionSet") -> bool:
        """True when every capability ``other`` holds is held here too"""
        mine = self.model_dump()
        return all(
            mine[section][name] or not held
            for section, flags in other.model_dump().items()
            for name, held in flags.items()
        )


# ============================================================
# ROLE TABLES
# ============================================================

# Unknown / missing role: create own tasks, nothing else
MINIMAL_PERMISSIONS = PermissionSet(tasks=TaskPermissions(create=True))

# Known role with no dedicated table
MEMBER_PERMISSIONS = PermissionSet(tasks=TaskPermissions(create=True, edit=True))

_ALL_TASKS = TaskPermissions(
    create=True, edit=True, delete=True, edit_due_date=True, view_all=True, view_private=True,
)
_ALL_USERS = UserPermissions(
    create=True, edit=True, delete=True, view_all=True, reset_password=True,
)

# Coordinator tier: broad task editing, read-only on people and reports
_COORDINATOR_PERMISSIONS = PermissionSet(
    tasks=TaskPermissions(create=True, edit=True, edit_due_date=True, view_all=True),
    users=UserPermissions(view_all=True),
    reports=ReportPermissions(view=True),
)

ROLE_PERMISSIONS: Dict[UserRole, PermissionSet] = {
    UserRole.SUPER_ADMIN: PermissionSet(
        tasks=_ALL_TASKS,
        users=_ALL_USERS,
        reports=ReportPermissions(view=True, export=True, view_cross_organisation=True),
        organisation=OrganisationPermissions(
            manage_settings=True, view_settings=True, switch_organisation=True,
        ),
    ),
    UserRole.FRANCHISE_ADMIN: PermissionSet(
        tasks=_ALL_TASKS.model_copy(update={"view_private": False}),
        users=_ALL_USERS,
        reports=ReportPermissions(view=True, export=True, view_cross_organisation=True),
        organisation=OrganisationPermissions(
            manage_settings=True, view_settings=True, switch_organisation=True,
        ),
    ),
    UserRole.FRANCHISE_ANALYST: PermissionSet(
        tasks=TaskPermissions(create=True, edit=True),
        reports=ReportPermissions(view=True, export=True, view_cross_organisation=True),
    ),
    UserRole.ADMIN: PermissionSet(
        tasks=_ALL_TASKS,
        users=_ALL_USERS,
        reports=ReportPermissions(view=True, export=True),
        organisation=OrganisationPermissions(view_settings=True),
    ),
    UserRole.FRANCHISEE: PermissionSet(
        tasks=_ALL_TASKS,
        users=UserPermissions(edit=True, view_all=True),
        reports=ReportPermissions(view=True, export=True),
        organisation=OrganisationPermissions(view_settings=True),
    ),
    UserRole.SALES_MANAGER: _COORDINATOR_PERMISSIONS,
    UserRole.COORDINATOR: _COORDINATOR_PERMISSIONS,
    UserRole.ADMIN_SUPERVISOR: _COORDINATOR_PERMISSIONS,
    UserRole.DEPARTMENT_HEAD: PermissionSet(
        tasks=_ALL_TASKS,
        users=UserPermissions(create=True, edit=True, view_all=True),
        reports=ReportPermissions(view=True, export=True),
        organisation=OrganisationPermissions(view_settings=True),
    ),
    UserRole.DEPARTMENT_MANAGER: _COORDINATOR_PERMISSIONS,
}

ROLE_LABELS: Dict[UserRole, str] = {
    UserRole.SUPER_ADMIN: "Super Administrator",
    UserRole.FRANCHISE_ADMIN: "Franchise Administrator",
    UserRole.FRANCHISE_ANALYST: "Franchise Analyst",
    UserRole.ADMIN: "Administrator",
    UserRole.FRANCHISEE: "Franchisee",
    UserRole.SALES_MANAGER: "Sales Manager",
    UserRole.COORDINATOR: "Coordinator",
    UserRole.ADMIN_SUPERVISOR: "Administrative Supervisor",
    UserRole.ADMIN_ASSISTANT: "Administrative Assistant",
    UserRole.SALESPERSON: "Salesperson",
    UserRole.TEACHER: "Teacher",
    UserRole.DEPARTMENT_HEAD: "Head of Department",
    UserRole.DEPARTMENT_MANAGER: "Department Manager",
    UserRole.DEPARTMENT_ANALYST: "Department Analyst",
    UserRole.DEPARTMENT_ASSISTANT: "Department Assistant",
}

# Roles that span every organisation; only a super-tenant may grant them
GLOBAL_ROLES = frozenset({
    UserRole.SUPER_ADMIN, UserRole.FRANCHISE_ADMIN, UserRole.FRANCHISE_ANALYST,
})


def _coerce_role(role: Union[UserRole, str, None]) -> Optional[UserRole]:
    if isinstance(role, UserRole):
        return role
    if role is None:
        return None
    try:
        return UserRole(role)
    except ValueError:
        return None


def permissions_for(role: Union[UserRole, str, None]) -> PermissionSet:
    """Resolve the capability set for a role.

    Total over UserRole and its string values. Anything that is not a known
    role resolves to MINIMAL_PERMISSIONS. Returns shared immutable instances.
    """
    known = _coerce_role(role)
    if known is None:
        return MINIMAL_PERMISSIONS
    return ROLE_PERMISSIONS.get(known, MEMBER_PERMISSIONS)


def role_label(role: Union[UserRole, str, None]) -> str:
    known = _coerce_role(role)
    if known is None:
        return str(role or "")
    return ROLE_LABELS[known]


def default_role_for(org_type: OrgType) -> UserRole:
    """Role given to self-registered members"""
    if org_type == OrgType.DEPARTMENT:
        return UserRole.DEPARTMENT_ASSISTANT
    return UserRole.TEACHER


def bootstrap_admin_role_for(org_type: OrgType) -> UserRole:
    """Role of the admin created together with a new organisation"""
    if org_type == OrgType.DEPARTMENT:
        return UserRole.FRANCHISEE
    return UserRole.ADMIN


# ============================================================
# DERIVED PREDICATES
# ============================================================

USER_MANAGEMENT_ROLES = frozenset({
    UserRole.SUPER_ADMIN, UserRole.FRANCHISE_ADMIN, UserRole.ADMIN, UserRole.DEPARTMENT_HEAD,
})

PASSWORD_RESET_ROLES = frozenset({
    UserRole.SUPER_ADMIN, UserRole.FRANCHISE_ADMIN, UserRole.ADMIN,
})

DUE_DATE_EDIT_ROLES = frozenset({
    UserRole.SUPER_ADMIN,
    UserRole.FRANCHISE_ADMIN,
    UserRole.ADMIN,
    UserRole.FRANCHISEE,
    UserRole.SALES_MANAGER,
    UserRole.COORDINATOR,
    UserRole.ADMIN_SUPERVISOR,
    UserRole.DEPARTMENT_HEAD,
    UserRole.DEPARTMENT_MANAGER,
})

CROSS_ORG_REPORT_ROLES = frozenset({
    UserRole.SUPER_ADMIN, UserRole.FRANCHISE_ADMIN, UserRole.FRANCHISE_ANALYST,
})

MULTI_ORG_ROLES = frozenset({UserRole.SUPER_ADMIN, UserRole.FRANCHISE_ADMIN})


def can_manage_users(role) -> bool:
    return _coerce_role(role) in USER_MANAGEMENT_ROLES


def can_reset_passwords(role) -> bool:
    return _coerce_role(role) in PASSWORD_RESET_ROLES


def can_edit_task_due_date(role) -> bool:
    return _coerce_role(role) in DUE_DATE_EDIT_ROLES


def can_view_cross_org_reports(role) -> bool:
    return _coerce_role(role) in CROSS_ORG_REPORT_ROLES


def can_access_multiple_organisations(role) -> bool:
    return _coerce_role(role) in MULTI_ORG_ROLES


def is_super_admin(role) -> bool:
    return _coerce_role(role) == UserRole.SUPER_ADMIN
