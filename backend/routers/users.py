# routers/users.py — User administration: create, edit, deactivate, purge, reset
import re
import uuid
import logging
from datetime import timedelta
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select, func, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

import mailer
from auth import (
    AuthService, CurrentUser, get_current_user, require_capability, normalise_email, validated_email,
)
from database import get_db_session
from errors import Conflict, NotFound, PermissionDenied, ValidationFailed
from models import (
    User, Organisation, PasswordReset, TaskAssignment, AuditLog, AuditEventType,
    UserRole, utcnow,
)
from permissions import GLOBAL_ROLES, permissions_for, role_label

logger = logging.getLogger("taskboard.users")

router = APIRouter(prefix="/api/v1/users", tags=["Users"])

PASSWORD_RESET_TTL = timedelta(days=30)
_PHONE_RE = re.compile(r"^\+?[0-9 ()\-]{8,20}$")


# --- Schemas ---

class UserOut(BaseModel):
    id: str
    email: str
    display_name: str
    phone: Optional[str] = None
    role: str
    role_label: str
    organisation_id: str
    is_active: bool
    first_login_completed: bool
    last_login_at: Optional[str] = None
    created_at: str


class UserCreate(BaseModel):
    email: str
    display_name: str = Field(..., min_length=1, max_length=200)
    role: str
    phone: Optional[str] = None
    organisation_id: Optional[str] = None

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        return validated_email(v)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v.strip() and not _PHONE_RE.match(v.strip()):
            raise ValueError("Invalid phone number")
        return v.strip() if v else None


class UserUpdate(BaseModel):
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    phone: Optional[str] = None
    role: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v.strip() and not _PHONE_RE.match(v.strip()):
            raise ValueError("Invalid phone number")
        return v


class UserCreated(BaseModel):
    user: UserOut
    email_sent: bool
    email_error: Optional[str] = None
    temporary_password: Optional[str] = None


# --- Helpers ---

def _user_to_out(u: User) -> UserOut:
    role = u.role.value if isinstance(u.role, UserRole) else u.role
    return UserOut(
        id=u.id,
        email=u.email,
        display_name=u.display_name or "",
        phone=u.phone,
        role=role,
        role_label=role_label(role),
        organisation_id=u.organisation_id,
        is_active=u.is_active,
        first_login_completed=bool(u.first_login_completed),
        last_login_at=u.last_login_at.isoformat() if u.last_login_at else None,
        created_at=u.created_at.isoformat() if u.created_at else "",
    )


def _parse_role(value: str) -> UserRole:
    try:
        return UserRole(value)
    except ValueError:
        raise ValidationFailed(f"Invalid role: {value}")


def _check_role_grant(current_user: CurrentUser, role: UserRole) -> None:
    """Only super_admin grants super_admin; only super-tenants grant global roles.

    Inside one organisation nobody grants a role holding capabilities they lack.
    """
    if role == UserRole.SUPER_ADMIN and current_user.role != UserRole.SUPER_ADMIN.value:
        raise PermissionDenied("Only super_admin can assign super_admin role")
    perms = current_user.permissions
    if perms.is_super_tenant:
        return
    if role in GLOBAL_ROLES or not perms.covers(permissions_for(role)):
        raise PermissionDenied(f"Cannot grant the {role.value} role")


async def _get_scoped_user(user_id: str, current_user: CurrentUser, db: AsyncSession) -> User:
    """Users outside the caller's reach are reported as missing"""
    stmt = select(User).where(User.id == user_id)
    if user_id != current_user.id and not current_user.permissions.is_super_tenant:
        stmt = stmt.where(User.organisation_id == current_user.organisation_id)
    target = (await db.execute(stmt)).scalar_one_or_none()
    if not target:
        raise NotFound("User")
    return target


def _audit(current_user: CurrentUser, event: AuditEventType, target_id: str, details: dict = None) -> AuditLog:
    return AuditLog(
        event_type=event,
        user_id=current_user.id,
        organisation_id=current_user.organisation_id,
        resource_type="user",
        resource_id=target_id,
        details=details,
        request_id=str(uuid.uuid4()),
    )


def _issue_temporary_password(user: User, db: AsyncSession) -> str:
    temp_password = AuthService.generate_temporary_password()
    user.password_hash = AuthService.hash_password(temp_password)
    user.first_login_completed = False
    db.add(PasswordReset(
        user_id=user.id,
        temporary_password_hash=user.password_hash,
        expires_at=utcnow() + PASSWORD_RESET_TTL,
    ))
    return temp_password


# --- Endpoints ---

@router.get("", response_model=List[UserOut])
async def list_users(
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    organisation_id: Optional[str] = None,
    role: Optional[str] = None,
    active_only: bool = True,
    limit: int = Query(default=100, le=500),
    offset: int = Query(default=0, ge=0),
):
    """List users in an organisation (own org unless super-tenant)"""
    if not current_user.permissions.users.view_all:
        me = await _get_scoped_user(current_user.id, current_user, db)
        return [_user_to_out(me)]

    org_id = organisation_id or current_user.organisation_id
    if org_id != current_user.organisation_id and not current_user.permissions.is_super_tenant:
        raise PermissionDenied()

    stmt = (
        select(User)
        .where(User.organisation_id == org_id)
        .order_by(User.display_name.asc())
        .offset(offset)
        .limit(limit)
    )
    if active_only:
        stmt = stmt.where(User.is_active == True)
    if role:
        stmt = stmt.where(User.role == _parse_role(role))

    result = await db.execute(stmt)
    return [_user_to_out(u) for u in result.scalars().all()]


@router.get("/{user_id}", response_model=UserOut)
async def get_user(
    user_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Get a specific user"""
    if user_id != current_user.id and not current_user.permissions.users.view_all:
        raise NotFound("User")
    return _user_to_out(await _get_scoped_user(user_id, current_user, db))


@router.post("", response_model=UserCreated, status_code=201)
async def create_user(
    data: UserCreate,
    current_user: CurrentUser = Depends(require_capability(lambda p: p.users.create)),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a user with a temporary password and email it to them"""
    role = _parse_role(data.role)
    _check_role_grant(current_user, role)

    org_id = data.organisation_id or current_user.organisation_id
    if org_id != current_user.organisation_id and not current_user.permissions.is_super_tenant:
        raise PermissionDenied()
    org = (await db.execute(
        select(Organisation).where(Organisation.id == org_id, Organisation.is_active == True)
    )).scalar_one_or_none()
    if not org:
        raise NotFound("Organisation")

    email = normalise_email(data.email)
    if (await db.execute(select(User.id).where(User.email == email))).scalar_one_or_none():
        raise Conflict("User with this email already exists")

    new_user = User(
        email=email,
        display_name=data.display_name.strip(),
        phone=data.phone,
        organisation_id=org.id,
        role=role,
        is_active=True,
        password_hash="",
    )
    db.add(new_user)
    try:
        await db.flush()
        temp_password = _issue_temporary_password(new_user, db)
        db.add(_audit(current_user, AuditEventType.USER_CREATED, new_user.id, {"email": email, "role": role.value}))
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict("User with this email already exists")
    await db.refresh(new_user)

    delivery = await mailer.send_welcome_email(email, new_user.display_name, org.name, temp_password)
    if not delivery.delivered:
        logger.warning(f"Welcome email for user {new_user.id} not delivered: {delivery.error}")

    return UserCreated(
        user=_user_to_out(new_user),
        email_sent=delivery.delivered,
        email_error=delivery.error,
        temporary_password=None if delivery.delivered else temp_password,
    )


@router.patch("/{user_id}", response_model=UserOut)
async def update_user(
    user_id: str,
    update: UserUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Update profile fields (self or users.edit) and role (users.edit only)"""
    is_self = user_id == current_user.id
    if not is_self and not current_user.permissions.users.edit:
        raise PermissionDenied()

    target = await _get_scoped_user(user_id, current_user, db)

    new_role = None
    if update.role is not None:
        if is_self:
            raise PermissionDenied("Cannot change your own role")
        if not current_user.permissions.users.edit:
            raise PermissionDenied()
        new_role = _parse_role(update.role)
        _check_role_grant(current_user, new_role)
        if not current_user.permissions.is_super_tenant and not current_user.permissions.covers(
            permissions_for(target.role)
        ):
            raise PermissionDenied("Cannot change the role of a more privileged user")
        if target.role == UserRole.SUPER_ADMIN and current_user.role != UserRole.SUPER_ADMIN.value:
            raise PermissionDenied("Only super_admin can change a super_admin")

    if update.display_name is not None:
        target.display_name = update.display_name.strip()
    if update.phone is not None:
        target.phone = update.phone.strip() or None

    if new_role is not None and new_role != target.role:
        old_role = target.role.value if isinstance(target.role, UserRole) else target.role
        target.role = new_role
        db.add(_audit(current_user, AuditEventType.USER_ROLE_CHANGED, target.id,
                      {"old_role": old_role, "new_role": new_role.value}))
    else:
        db.add(_audit(current_user, AuditEventType.USER_UPDATED, target.id))

    db.add(target)
    await db.commit()
    await db.refresh(target)
    return _user_to_out(target)


@router.post("/{user_id}/deactivate", response_model=UserOut)
async def deactivate_user(
    user_id: str,
    current_user: CurrentUser = Depends(require_capability(lambda p: p.users.edit)),
    db: AsyncSession = Depends(get_db_session),
):
    """Soft-delete: the account stays but can no longer sign in"""
    if user_id == current_user.id:
        raise ValidationFailed("Cannot deactivate yourself")

    target = await _get_scoped_user(user_id, current_user, db)
    if target.role == UserRole.SUPER_ADMIN and current_user.role != UserRole.SUPER_ADMIN.value:
        raise PermissionDenied()

    target.is_active = False
    db.add(target)
    db.add(_audit(current_user, AuditEventType.USER_DEACTIVATED, target.id))
    await db.commit()
    await db.refresh(target)
    return _user_to_out(target)


@router.post("/{user_id}/reactivate", response_model=UserOut)
async def reactivate_user(
    user_id: str,
    current_user: CurrentUser = Depends(require_capability(lambda p: p.users.edit)),
    db: AsyncSession = Depends(get_db_session),
):
    target = await _get_scoped_user(user_id, current_user, db)
    target.is_active = True
    db.add(target)
    db.add(_audit(current_user, AuditEventType.USER_REACTIVATED, target.id))
    await db.commit()
    await db.refresh(target)
    return _user_to_out(target)


@router.post("/{user_id}/reset-password")
async def reset_password(
    user_id: str,
    current_user: CurrentUser = Depends(require_capability(lambda p: p.users.reset_password)),
    db: AsyncSession = Depends(get_db_session),
):
    """Issue a new temporary password; the user must change it on next login"""
    target = await _get_scoped_user(user_id, current_user, db)
    if target.role == UserRole.SUPER_ADMIN and current_user.role != UserRole.SUPER_ADMIN.value:
        raise PermissionDenied()

    temp_password = _issue_temporary_password(target, db)
    db.add(_audit(current_user, AuditEventType.PASSWORD_RESET, target.id))
    await db.commit()

    delivery = await mailer.send_password_reset_email(target.email, target.display_name, temp_password)
    return {
        "user_id": target.id,
        "status": "password_reset",
        "email_sent": delivery.delivered,
        "email_error": delivery.error,
        "temporary_password": None if delivery.delivered else temp_password,
    }


@router.delete("/{user_id}")
async def purge_user(
    user_id: str,
    current_user: CurrentUser = Depends(require_capability(lambda p: p.users.delete)),
    db: AsyncSession = Depends(get_db_session),
):
    """Hard delete. Removes password resets and assignments; authored tasks stay."""
    if user_id == current_user.id:
        raise ValidationFailed("Cannot delete your own account")

    target = await _get_scoped_user(user_id, current_user, db)

    if target.role == UserRole.SUPER_ADMIN:
        if current_user.role != UserRole.SUPER_ADMIN.value:
            raise PermissionDenied("Only super_admin can delete a super_admin")
        remaining = (await db.execute(
            select(func.count(User.id)).where(User.role == UserRole.SUPER_ADMIN)
        )).scalar() or 0
        if remaining <= 1:
            raise ValidationFailed("Cannot delete the last super_admin")

    removed_resets = (await db.execute(
        delete(PasswordReset).where(PasswordReset.user_id == target.id)
    )).rowcount
    removed_assignments = (await db.execute(
        delete(TaskAssignment).where(TaskAssignment.user_id == target.id)
    )).rowcount
    await db.delete(target)
    db.add(_audit(current_user, AuditEventType.USER_PURGED, user_id, {
        "email": target.email,
        "password_resets_removed": removed_resets,
        "assignments_removed": removed_assignments,
    }))
    await db.commit()

    logger.info(f"User {user_id} purged by {current_user.id}")
    return {
        "user_id": user_id,
        "status": "deleted",
        "password_resets_removed": removed_resets,
        "assignments_removed": removed_assignments,
    }
