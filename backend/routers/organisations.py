# routers/organisations.py — Tenant registry: list, bootstrap, settings, (de)activation
import uuid
import logging
from datetime import timedelta
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

import mailer
from auth import (
    AuthService, CurrentUser, get_current_user, require_capability, require_role,
    normalise_email, validated_email,
)
from database import get_db_session
from errors import Conflict, NotFound, PermissionDenied, ValidationFailed
from models import (
    Organisation, User, PasswordReset, AuditLog, AuditEventType, OrgType, UserRole,
    default_org_settings, utcnow,
)
from permissions import bootstrap_admin_role_for

logger = logging.getLogger("taskboard.organisations")

router = APIRouter(prefix="/api/v1/organisations", tags=["Organisations"])

PASSWORD_RESET_TTL = timedelta(days=30)

# Settings an org admin may change on their own organisation
SELF_SERVICE_SETTINGS = {"branding", "features"}


# --- Schemas ---

class OrgOut(BaseModel):
    id: str
    name: str
    code: str
    org_type: str
    settings: dict
    is_active: bool
    member_count: int = 0
    created_at: str


class OrgCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    code: str = Field(..., min_length=2, max_length=20)
    org_type: OrgType = OrgType.SCHOOL
    admin_name: str = Field(..., min_length=1, max_length=200)
    admin_email: str
    settings: Optional[dict] = None

    @field_validator("admin_email")
    @classmethod
    def check_admin_email(cls, v: str) -> str:
        return validated_email(v)


class OrgUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    org_type: Optional[OrgType] = None
    settings: Optional[dict] = None


class OrgCreated(BaseModel):
    organisation: OrgOut
    admin_user_id: str
    admin_email: str
    admin_role: str
    email_sent: bool
    email_error: Optional[str] = None
    temporary_password: Optional[str] = None


class MemberOut(BaseModel):
    id: str
    email: str
    display_name: str
    role: str
    is_active: bool


# --- Helpers ---

def _merge_settings(current: dict, patch: dict) -> dict:
    merged = dict(current or {})
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


async def _member_count(org_id: str, db: AsyncSession) -> int:
    stmt = select(func.count(User.id)).where(
        User.organisation_id == org_id,
        User.is_active == True,
    )
    return (await db.execute(stmt)).scalar() or 0


def _org_to_out(org: Organisation, member_count: int = 0) -> OrgOut:
    return OrgOut(
        id=org.id,
        name=org.name,
        code=org.code,
        org_type=org.org_type.value if isinstance(org.org_type, OrgType) else str(org.org_type),
        settings=org.settings or {},
        is_active=org.is_active,
        member_count=member_count,
        created_at=org.created_at.isoformat() if org.created_at else "",
    )


async def _get_scoped_org(org_id: str, user: CurrentUser, db: AsyncSession) -> Organisation:
    """Organisations outside the caller's reach are reported as missing"""
    if org_id != user.organisation_id and not user.permissions.is_super_tenant:
        raise NotFound("Organisation")
    org = (await db.execute(select(Organisation).where(Organisation.id == org_id))).scalar_one_or_none()
    if not org:
        raise NotFound("Organisation")
    return org


def _audit(user: CurrentUser, event: AuditEventType, org_id: str, details: dict = None) -> AuditLog:
    return AuditLog(
        event_type=event,
        user_id=user.id,
        organisation_id=org_id,
        resource_type="organisation",
        resource_id=org_id,
        details=details,
        request_id=str(uuid.uuid4()),
    )


# --- Endpoints ---

@router.get("", response_model=List[OrgOut])
async def list_organisations(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    include_inactive: bool = False,
    limit: int = Query(default=200, le=500),
):
    """List organisations ordered by name (super-tenants see all, others their own)"""
    stmt = select(Organisation).order_by(Organisation.name.asc()).limit(limit)
    if user.permissions.is_super_tenant:
        if not include_inactive:
            stmt = stmt.where(Organisation.is_active == True)
    else:
        stmt = stmt.where(Organisation.id == user.organisation_id)

    orgs = (await db.execute(stmt)).scalars().all()
    return [_org_to_out(org, await _member_count(org.id, db)) for org in orgs]


@router.get("/current", response_model=OrgOut)
async def get_current_organisation(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Get the current user's organisation"""
    org = await _get_scoped_org(user.organisation_id, user, db)
    return _org_to_out(org, await _member_count(org.id, db))


@router.get("/{org_id}", response_model=OrgOut)
async def get_organisation(
    org_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    org = await _get_scoped_org(org_id, user, db)
    return _org_to_out(org, await _member_count(org.id, db))


@router.post("", response_model=OrgCreated, status_code=201)
async def create_organisation(
    data: OrgCreate,
    user: CurrentUser = Depends(require_capability(lambda p: p.organisation.switch_organisation)),
    db: AsyncSession = Depends(get_db_session),
):
    """Create an organisation together with its bootstrap admin.

    The organisation, the admin and the admin's password-reset record are
    written in one transaction: all three or none.
    """
    name = data.name.strip()
    code = data.code.strip().upper()
    if not name or not code:
        raise ValidationFailed("Name and code are required")
    admin_email = normalise_email(data.admin_email)

    if (await db.execute(select(Organisation.id).where(Organisation.code == code))).scalar_one_or_none():
        raise Conflict(f"Organisation code '{code}' already exists")
    if (await db.execute(select(User.id).where(User.email == admin_email))).scalar_one_or_none():
        raise Conflict("User with this email already exists")

    settings = default_org_settings(name)
    if data.settings:
        settings = _merge_settings(settings, data.settings)

    temp_password = AuthService.generate_temporary_password()
    temp_hash = AuthService.hash_password(temp_password)
    admin_role = bootstrap_admin_role_for(data.org_type)

    org = Organisation(name=name, code=code, org_type=data.org_type, settings=settings, is_active=True)
    try:
        db.add(org)
        await db.flush()
        admin = User(
            email=admin_email,
            display_name=data.admin_name.strip(),
            password_hash=temp_hash,
            organisation_id=org.id,
            role=admin_role,
            is_active=True,
            first_login_completed=False,
        )
        db.add(admin)
        await db.flush()
        db.add(PasswordReset(
            user_id=admin.id,
            temporary_password_hash=temp_hash,
            expires_at=utcnow() + PASSWORD_RESET_TTL,
        ))
        db.add(_audit(user, AuditEventType.ORG_CREATED, org.id, {"code": code, "admin_user_id": admin.id}))
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict("Organisation code or admin email already exists")

    logger.info(f"Organisation {code} created by {user.id}")

    delivery = await mailer.send_welcome_email(admin_email, admin.display_name, name, temp_password)
    if not delivery.delivered:
        logger.warning(f"Welcome email for {code} admin not delivered: {delivery.error}")

    return OrgCreated(
        organisation=_org_to_out(org, 1),
        admin_user_id=admin.id,
        admin_email=admin_email,
        admin_role=admin_role.value,
        email_sent=delivery.delivered,
        email_error=delivery.error,
        temporary_password=None if delivery.delivered else temp_password,
    )


@router.patch("/{org_id}", response_model=OrgOut)
async def update_organisation(
    org_id: str,
    update: OrgUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Update an organisation. Org admins may only change branding and features of their own."""
    perms = user.permissions.organisation
    if not perms.manage_settings:
        self_service = (
            perms.view_settings
            and org_id == user.organisation_id
            and update.name is None
            and update.org_type is None
            and set((update.settings or {}).keys()) <= SELF_SERVICE_SETTINGS
        )
        if not self_service:
            raise PermissionDenied()

    org = await _get_scoped_org(org_id, user, db)

    if update.name is not None:
        org.name = update.name.strip()
    if update.org_type is not None:
        org.org_type = update.org_type
    if update.settings is not None:
        org.settings = _merge_settings(org.settings, update.settings)

    db.add(org)
    db.add(_audit(user, AuditEventType.ORG_UPDATED, org.id, {"fields": sorted(update.model_dump(exclude_none=True))}))
    await db.commit()
    await db.refresh(org)
    return _org_to_out(org, await _member_count(org.id, db))


@router.post("/{org_id}/deactivate", response_model=OrgOut)
async def deactivate_organisation(
    org_id: str,
    user: CurrentUser = Depends(require_role(UserRole.SUPER_ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    """Soft-deactivate. Members and tasks are left in place."""
    if org_id == user.organisation_id:
        raise ValidationFailed("Cannot deactivate your own organisation")
    org = await _get_scoped_org(org_id, user, db)
    org.is_active = False
    db.add(org)
    db.add(_audit(user, AuditEventType.ORG_DEACTIVATED, org.id))
    await db.commit()
    await db.refresh(org)
    return _org_to_out(org, await _member_count(org.id, db))


@router.post("/{org_id}/reactivate", response_model=OrgOut)
async def reactivate_organisation(
    org_id: str,
    user: CurrentUser = Depends(require_role(UserRole.SUPER_ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    org = await _get_scoped_org(org_id, user, db)
    org.is_active = True
    db.add(org)
    db.add(_audit(user, AuditEventType.ORG_REACTIVATED, org.id))
    await db.commit()
    await db.refresh(org)
    return _org_to_out(org, await _member_count(org.id, db))


@router.get("/{org_id}/users", response_model=List[MemberOut])
async def list_members(
    org_id: str,
    user: CurrentUser = Depends(require_capability(lambda p: p.users.view_all)),
    db: AsyncSession = Depends(get_db_session),
):
    """List members of an organisation"""
    await _get_scoped_org(org_id, user, db)
    stmt = select(User).where(User.organisation_id == org_id).order_by(User.display_name.asc())
    members = (await db.execute(stmt)).scalars().all()
    return [
        MemberOut(
            id=m.id,
            email=m.email,
            display_name=m.display_name or "",
            role=m.role.value if isinstance(m.role, UserRole) else m.role,
            is_active=m.is_active,
        )
        for m in members
    ]
