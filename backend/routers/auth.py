# routers/auth.py — Login, self-registration, logout and password change
import uuid
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, UserRegister, UserLogin, PasswordChange, TokenResponse,
    get_current_user, CurrentUser, normalise_email, user_summary,
    ACCESS_TOKEN_EXPIRE_MINUTES, MIN_PASSWORD_LENGTH,
)
from database import get_db_session
from errors import AuthenticationFailed, Conflict, NotFound, ValidationFailed
from models import AuditLog, AuditEventType, Organisation, PasswordReset, User, UserRole
from permissions import ROLE_LABELS, default_role_for, permissions_for

logger = logging.getLogger("taskboard.auth")

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


def _build_token_response(user_obj: User) -> TokenResponse:
    """Build token response from a user ORM instance"""
    return TokenResponse(
        access_token=AuthService.token_for_user(user_obj),
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=user_summary(user_obj),
    )


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive a bearer token"""
    user = await AuthService.authenticate_user(
        credentials.email, credentials.password, db, request
    )
    if not user:
        raise AuthenticationFailed()
    return _build_token_response(user)


@router.post("/register", response_model=TokenResponse)
async def register(
    user_data: UserRegister,
    db: AsyncSession = Depends(get_db_session),
):
    """Self-register into an existing organisation by its code"""
    code = user_data.organisation_code.strip().upper()
    org = (await db.execute(
        select(Organisation).where(Organisation.code == code, Organisation.is_active == True)
    )).scalar_one_or_none()
    if not org:
        raise NotFound("Organisation")

    email = normalise_email(user_data.email)
    existing = (await db.execute(select(User.id).where(User.email == email))).scalar_one_or_none()
    if existing:
        raise Conflict("User already exists")

    new_user = User(
        email=email,
        display_name=user_data.display_name.strip() or email.split("@")[0],
        password_hash=AuthService.hash_password(user_data.password),
        organisation_id=org.id,
        role=default_role_for(org.org_type),
        is_active=True,
        first_login_completed=True,
    )
    db.add(new_user)
    await db.flush()
    db.add(AuditLog(
        event_type=AuditEventType.USER_REGISTER,
        user_id=new_user.id,
        organisation_id=org.id,
        request_id=str(uuid.uuid4()),
    ))
    await db.commit()
    await db.refresh(new_user)

    logger.info(f"User {new_user.id} registered into {org.code}")
    return _build_token_response(new_user)


@router.post("/logout")
async def logout(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Logout and revoke the current token"""
    db.add(AuditLog(
        event_type=AuditEventType.USER_LOGOUT,
        user_id=user.id,
        organisation_id=user.organisation_id,
        request_id=str(uuid.uuid4()),
    ))
    if user.token_jti:
        await AuthService.revoke_token(
            user.token_jti,
            user.id,
            user.token_expires_at or datetime.now(timezone.utc),
            db,
        )
    else:
        await db.commit()

    return {"status": "logged_out", "message": "Session terminated"}


@router.get("/me")
async def get_current_user_info(user: CurrentUser = Depends(get_current_user)):
    """Get current authenticated user information"""
    return {
        "id": user.id,
        "email": user.email,
        "display_name": user.display_name,
        "organisation_id": user.organisation_id,
        "role": user.role,
        "is_active": user.is_active,
        "permissions": user.permissions.model_dump(),
    }


@router.get("/roles")
async def list_roles(user: CurrentUser = Depends(get_current_user)):
    """Every role with its label and capability set"""
    return [
        {
            "role": role.value,
            "label": ROLE_LABELS[role],
            "permissions": permissions_for(role).model_dump(),
        }
        for role in UserRole
    ]


@router.post("/change-password")
async def change_password(
    password_data: PasswordChange,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Change current user's password; completes the first-login flow"""
    if len(password_data.new_password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"New password must be at least {MIN_PASSWORD_LENGTH} characters")

    user_obj = (await db.execute(select(User).where(User.id == user.id))).scalar_one_or_none()
    if not user_obj:
        raise NotFound("User")

    if not AuthService.verify_password(password_data.current_password, user_obj.password_hash):
        raise AuthenticationFailed("Current password is incorrect")

    user_obj.password_hash = AuthService.hash_password(password_data.new_password)
    user_obj.first_login_completed = True
    db.add(user_obj)
    await db.execute(
        update(PasswordReset)
        .where(PasswordReset.user_id == user.id, PasswordReset.used == False)
        .values(used=True)
    )
    db.add(AuditLog(
        event_type=AuditEventType.PASSWORD_CHANGED,
        user_id=user.id,
        organisation_id=user.organisation_id,
        request_id=str(uuid.uuid4()),
    ))
    await db.commit()

    return {"status": "password_changed", "message": "Password updated successfully"}
