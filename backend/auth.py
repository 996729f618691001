# auth.py — Authentication & session issuing for the Task Board API
# Features:
# - Signed HS256 JWT with JTI for revocation (24h by default)
# - Role resolved from the database on every request, never from the token
# - Uniform "Invalid credentials" for unknown email / wrong password / inactive
# - Brute force protection
# - Best-effort last-login bookkeeping

import os
import uuid
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from collections import defaultdict

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from email_validator import EmailNotValidError, validate_email
from pydantic import BaseModel, field_validator
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from errors import AuthenticationFailed, PermissionDenied
from models import User, Organisation, AuditLog, AuditEventType, UserRole, RevokedToken
from permissions import PermissionSet, permissions_for

logger = logging.getLogger("taskboard.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY or SECRET_KEY == "change-this-to-a-secure-random-key-in-production":
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "⚠️  JWT_SECRET_KEY not set or insecure. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "1440"))
MIN_PASSWORD_LENGTH = int(os.getenv("MIN_PASSWORD_LENGTH", "8"))
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15

security = HTTPBearer()

# In-memory brute force tracker, keyed by normalised email
_login_attempts: Dict[str, list] = defaultdict(list)


def normalise_email(email: str) -> str:
    return (email or "").strip().lower()


def validated_email(value: str) -> str:
    """Syntax check only; reserved test domains such as .test are accepted"""
    try:
        result = validate_email(
            (value or "").strip(), check_deliverability=False, test_environment=True,
        )
    except EmailNotValidError as e:
        raise ValueError(f"Invalid email address: {e}")
    return normalise_email(result.normalized)


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class UserRegister(BaseModel):
    email: str
    password: str
    display_name: str = ""
    organisation_code: str

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        return validated_email(v)

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        if len(v) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        return v


class UserLogin(BaseModel):
    # Plain str: malformed emails must get the same 401 as unknown ones
    email: str
    password: str


class PasswordChange(BaseModel):
    current_password: str
    new_password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class CurrentUser(BaseModel):
    id: str
    email: str
    display_name: str
    organisation_id: str
    role: str
    is_active: bool
    permissions: PermissionSet
    token_jti: Optional[str] = None
    token_expires_at: Optional[datetime] = None


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Credential checks and token issuing"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            # Corrupt digest in storage
            logger.warning("Unreadable password hash encountered")
            return False

    @staticmethod
    def generate_temporary_password() -> str:
        """Six-digit numeric temporary password"""
        return f"{secrets.randbelow(900000) + 100000}"

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
            "iat": now,
            "type": "access",
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def token_for_user(user: User) -> str:
        return AuthService.create_access_token({
            "sub": user.id,
            "email": user.email,
            "organisation_id": user.organisation_id,
            "role": user.role.value if isinstance(user.role, UserRole) else user.role,
        })

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise AuthenticationFailed("Token expired")
        except JWTError:
            raise AuthenticationFailed("Invalid token")

    @staticmethod
    def _check_brute_force(email: str) -> None:
        """Check if login attempts exceed threshold"""
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=LOGIN_LOCKOUT_MINUTES)
        _login_attempts[email] = [t for t in _login_attempts[email] if t > cutoff]
        if len(_login_attempts[email]) >= MAX_LOGIN_ATTEMPTS:
            raise HTTPException(
                status_code=429,
                detail=f"Too many login attempts. Try again in {LOGIN_LOCKOUT_MINUTES} minutes.",
            )

    @staticmethod
    def _record_failed_attempt(email: str) -> None:
        _login_attempts[email].append(datetime.now(timezone.utc))

    @staticmethod
    def _clear_attempts(email: str) -> None:
        _login_attempts.pop(email, None)

    @staticmethod
    async def authenticate_user(
        email: str, password: str, db: AsyncSession, request: Optional[Request] = None,
    ) -> Optional[User]:
        """Return the user on success, None on any credential failure"""
        email = normalise_email(email)
        AuthService._check_brute_force(email)

        stmt = (
            select(User, Organisation.is_active)
            .join(Organisation, Organisation.id == User.organisation_id)
            .where(User.email == email)
        )
        row = (await db.execute(stmt)).first()
        user, org_active = (row[0], row[1]) if row else (None, False)

        if not user or not AuthService.verify_password(password, user.password_hash):
            AuthService._record_failed_attempt(email)
            return None

        if not user.is_active or not org_active:
            AuthService._record_failed_attempt(email)
            return None

        AuthService._clear_attempts(email)
        await AuthService._record_login(user, db, request)
        return user

    @staticmethod
    async def _record_login(user: User, db: AsyncSession, request: Optional[Request]) -> None:
        """Last-login write must never block a successful login"""
        now = datetime.now(timezone.utc)
        # Detached so a rollback below cannot expire the loaded user
        db.expunge(user)
        try:
            await db.execute(update(User).where(User.id == user.id).values(last_login_at=now))
            db.add(AuditLog(
                event_type=AuditEventType.USER_LOGIN,
                user_id=user.id,
                organisation_id=user.organisation_id,
                ip_address=request.client.host if request and request.client else None,
                user_agent=request.headers.get("user-agent") if request else None,
                request_id=str(uuid.uuid4()),
            ))
            await db.commit()
            user.last_login_at = now
        except SQLAlchemyError as e:
            await db.rollback()
            logger.warning(f"Could not record login for {user.id}: {e}")

    @staticmethod
    async def is_token_revoked(jti: str, db: AsyncSession) -> bool:
        stmt = select(RevokedToken).where(RevokedToken.jti == jti)
        result = await db.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def revoke_token(jti: str, user_id: str, expires_at: datetime, db: AsyncSession) -> None:
        db.add(RevokedToken(jti=jti, user_id=user_id, expires_at=expires_at))
        await db.commit()


def user_summary(user: User) -> Dict[str, Any]:
    role = user.role.value if isinstance(user.role, UserRole) else user.role
    return {
        "id": user.id,
        "email": user.email,
        "display_name": user.display_name or "",
        "organisation_id": user.organisation_id,
        "role": role,
        "first_login_completed": bool(user.first_login_completed),
        "permissions": permissions_for(role).model_dump(),
    }


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    payload = AuthService.verify_token(credentials.credentials)

    if payload.get("type") != "access":
        raise AuthenticationFailed("Invalid token type")

    jti = payload.get("jti")
    if jti and await AuthService.is_token_revoked(jti, db):
        raise AuthenticationFailed("Token has been revoked")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationFailed("Invalid token")

    stmt = (
        select(User, Organisation.is_active)
        .join(Organisation, Organisation.id == User.organisation_id)
        .where(User.id == user_id)
    )
    row = (await db.execute(stmt)).first()
    if not row or not row[0].is_active or not row[1]:
        raise AuthenticationFailed("User not found or inactive")
    user = row[0]

    role = user.role.value if isinstance(user.role, UserRole) else user.role
    exp = payload.get("exp")
    return CurrentUser(
        id=user.id,
        email=user.email,
        display_name=user.display_name or "",
        organisation_id=user.organisation_id,
        role=role,
        is_active=user.is_active,
        permissions=permissions_for(role),
        token_jti=jti,
        token_expires_at=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
    )


def require_capability(check):
    """Dependency factory: ``check(PermissionSet) -> bool``"""
    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if not check(user.permissions):
            raise PermissionDenied()
        return user
    return _check


def require_role(*roles: UserRole):
    """Dependency factory: require user to have one of the specified roles"""
    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in {r.value for r in roles}:
            raise PermissionDenied()
        return user
    return _check
