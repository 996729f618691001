# models.py — Database models for the Task Board API
# - UUID string primary keys everywhere
# - Multi-tenant: every user and task belongs to one organisation
# - Task authorship / history / audit references are plain strings so they
#   survive a user purge
# - Timezone-aware timestamps stored as UTC on every backend

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """DateTime that always round-trips as an aware UTC value.

    SQLite has no timezone storage, so values are normalised to UTC on the way
    in and UTC is re-attached on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("UTCDateTime requires a timezone-aware datetime")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ============================================================
# ENUMS
# ============================================================

class UserRole(str, PyEnum):
    # Global (franchise-wide)
    SUPER_ADMIN = "super_admin"
    FRANCHISE_ADMIN = "franchise_admin"
    FRANCHISE_ANALYST = "franchise_analyst"
    # School
    ADMIN = "admin"
    FRANCHISEE = "franchisee"
    SALES_MANAGER = "sales_manager"
    COORDINATOR = "coordinator"
    ADMIN_SUPERVISOR = "admin_supervisor"
    ADMIN_ASSISTANT = "admin_assistant"
    SALESPERSON = "salesperson"
    TEACHER = "teacher"
    # Department
    DEPARTMENT_HEAD = "department_head"
    DEPARTMENT_MANAGER = "department_manager"
    DEPARTMENT_ANALYST = "department_analyst"
    DEPARTMENT_ASSISTANT = "department_assistant"


class OrgType(str, PyEnum):
    SCHOOL = "SCHOOL"
    DEPARTMENT = "DEPARTMENT"


class TaskStatus(str, PyEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TaskPriority(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    URGENT = "urgent"


class HistoryAction(str, PyEnum):
    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"
    ASSIGNED = "assigned"


class AuditEventType(str, PyEnum):
    # Auth events
    USER_LOGIN = "auth.user.login"
    USER_LOGOUT = "auth.user.logout"
    USER_REGISTER = "auth.user.register"
    PASSWORD_CHANGED = "auth.password.changed"
    PASSWORD_RESET = "auth.password.reset"
    # User admin events
    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    USER_ROLE_CHANGED = "user.role_changed"
    USER_DEACTIVATED = "user.deactivated"
    USER_REACTIVATED = "user.reactivated"
    USER_PURGED = "user.purged"
    # Org events
    ORG_CREATED = "org.created"
    ORG_UPDATED = "org.updated"
    ORG_DEACTIVATED = "org.deactivated"
    ORG_REACTIVATED = "org.reactivated"


def default_org_settings(name: str) -> dict:
    return {
        "branding": {"title": f"Task Board - {name}", "logo_url": None},
        "features": {"can_edit_due_dates": True, "allow_private_tasks": True},
    }


# ============================================================
# ORGANISATIONS
# ============================================================

class Organisation(Base):
    __tablename__ = "organisations"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False, index=True)
    code = Column(String, unique=True, nullable=False, index=True)
    org_type = Column(SQLEnum(OrgType), default=OrgType.SCHOOL, nullable=False)
    settings = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    users = relationship("User", back_populates="organisation")

    def feature(self, name: str, default: bool = True) -> bool:
        features = (self.settings or {}).get("features") or {}
        return bool(features.get(name, default))


# ============================================================
# USERS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=False, default="")
    phone = Column(String, nullable=True)
    password_hash = Column(String, nullable=False)
    role = Column(SQLEnum(UserRole), default=UserRole.TEACHER, nullable=False, index=True)
    organisation_id = Column(String, ForeignKey("organisations.id"), nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    first_login_completed = Column(Boolean, default=False, nullable=False)
    last_login_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, index=True)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    organisation = relationship("Organisation", back_populates="users")

    __table_args__ = (
        Index("idx_user_org_active", "organisation_id", "is_active"),
    )


class PasswordReset(Base):
    """Temporary credential issued by an administrator"""
    __tablename__ = "password_resets"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    temporary_password_hash = Column(String, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    used = Column(Boolean, default=False, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)


# ============================================================
# TOKEN REVOCATION
# ============================================================

class RevokedToken(Base):
    __tablename__ = "revoked_tokens"

    id = Column(String, primary_key=True, default=new_uuid)
    jti = Column(String, unique=True, nullable=False, index=True)  # JWT ID
    user_id = Column(String, nullable=False)
    revoked_at = Column(UTCDateTime, default=utcnow)
    expires_at = Column(UTCDateTime, nullable=False)  # When the token would have expired


# ============================================================
# AUDIT LOG
# ============================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    timestamp = Column(UTCDateTime, default=utcnow, index=True)
    event_type = Column(SQLEnum(AuditEventType), nullable=False, index=True)
    user_id = Column(String, nullable=True, index=True)
    organisation_id = Column(String, nullable=False, index=True)
    resource_type = Column(String, nullable=True)
    resource_id = Column(String, nullable=True)
    details = Column(JSON, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    request_id = Column(String, index=True, unique=True, default=new_uuid)

    __table_args__ = (
        Index("idx_audit_org_timestamp", "organisation_id", "timestamp"),
    )


# ============================================================
# TASKS
# ============================================================

class Task(Base):
    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    organisation_id = Column(String, ForeignKey("organisations.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(SQLEnum(TaskStatus), default=TaskStatus.PENDING, nullable=False, index=True)
    priority = Column(SQLEnum(TaskPriority), default=TaskPriority.MEDIUM, nullable=False)
    due_date = Column(UTCDateTime, nullable=True, index=True)
    is_private = Column(Boolean, default=False, nullable=False)
    created_by = Column(String, nullable=False, index=True)  # no FK: authored tasks outlive their author
    completed_at = Column(UTCDateTime, nullable=True)
    version = Column(Integer, default=1, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    assignments = relationship("TaskAssignment", back_populates="task")
    history = relationship("TaskEditHistory", back_populates="task", order_by="TaskEditHistory.created_at.desc()")

    __table_args__ = (
        Index("idx_task_org_status", "organisation_id", "status"),
    )


class TaskAssignment(Base):
    __tablename__ = "task_assignments"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    assigned_by = Column(String, nullable=True)
    assigned_at = Column(UTCDateTime, default=utcnow)

    task = relationship("Task", back_populates="assignments")

    __table_args__ = (
        UniqueConstraint("task_id", "user_id", name="uq_task_assignment"),
    )


class TaskEditHistory(Base):
    """Append-only before/after log of task mutations"""
    __tablename__ = "task_edit_history"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id"), nullable=False, index=True)
    edited_by = Column(String, nullable=False)
    action = Column(SQLEnum(HistoryAction), nullable=False)
    changes = Column(JSON, nullable=False, default=dict)
    created_at = Column(UTCDateTime, default=utcnow)

    task = relationship("Task", back_populates="history")

    __table_args__ = (
        Index("idx_history_task_time", "task_id", "created_at"),
    )
