"""Initial task board schema (organisations, users, tasks, audit)

Revision ID: 3f1a9c27d5e0
Revises:
Create Date: 2026-10-19T09:12:44.518203
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = '3f1a9c27d5e0'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

USER_ROLES = (
    'SUPER_ADMIN', 'FRANCHISE_ADMIN', 'FRANCHISE_ANALYST',
    'ADMIN', 'FRANCHISEE', 'SALES_MANAGER', 'COORDINATOR', 'ADMIN_SUPERVISOR',
    'ADMIN_ASSISTANT', 'SALESPERSON', 'TEACHER',
    'DEPARTMENT_HEAD', 'DEPARTMENT_MANAGER', 'DEPARTMENT_ANALYST', 'DEPARTMENT_ASSISTANT',
)
AUDIT_EVENTS = (
    'USER_LOGIN', 'USER_LOGOUT', 'USER_REGISTER', 'PASSWORD_CHANGED', 'PASSWORD_RESET',
    'USER_CREATED', 'USER_UPDATED', 'USER_ROLE_CHANGED', 'USER_DEACTIVATED',
    'USER_REACTIVATED', 'USER_PURGED',
    'ORG_CREATED', 'ORG_UPDATED', 'ORG_DEACTIVATED', 'ORG_REACTIVATED',
)


def upgrade() -> None:
    # --- organisations ---
    op.create_table(
        'organisations',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('code', sa.String(), nullable=False),
        sa.Column('org_type', sa.Enum('SCHOOL', 'DEPARTMENT', name='orgtype'), nullable=False),
        sa.Column('settings', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_organisations_name', 'organisations', ['name'])
    op.create_index('ix_organisations_code', 'organisations', ['code'], unique=True)
    op.create_index('ix_organisations_is_active', 'organisations', ['is_active'])

    # --- users ---
    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('display_name', sa.String(), nullable=False, server_default=''),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('password_hash', sa.String(), nullable=False),
        sa.Column('role', sa.Enum(*USER_ROLES, name='userrole'), nullable=False),
        sa.Column('organisation_id', sa.String(), sa.ForeignKey('organisations.id'), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('first_login_completed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_role', 'users', ['role'])
    op.create_index('ix_users_organisation_id', 'users', ['organisation_id'])
    op.create_index('ix_users_is_active', 'users', ['is_active'])
    op.create_index('ix_users_created_at', 'users', ['created_at'])
    op.create_index('idx_user_org_active', 'users', ['organisation_id', 'is_active'])

    # --- password_resets ---
    op.create_table(
        'password_resets',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('temporary_password_hash', sa.String(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('used', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_password_resets_user_id', 'password_resets', ['user_id'])

    # --- revoked_tokens ---
    op.create_table(
        'revoked_tokens',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('jti', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_revoked_tokens_jti', 'revoked_tokens', ['jti'], unique=True)

    # --- audit_logs ---
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.Column('event_type', sa.Enum(*AUDIT_EVENTS, name='auditeventtype'), nullable=False),
        sa.Column('user_id', sa.String(), nullable=True),
        sa.Column('organisation_id', sa.String(), nullable=False),
        sa.Column('resource_type', sa.String(), nullable=True),
        sa.Column('resource_id', sa.String(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('user_agent', sa.String(), nullable=True),
        sa.Column('request_id', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('ix_audit_logs_event_type', 'audit_logs', ['event_type'])
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_organisation_id', 'audit_logs', ['organisation_id'])
    op.create_index('ix_audit_logs_request_id', 'audit_logs', ['request_id'], unique=True)
    op.create_index('idx_audit_org_timestamp', 'audit_logs', ['organisation_id', 'timestamp'])

    # --- tasks ---
    op.create_table(
        'tasks',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('organisation_id', sa.String(), sa.ForeignKey('organisations.id'), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.Enum('PENDING', 'IN_PROGRESS', 'COMPLETED', 'CANCELLED', name='taskstatus'), nullable=False),
        sa.Column('priority', sa.Enum('LOW', 'MEDIUM', 'URGENT', name='taskpriority'), nullable=False),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_private', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_by', sa.String(), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tasks_organisation_id', 'tasks', ['organisation_id'])
    op.create_index('ix_tasks_status', 'tasks', ['status'])
    op.create_index('ix_tasks_due_date', 'tasks', ['due_date'])
    op.create_index('ix_tasks_created_by', 'tasks', ['created_by'])
    op.create_index('idx_task_org_status', 'tasks', ['organisation_id', 'status'])

    # --- task_assignments ---
    op.create_table(
        'task_assignments',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('task_id', sa.String(), sa.ForeignKey('tasks.id'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('assigned_by', sa.String(), nullable=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('task_id', 'user_id', name='uq_task_assignment'),
    )
    op.create_index('ix_task_assignments_task_id', 'task_assignments', ['task_id'])
    op.create_index('ix_task_assignments_user_id', 'task_assignments', ['user_id'])

    # --- task_edit_history ---
    op.create_table(
        'task_edit_history',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('task_id', sa.String(), sa.ForeignKey('tasks.id'), nullable=False),
        sa.Column('edited_by', sa.String(), nullable=False),
        sa.Column('action', sa.Enum('CREATED', 'UPDATED', 'STATUS_CHANGED', 'ASSIGNED', name='historyaction'), nullable=False),
        sa.Column('changes', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_task_edit_history_task_id', 'task_edit_history', ['task_id'])
    op.create_index('idx_history_task_time', 'task_edit_history', ['task_id', 'created_at'])


def downgrade() -> None:
    op.drop_table('task_edit_history')
    op.drop_table('task_assignments')
    op.drop_table('tasks')
    op.drop_table('audit_logs')
    op.drop_table('revoked_tokens')
    op.drop_table('password_resets')
    op.drop_table('users')
    op.drop_table('organisations')
    for enum_name in ('historyaction', 'taskpriority', 'taskstatus', 'auditeventtype', 'userrole', 'orgtype'):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
