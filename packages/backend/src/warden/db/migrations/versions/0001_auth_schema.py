"""Auth schema: roles, permissions, users, action tokens

Learn: Creates the five auth tables and seeds the default role →
permission matrix, so a fresh database can sign users up immediately.
The (user_id, action_type) unique constraint is what the token upsert
targets by name.

Revision ID: 0001_auth_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
import uuid
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from warden.auth.permissions import DEFAULT_ROLE_PERMISSIONS

revision: str = '0001_auth_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

role_type = postgresql.ENUM('admin', 'user', name='role_type', create_type=False)
action_type = postgresql.ENUM(
    'verify-account', 'reset-password', name='action_type', create_type=False
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    role_type.create(bind, checkfirst=True)
    action_type.create(bind, checkfirst=True)

    # ─── Roles and permissions ───────────────────────────
    roles = op.create_table(
        'roles',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', role_type, nullable=False, unique=True),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        *_timestamps(),
    )
    permissions = op.create_table(
        'permissions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False, unique=True),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        *_timestamps(),
    )
    role_permissions = op.create_table(
        'role_permissions',
        sa.Column(
            'role_id', postgresql.UUID(as_uuid=True),
            sa.ForeignKey('roles.id', ondelete='CASCADE'), primary_key=True,
        ),
        sa.Column(
            'permission_id', postgresql.UUID(as_uuid=True),
            sa.ForeignKey('permissions.id', ondelete='CASCADE'), primary_key=True,
        ),
    )

    # ─── Users and action tokens ─────────────────────────
    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('role_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('roles.id'), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('is_verified', sa.Boolean(), nullable=False, server_default='false'),
        *_timestamps(),
    )
    op.create_table(
        'user_action_tokens',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'user_id', postgresql.UUID(as_uuid=True),
            sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('token', sa.String(32), nullable=True),
        sa.Column('action_type', action_type, nullable=False),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('user_id', 'action_type', name='uq_user_action_tokens_user_action'),
    )
    op.create_index('ix_user_action_tokens_token', 'user_action_tokens', ['token'])

    # ─── Default matrix ──────────────────────────────────
    permission_ids = {
        name: uuid.uuid4()
        for name in sorted(set().union(*DEFAULT_ROLE_PERMISSIONS.values()))
    }
    role_ids = {role: uuid.uuid4() for role in DEFAULT_ROLE_PERMISSIONS}

    op.bulk_insert(roles, [{'id': rid, 'name': role.value} for role, rid in role_ids.items()])
    op.bulk_insert(permissions, [{'id': pid, 'name': name} for name, pid in permission_ids.items()])
    op.bulk_insert(role_permissions, [
        {'role_id': role_ids[role], 'permission_id': permission_ids[name]}
        for role, names in DEFAULT_ROLE_PERMISSIONS.items()
        for name in sorted(names)
    ])


def downgrade() -> None:
    op.drop_index('ix_user_action_tokens_token', table_name='user_action_tokens')
    op.drop_table('user_action_tokens')
    op.drop_table('users')
    op.drop_table('role_permissions')
    op.drop_table('permissions')
    op.drop_table('roles')
    action_type.drop(op.get_bind(), checkfirst=True)
    role_type.drop(op.get_bind(), checkfirst=True)
