"""initial

Revision ID: 000001_initial
Revises: 
Create Date: 2025-10-19 00:00:01

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '000001_initial'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.String(), nullable=False),
        sa.Column('updated_at', sa.String(), nullable=False),
    ]


def _document_table(name: str) -> None:
    op.create_table(
        name,
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('document_id', sa.String(), nullable=False, unique=True),
        sa.Column('document_name', sa.String(), nullable=False),
        sa.Column('description', sa.String()),
        sa.Column('version_number', sa.String()),
        sa.Column('release_date', sa.String()),
        sa.Column('applicable_standard', sa.String()),
        *_timestamps(),
    )


def upgrade() -> None:
    op.create_table(
        'audits',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('audit_id', sa.String(), nullable=False, unique=True),
        sa.Column('audit_type', sa.String()),
        sa.Column('standards', sa.String()),
        sa.Column('location', sa.String()),
        sa.Column('lead_auditor', sa.String()),
        sa.Column('planned_date', sa.String()),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('actual_date', sa.String()),
        sa.Column('complete_date', sa.String()),
        *_timestamps(),
    )
    op.create_table(
        'nonconformities',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('nc_id', sa.String(), nullable=False, unique=True),
        sa.Column('audit_ref', sa.String()),
        sa.Column('description', sa.String(), nullable=False),
        sa.Column('clause_no', sa.String()),
        sa.Column('nc_type', sa.String()),
        sa.Column('reporting_date', sa.String()),
        sa.Column('due_date', sa.String()),
        sa.Column('department', sa.String()),
        sa.Column('responsible_person', sa.String()),
        sa.Column('location', sa.String()),
        sa.Column('status', sa.String(), nullable=False),
        *_timestamps(),
    )
    for name in ('policies', 'guidelines', 'templates'):
        _document_table(name)
    op.create_table(
        'certificates',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('document_id', sa.String(), nullable=False, unique=True),
        sa.Column('document_name', sa.String(), nullable=False),
        sa.Column('description', sa.String()),
        sa.Column('version_number', sa.String()),
        sa.Column('issue_date', sa.String(), nullable=False),
        sa.Column('valid_through', sa.String(), nullable=False),
        *_timestamps(),
    )
    op.create_table(
        'advisories',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('serial_number', sa.String(), nullable=False),
        sa.Column('document_id', sa.String(), nullable=False, unique=True),
        sa.Column('document_name', sa.String(), nullable=False),
        sa.Column('description', sa.String()),
        sa.Column('version_number', sa.String()),
        sa.Column('release_date', sa.String()),
        sa.Column('applicable_standard', sa.String()),
        *_timestamps(),
    )
    op.create_table(
        'users',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False, unique=True),
        sa.Column('avatar_url', sa.String()),
        sa.Column('role', sa.String(), nullable=False),
        *_timestamps(),
    )
    op.create_table(
        'attachments',
        sa.Column('seq', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('resource', sa.String(), nullable=False),
        sa.Column('parent_id', sa.String(), nullable=False),
        sa.Column('storage_name', sa.String(), nullable=False),
        sa.Column('original_name', sa.String(), nullable=False),
        sa.Column('path', sa.String(), nullable=False),
        sa.Column('mime_type', sa.String()),
        sa.Column('size', sa.Integer()),
        sa.Column('created_at', sa.String(), nullable=False),
        sa.UniqueConstraint('resource', 'parent_id', 'id', name='uq_attachments_parent_id'),
    )
    op.create_index('ix_attachments_parent', 'attachments', ['resource', 'parent_id'])
    op.create_table(
        'credentials',
        sa.Column('email', sa.String(), primary_key=True),
        sa.Column('password_hash', sa.String(), nullable=False),
        sa.Column('role', sa.String(), nullable=False),
        *_timestamps(),
    )


def downgrade() -> None:
    op.drop_table('credentials')
    op.drop_index('ix_attachments_parent', table_name='attachments')
    op.drop_table('attachments')
    for name in ('users', 'advisories', 'certificates', 'templates', 'guidelines', 'policies', 'nonconformities', 'audits'):
        op.drop_table(name)
