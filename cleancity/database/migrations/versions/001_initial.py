"""
Initial migration - Create all tables

Revision ID: 001_initial
Create Date: 2026-10-16
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# Revision identifiers
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None

REPORT_STATUSES = ('open', 'assigned', 'in_progress', 'verified', 'resolved')
SEVERITIES = ('low', 'medium', 'high')
APPROVAL_STATUSES = ('pending', 'approved', 'rejected')
POINT_REASONS = ('report_verified',)


def upgrade() -> None:
    """Create all tables."""

    # Create citizens table (points ledger + admission counters)
    op.create_table(
        'citizens',
        sa.Column('device_id', sa.String(64), primary_key=True),
        sa.Column('first_seen', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('last_active', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('total_points', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reports_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('current_badge', sa.String(50), nullable=False, server_default='Cleanliness Rookie'),
        sa.Column('streak_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_report_date', sa.Date()),
        sa.Column('last_submission_at', sa.DateTime()),
        sa.Column('daily_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('daily_count_date', sa.Date()),
        sa.CheckConstraint('total_points >= 0', name='ck_citizens_points_non_negative'),
    )

    op.create_index('idx_citizens_points', 'citizens', ['total_points'])

    # Create workers table
    op.create_table(
        'workers',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('phone', sa.String(15), unique=True),
        sa.Column('assigned_zones', JSONB(), nullable=False, server_default='[]'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    # Create reports table
    op.create_table(
        'reports',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('device_id', sa.String(64), sa.ForeignKey('citizens.device_id'), nullable=False),
        sa.Column('latitude', sa.Float(), nullable=False),
        sa.Column('longitude', sa.Float(), nullable=False),
        sa.Column('location_accuracy', sa.Float()),
        sa.Column('zone', sa.String(100)),
        sa.Column('photo_url', sa.Text(), nullable=False),
        sa.Column('description', sa.String(50)),
        sa.Column('severity', sa.Enum(*SEVERITIES, name='report_severity')),
        sa.Column('waste_types', JSONB(), nullable=False, server_default='[]'),
        sa.Column('status', sa.Enum(*REPORT_STATUSES, name='report_status'),
                  nullable=False, server_default='open'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('assigned_at', sa.DateTime()),
        sa.Column('in_progress_at', sa.DateTime()),
        sa.Column('verified_at', sa.DateTime()),
        sa.Column('resolved_at', sa.DateTime()),
        sa.Column('assigned_worker_id', sa.String(36), sa.ForeignKey('workers.id')),
        sa.Column('points_awarded', sa.Integer(), nullable=False, server_default='0'),
    )

    op.create_index('idx_reports_status', 'reports', ['status'])
    op.create_index('idx_reports_location', 'reports', ['latitude', 'longitude'])
    op.create_index('idx_reports_created_at', 'reports', ['created_at'])
    op.create_index('idx_reports_device_id', 'reports', ['device_id'])
    op.create_index('idx_reports_worker_id', 'reports', ['assigned_worker_id'])

    # Create verifications table
    op.create_table(
        'verifications',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('report_id', sa.String(36), sa.ForeignKey('reports.id'), nullable=False),
        sa.Column('worker_id', sa.String(36), sa.ForeignKey('workers.id'), nullable=False),
        sa.Column('before_photo_url', sa.Text(), nullable=False),
        sa.Column('after_photo_url', sa.Text()),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime()),
        sa.Column('time_spent_minutes', sa.Integer()),
        sa.Column('worker_latitude', sa.Float(), nullable=False),
        sa.Column('worker_longitude', sa.Float(), nullable=False),
        sa.Column('worker_accuracy', sa.Float()),
        sa.Column('distance_meters', sa.Float()),
        sa.Column('approval_status', sa.Enum(*APPROVAL_STATUSES, name='approval_status'),
                  nullable=False, server_default='pending'),
        sa.Column('decided_by', sa.String(64)),
        sa.Column('decided_at', sa.DateTime()),
        sa.Column('rejection_reason', sa.Text()),
    )

    op.create_index('idx_verifications_report', 'verifications', ['report_id'])
    op.create_index('idx_verifications_approval', 'verifications', ['approval_status'])
    # One pending verification per report
    op.create_index(
        'uq_verifications_pending_report', 'verifications', ['report_id'],
        unique=True,
        postgresql_where=sa.text("approval_status = 'pending'"),
        sqlite_where=sa.text("approval_status = 'pending'"),
    )

    # Create points_history table
    op.create_table(
        'points_history',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('device_id', sa.String(64), sa.ForeignKey('citizens.device_id'), nullable=False),
        sa.Column('report_id', sa.String(36), sa.ForeignKey('reports.id'), nullable=False, unique=True),
        sa.Column('points', sa.Integer(), nullable=False),
        sa.Column('reason', sa.Enum(*POINT_REASONS, name='point_reason'), nullable=False),
        sa.Column('breakdown', JSONB(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_index('idx_points_history_device', 'points_history', ['device_id'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('points_history')
    op.drop_table('verifications')
    op.drop_table('reports')
    op.drop_table('workers')
    op.drop_table('citizens')
    for enum_name in ('point_reason', 'approval_status', 'report_status', 'report_severity'):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
