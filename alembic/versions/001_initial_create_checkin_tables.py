"""initial create check-in tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'events',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('start_date', sa.DateTime(), nullable=True),
        sa.Column('end_date', sa.DateTime(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False),
        sa.Column('created_by', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'activities',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('event_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('location', sa.String(length=200), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_id', 'name', name='uq_activities_event_name')
    )
    op.create_index('ix_activities_event_id', 'activities', ['event_id'])

    op.create_table(
        'participants',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('event_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('church', sa.String(length=200), nullable=False),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('assigned_leaders', sa.Text(), nullable=False),
        sa.Column('qr_code', sa.String(length=512), nullable=False),
        sa.Column('current_location', sa.String(length=64), nullable=False),
        sa.Column('location_version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_id', 'qr_code', name='uq_participants_event_qr')
    )
    op.create_index('ix_participants_event_id', 'participants', ['event_id'])
    op.create_index('ix_participants_event_location', 'participants', ['event_id', 'current_location'])

    # No foreign keys: log entries may outlive the activity they reference
    op.create_table(
        'activity_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(length=64), nullable=False),
        sa.Column('participant_id', sa.String(length=64), nullable=False),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('activity_id', sa.String(length=64), nullable=False),
        sa.Column('from_activity_id', sa.String(length=64), nullable=True),
        sa.Column('leader_id', sa.String(length=128), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_activity_logs_event_id', 'activity_logs', ['event_id'])
    op.create_index('ix_activity_logs_activity_id', 'activity_logs', ['activity_id'])
    op.create_index('ix_activity_logs_participant_ts', 'activity_logs', ['participant_id', 'timestamp'])


def downgrade() -> None:
    op.drop_index('ix_activity_logs_participant_ts', table_name='activity_logs')
    op.drop_index('ix_activity_logs_activity_id', table_name='activity_logs')
    op.drop_index('ix_activity_logs_event_id', table_name='activity_logs')
    op.drop_table('activity_logs')

    op.drop_index('ix_participants_event_location', table_name='participants')
    op.drop_index('ix_participants_event_id', table_name='participants')
    op.drop_table('participants')

    op.drop_index('ix_activities_event_id', table_name='activities')
    op.drop_table('activities')

    op.drop_table('events')
