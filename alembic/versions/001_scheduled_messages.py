"""Scheduled messages

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create scheduled message tables."""

    op.create_table('scheduled_messages',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('owner_ref', sa.String(length=255), nullable=False),
        sa.Column('kind', sa.Enum('text', 'voice', 'audio', name='messagekind'), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('sender_id', sa.String(length=20), nullable=False),
        sa.Column('recipients', sa.JSON(), nullable=False),
        sa.Column('recipient_count', sa.Integer(), nullable=False),
        sa.Column('scheduled_at', sa.DateTime(), nullable=False),
        sa.Column('status', sa.Enum('pending', 'processing', 'sent', 'failed', 'cancelled', name='scheduledstatus'), nullable=False),
        sa.Column('cost', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('max_retries', sa.Integer(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('provider', sa.Enum('primary', 'backup', name='providerrole'), nullable=True),
        sa.Column('provider_name', sa.String(length=100), nullable=True),
        sa.Column('provider_message_id', sa.String(length=255), nullable=True),
        sa.Column('accepted_count', sa.Integer(), nullable=True),
        sa.Column('rejected_count', sa.Integer(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text("(now() at time zone 'utc')"), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text("(now() at time zone 'utc')"), nullable=False),
        sa.CheckConstraint('retry_count >= 0', name='check_retry_count_positive'),
        sa.CheckConstraint('max_retries >= 0', name='check_max_retries_positive'),
        sa.CheckConstraint('retry_count <= max_retries', name='check_retry_count_bounded'),
        sa.CheckConstraint('cost >= 0', name='check_cost_positive'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_scheduled_status_due', 'scheduled_messages', ['status', 'scheduled_at'])
    op.create_index('idx_scheduled_failed_at', 'scheduled_messages', ['failed_at'])
    op.create_index(op.f('ix_scheduled_messages_owner_ref'), 'scheduled_messages', ['owner_ref'])
    op.create_index(op.f('ix_scheduled_messages_status'), 'scheduled_messages', ['status'])

    op.create_table('scheduled_message_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('message_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('event_type', sa.Enum('created', 'claimed', 'sent', 'retry', 'failed', 'cancelled', 'released', name='eventtype'), nullable=False),
        sa.Column('event_data', sa.JSON(), nullable=True),
        sa.Column('provider', postgresql.ENUM('primary', 'backup', name='providerrole', create_type=False), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text("(now() at time zone 'utc')"), nullable=False),
        sa.ForeignKeyConstraint(['message_id'], ['scheduled_messages.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_scheduled_event_message_created', 'scheduled_message_events', ['message_id', 'created_at'])


def downgrade() -> None:
    """Drop scheduled message tables."""
    op.drop_index('idx_scheduled_event_message_created', table_name='scheduled_message_events')
    op.drop_table('scheduled_message_events')

    op.drop_index(op.f('ix_scheduled_messages_status'), table_name='scheduled_messages')
    op.drop_index(op.f('ix_scheduled_messages_owner_ref'), table_name='scheduled_messages')
    op.drop_index('idx_scheduled_failed_at', table_name='scheduled_messages')
    op.drop_index('idx_scheduled_status_due', table_name='scheduled_messages')
    op.drop_table('scheduled_messages')

    op.execute('DROP TYPE IF EXISTS eventtype')
    op.execute('DROP TYPE IF EXISTS providerrole')
    op.execute('DROP TYPE IF EXISTS scheduledstatus')
    op.execute('DROP TYPE IF EXISTS messagekind')
