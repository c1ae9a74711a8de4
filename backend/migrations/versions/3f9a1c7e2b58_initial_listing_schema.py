"""initial_listing_schema

Revision ID: 3f9a1c7e2b58
Revises:
Create Date: 2026-10-19 09:12:44.215307

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f9a1c7e2b58'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- Enums ---
    # Let SQLAlchemy create enum types when referenced by tables.
    draft_status_enum = postgresql.ENUM('active', 'complete', 'abandoned', name='draft_status')
    draft_stage_enum = postgresql.ENUM(
        'awaiting_photos', 'researching_identity', 'confirm_identity', 'confirm_variants',
        'confirm_condition', 'pricing', 'final_confirm', 'complete',
        name='draft_stage',
    )
    fact_status_enum = postgresql.ENUM('proposed', 'confirmed', 'rejected', name='fact_status')
    photo_kind_enum = postgresql.ENUM('user', 'reference', name='photo_kind')

    # --- Tables ---

    # users
    op.create_table(
        'users',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('channel_identity', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('channel_identity', name='uq_users_channel_identity')
    )

    # drafts
    op.create_table(
        'drafts',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('status', draft_status_enum, nullable=False, server_default='active'),
        sa.Column('stage', draft_stage_enum, nullable=False, server_default='awaiting_photos'),
        sa.Column('pending', postgresql.JSONB(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False)
    )
    # At most one active draft per user.
    op.create_index(
        'uq_drafts_user_active', 'drafts', ['user_id'],
        unique=True, postgresql_where=sa.text("status = 'active'"),
    )
    op.create_index('idx_drafts_user_updated', 'drafts', ['user_id', sa.text('updated_at DESC')])

    # facts
    op.create_table(
        'facts',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('draft_id', sa.String(), sa.ForeignKey('drafts.id'), nullable=False),
        sa.Column('key', sa.String(), nullable=False),
        sa.Column('value', postgresql.JSONB(), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=False, server_default='1'),
        sa.Column('source', sa.String(), nullable=False),
        sa.Column('status', fact_status_enum, nullable=False, server_default='proposed'),
        sa.Column('evidence', postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('confidence >= 0 AND confidence <= 1', name='ck_facts_confidence_range'),
        sa.UniqueConstraint('draft_id', 'key', name='uq_facts_draft_key')
    )

    # messages
    op.create_table(
        'messages',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('draft_id', sa.String(), sa.ForeignKey('drafts.id'), nullable=False),
        sa.Column('direction', sa.String(), nullable=False),
        sa.Column('body', sa.Text(), nullable=False, server_default=''),
        sa.Column('media_refs', postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("direction IN ('in', 'out')", name='ck_messages_direction')
    )
    op.create_index('idx_messages_draft_created', 'messages', ['draft_id', sa.text('created_at DESC')])

    # photos
    op.create_table(
        'photos',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('draft_id', sa.String(), sa.ForeignKey('drafts.id'), nullable=False),
        sa.Column('kind', photo_kind_enum, nullable=False, server_default='user'),
        sa.Column('storage_ref', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False)
    )
    op.create_index('idx_photos_draft_kind', 'photos', ['draft_id', 'kind'])

    # event_log
    op.create_table(
        'event_log',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('request_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('entity_type', sa.String(), nullable=True),
        sa.Column('entity_id', sa.String(), nullable=True),
        sa.Column('payload_json', postgresql.JSONB(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False)
    )
    op.create_index('idx_event_log_request', 'event_log', ['request_id'])
    op.create_index('idx_event_log_user_created', 'event_log', ['user_id', sa.text('created_at DESC')])


def downgrade() -> None:
    op.drop_table('event_log')
    op.drop_table('photos')
    op.drop_table('messages')
    op.drop_table('facts')
    op.drop_table('drafts')
    op.drop_table('users')

    op.execute("DROP TYPE photo_kind")
    op.execute("DROP TYPE fact_status")
    op.execute("DROP TYPE draft_stage")
    op.execute("DROP TYPE draft_status")
