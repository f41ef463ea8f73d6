"""Rotation schema: experiments, variant_cases, events, rotation_history

Revision ID: 3f9c2b7d41a0
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3f9c2b7d41a0'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

image_case = postgresql.ENUM('BASE', 'TEST', name='image_case', create_type=False)
experiment_status = postgresql.ENUM(
    'DRAFT', 'RUNNING', 'PAUSED', 'COMPLETED', 'ARCHIVED', name='experiment_status', create_type=False
)
experiment_scope = postgresql.ENUM('PRODUCT', 'VARIANT', name='experiment_scope', create_type=False)
event_type = postgresql.ENUM('IMPRESSION', 'ADD_TO_CART', 'PURCHASE', name='event_type', create_type=False)
rotation_trigger = postgresql.ENUM('SCHEDULED', 'MANUAL', name='rotation_trigger', create_type=False)


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in (image_case, experiment_status, experiment_scope, event_type, rotation_trigger):
        enum_type.create(bind, checkfirst=True)

    op.create_table('experiments',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('product_id', sa.String(length=255), nullable=False),
        sa.Column('variant_id', sa.String(length=255), nullable=True),
        sa.Column('scope', experiment_scope, nullable=False),
        sa.Column('status', experiment_status, nullable=False),
        sa.Column('current_case', image_case, nullable=False),
        sa.Column('base_images', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('test_images', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('rotation_interval_hours', sa.Float(), nullable=False),
        sa.Column('last_rotation_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_rotation_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_experiments_tenant_id'), 'experiments', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_experiments_product_id'), 'experiments', ['product_id'], unique=False)
    op.create_index('ix_experiments_status_next_rotation_at', 'experiments', ['status', 'next_rotation_at'], unique=False)

    op.create_table('variant_cases',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('experiment_id', sa.UUID(), nullable=False),
        sa.Column('variant_id', sa.String(length=255), nullable=False),
        sa.Column('variant_name', sa.String(length=255), nullable=True),
        sa.Column('base_hero_image', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('test_hero_image', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.ForeignKeyConstraint(['experiment_id'], ['experiments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('experiment_id', 'variant_id', name='uq_variant_case_experiment_variant')
    )
    op.create_index(op.f('ix_variant_cases_experiment_id'), 'variant_cases', ['experiment_id'], unique=False)

    op.create_table('events',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('experiment_id', sa.UUID(), nullable=False),
        sa.Column('session_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', event_type, nullable=False),
        sa.Column('active_case', image_case, nullable=False),
        sa.Column('product_id', sa.String(length=255), nullable=False),
        sa.Column('variant_id', sa.String(length=255), nullable=True),
        sa.Column('revenue', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=True),
        sa.Column('order_id', sa.String(length=255), nullable=True),
        sa.Column('order_number', sa.String(length=64), nullable=True),
        sa.Column('source', sa.String(length=32), nullable=False, server_default='client'),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['experiment_id'], ['experiments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_events_experiment_case_type', 'events', ['experiment_id', 'active_case', 'event_type'], unique=False)
    op.create_index(op.f('ix_events_order_id'), 'events', ['order_id'], unique=False)
    op.create_index(
        'uq_events_impression_session', 'events', ['experiment_id', 'session_id', 'active_case'],
        unique=True, postgresql_where=sa.text("event_type = 'IMPRESSION'"),
    )
    op.create_index(
        'uq_events_purchase_order', 'events', ['experiment_id', 'order_id'],
        unique=True, postgresql_where=sa.text("event_type = 'PURCHASE'"),
    )

    # No FK to experiments: history is kept after an experiment is deleted
    op.create_table('rotation_history',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('experiment_id', sa.UUID(), nullable=False),
        sa.Column('from_case', image_case, nullable=False),
        sa.Column('to_case', image_case, nullable=False),
        sa.Column('trigger', rotation_trigger, nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=False),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_rotation_history_experiment_id'), 'rotation_history', ['experiment_id'], unique=False)
    op.create_index(op.f('ix_rotation_history_created_at'), 'rotation_history', ['created_at'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_rotation_history_created_at'), table_name='rotation_history')
    op.drop_index(op.f('ix_rotation_history_experiment_id'), table_name='rotation_history')
    op.drop_table('rotation_history')
    op.drop_index('uq_events_purchase_order', table_name='events')
    op.drop_index('uq_events_impression_session', table_name='events')
    op.drop_index(op.f('ix_events_order_id'), table_name='events')
    op.drop_index('ix_events_experiment_case_type', table_name='events')
    op.drop_table('events')
    op.drop_index(op.f('ix_variant_cases_experiment_id'), table_name='variant_cases')
    op.drop_table('variant_cases')
    op.drop_index('ix_experiments_status_next_rotation_at', table_name='experiments')
    op.drop_index(op.f('ix_experiments_product_id'), table_name='experiments')
    op.drop_index(op.f('ix_experiments_tenant_id'), table_name='experiments')
    op.drop_table('experiments')
    bind = op.get_bind()
    for enum_type in (rotation_trigger, event_type, experiment_scope, experiment_status, image_case):
        enum_type.drop(bind, checkfirst=True)
