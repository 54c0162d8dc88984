"""Add agent autonomy, task, pending action and proactive action tables

Revision ID: add_agent_tables
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'add_agent_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create agent core tables."""

    op.create_table(
        'agent_autonomy_settings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('preset', sa.String(20), nullable=False, server_default='balanced'),
        sa.Column('category_overrides', sa.JSON, nullable=False),  # {"maintenance": "L3"}
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_agent_autonomy_settings_user_id', 'agent_autonomy_settings', ['user_id'], unique=True)

    op.create_table(
        'autonomy_graduation_tracking',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('category', sa.String(40), nullable=False),
        sa.Column('consecutive_approvals', sa.Integer, nullable=False, server_default='0'),
        sa.Column('total_approvals', sa.Integer, nullable=False, server_default='0'),
        sa.Column('total_rejections', sa.Integer, nullable=False, server_default='0'),
        sa.Column('current_level', sa.Integer, nullable=False, server_default='1'),
        sa.Column('graduation_threshold', sa.Integer, nullable=False, server_default='10'),
        sa.Column('backoff_multiplier', sa.Integer, nullable=False, server_default='1'),
        sa.Column('last_approval_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_rejection_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_suggestion_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'category', name='uq_graduation_user_category'),
    )
    op.create_index('ix_autonomy_graduation_tracking_user_id', 'autonomy_graduation_tracking', ['user_id'])

    op.create_table(
        'agent_tasks',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('category', sa.String(40), nullable=False),
        sa.Column('priority', sa.String(10), nullable=False, server_default='normal'),
        sa.Column('priority_rank', sa.Integer, nullable=False, server_default='2'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending_input'),
        sa.Column('manual_override', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('timeline', sa.JSON, nullable=False),
        sa.Column('timeline_cursor', sa.Integer, nullable=False, server_default='0'),
        sa.Column('recommendation', sa.Text, nullable=True),
        sa.Column('deep_link', sa.String(500), nullable=True),
        sa.Column('related_entity_type', sa.String(50), nullable=True),
        sa.Column('related_entity_id', sa.String(36), nullable=True),
        sa.Column('required_level', sa.String(4), nullable=True),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_agent_tasks_user_id', 'agent_tasks', ['user_id'])
    op.create_index('ix_agent_tasks_user_status', 'agent_tasks', ['user_id', 'status'])

    op.create_table(
        'agent_pending_actions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('task_id', sa.String(36), nullable=True),
        sa.Column('action_type', sa.String(50), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('tool_name', sa.String(100), nullable=False),
        sa.Column('tool_params', sa.JSON, nullable=False),
        sa.Column('autonomy_level', sa.Integer, nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_by', sa.String(64), nullable=True),
        sa.Column('rejection_reason', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_agent_pending_actions_user_id', 'agent_pending_actions', ['user_id'])
    op.create_index('ix_agent_pending_actions_task_id', 'agent_pending_actions', ['task_id'])

    # Append-only audit log
    op.create_table(
        'agent_proactive_actions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('task_id', sa.String(36), nullable=True),
        sa.Column('trigger_type', sa.String(50), nullable=False),
        sa.Column('trigger_source', sa.String(100), nullable=True),
        sa.Column('action_taken', sa.Text, nullable=False),
        sa.Column('tool_name', sa.String(100), nullable=True),
        sa.Column('tool_params', sa.JSON, nullable=True),
        sa.Column('result', sa.JSON, nullable=True),
        sa.Column('was_auto_executed', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_agent_proactive_user_created', 'agent_proactive_actions', ['user_id', 'created_at'])


def downgrade() -> None:
    """Drop agent core tables. Tenancies and arrears belong to the property app."""
    op.drop_index('ix_agent_proactive_user_created', table_name='agent_proactive_actions')
    op.drop_table('agent_proactive_actions')

    op.drop_index('ix_agent_pending_actions_task_id', table_name='agent_pending_actions')
    op.drop_index('ix_agent_pending_actions_user_id', table_name='agent_pending_actions')
    op.drop_table('agent_pending_actions')

    op.drop_index('ix_agent_tasks_user_status', table_name='agent_tasks')
    op.drop_index('ix_agent_tasks_user_id', table_name='agent_tasks')
    op.drop_table('agent_tasks')

    op.drop_index('ix_autonomy_graduation_tracking_user_id', table_name='autonomy_graduation_tracking')
    op.drop_table('autonomy_graduation_tracking')

    op.drop_index('ix_agent_autonomy_settings_user_id', table_name='agent_autonomy_settings')
    op.drop_table('agent_autonomy_settings')
