"""Approval workflow schema

Revision ID: 20261016_000001
Revises: 
Create Date: 2026-10-16

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '20261016_000001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create workflow_templates table
    op.create_table(
        'workflow_templates',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('trigger', sa.String(50), nullable=False),
        sa.Column('subject_category', sa.String(255), nullable=True),
        sa.Column('subject_type', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_by', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_workflow_templates_name', 'workflow_templates', ['name'])
    op.create_index('ix_workflow_templates_trigger', 'workflow_templates', ['trigger'])
    op.create_index('ix_workflow_templates_trigger_active', 'workflow_templates', ['trigger', 'is_active'])

    # Create workflow_template_steps table
    op.create_table(
        'workflow_template_steps',
        sa.Column('template_id', sa.Uuid(), nullable=False),
        sa.Column('step_id', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('kind', sa.String(50), nullable=False),
        sa.Column('assignee_type', sa.String(50), nullable=False),
        sa.Column('assignee_id', sa.String(255), nullable=False),
        sa.Column('step_order', sa.Integer(), nullable=False),
        sa.Column('required', sa.Boolean(), nullable=False),
        sa.Column('timeout_hours', sa.Float(), nullable=True),
        sa.Column('auto_approve', sa.Boolean(), nullable=False),
        sa.Column('conditions', postgresql.JSONB(), nullable=True),
        sa.PrimaryKeyConstraint('template_id', 'step_id'),
        sa.ForeignKeyConstraint(['template_id'], ['workflow_templates.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('template_id', 'step_order', name='uq_template_step_order'),
    )

    # Create workflow_instances table
    op.create_table(
        'workflow_instances',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('template_id', sa.Uuid(), nullable=False),
        sa.Column('subject_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('current_step_execution_id', sa.Uuid(), nullable=True),
        sa.Column('initiated_by', sa.String(255), nullable=False),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=False),
        sa.Column('initiated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['template_id'], ['workflow_templates.id'], ondelete='RESTRICT'),
    )
    op.create_index('ix_workflow_instances_template_id', 'workflow_instances', ['template_id'])
    op.create_index('ix_workflow_instances_subject_id', 'workflow_instances', ['subject_id'])
    op.create_index('ix_workflow_instances_status', 'workflow_instances', ['status'])
    op.create_index(
        'ix_workflow_instances_subject_initiated', 'workflow_instances', ['subject_id', 'initiated_at']
    )

    # Create workflow_step_executions table
    op.create_table(
        'workflow_step_executions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('instance_id', sa.Uuid(), nullable=False),
        sa.Column('step_id', sa.String(255), nullable=False),
        sa.Column('step_order', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('assignee_id', sa.String(255), nullable=False),
        sa.Column('assigned_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('completed_by', sa.String(255), nullable=True),
        sa.Column('decision', sa.String(50), nullable=True),
        sa.Column('comments', sa.Text(), nullable=True),
        sa.Column('revision_count', sa.Integer(), nullable=False),
        sa.Column('escalated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['instance_id'], ['workflow_instances.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('instance_id', 'step_id', name='uq_step_execution_instance_step'),
    )
    op.create_index('ix_workflow_step_executions_instance_id', 'workflow_step_executions', ['instance_id'])
    op.create_index('ix_workflow_step_executions_status', 'workflow_step_executions', ['status'])
    op.create_index(
        'ix_step_executions_assignee_status', 'workflow_step_executions', ['assignee_id', 'status']
    )
    op.create_index(
        'ix_step_executions_instance_order', 'workflow_step_executions', ['instance_id', 'step_order']
    )


def downgrade() -> None:
    op.drop_table('workflow_step_executions')
    op.drop_table('workflow_instances')
    op.drop_table('workflow_template_steps')
    op.drop_table('workflow_templates')
