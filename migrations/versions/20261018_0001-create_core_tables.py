"""create_core_tables

Revision ID: 3f9c1a7d2b10
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f9c1a7d2b10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create audit_logs table
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('entity_id', sa.String(), nullable=True),
        sa.Column('from_status', sa.String(), nullable=True),
        sa.Column('to_status', sa.String(), nullable=True),
        sa.Column('source', sa.String(), nullable=False, server_default='system'),
        sa.Column('request_id', sa.String(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('explanation', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_audit_logs_tenant_id', 'audit_logs', ['tenant_id'])
    op.create_index('ix_audit_logs_event_type', 'audit_logs', ['event_type'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])
    op.create_index('ix_audit_log_tenant_time', 'audit_logs', ['tenant_id', 'created_at'])
    op.create_index('ix_audit_log_entity', 'audit_logs', ['entity_type', 'entity_id'])

    # Create automation_rule_versions table
    op.create_table(
        'automation_rule_versions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('trigger_type', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', 'version')
    )
    op.create_index('ix_automation_rule_versions_tenant_id', 'automation_rule_versions', ['tenant_id'])
    op.create_index('ix_rule_versions_tenant_trigger', 'automation_rule_versions', ['tenant_id', 'trigger_type'])

    # Create automation_executions table
    op.create_table(
        'automation_executions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('rule_id', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('idempotency_key', sa.String(), nullable=False),
        sa.Column('triggered_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'idempotency_key', name='uq_execution_tenant_key')
    )
    op.create_index('ix_automation_executions_tenant_id', 'automation_executions', ['tenant_id'])
    op.create_index('ix_automation_executions_rule_id', 'automation_executions', ['rule_id'])
    op.create_index('ix_executions_tenant_triggered', 'automation_executions', ['tenant_id', 'triggered_at'])

    # Create financial_forecasts table
    op.create_table(
        'financial_forecasts',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('forecast_type', sa.String(), nullable=False),
        sa.Column('generated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_financial_forecasts_tenant_id', 'financial_forecasts', ['tenant_id'])
    op.create_index('ix_forecasts_tenant_type', 'financial_forecasts', ['tenant_id', 'forecast_type'])

    # Create smart_insights table
    op.create_table(
        'smart_insights',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('insight_type', sa.String(), nullable=False),
        sa.Column('dedup_key', sa.String(), nullable=False),
        sa.Column('dismissed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('generated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_smart_insights_tenant_id', 'smart_insights', ['tenant_id'])
    op.create_index('ix_insights_tenant_generated', 'smart_insights', ['tenant_id', 'generated_at'])
    op.create_index('ix_insights_tenant_dedup', 'smart_insights', ['tenant_id', 'dedup_key'])

    # Create scenarios table
    op.create_table(
        'scenarios',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('scenario_type', sa.String(), nullable=False),
        sa.Column('risk_score', sa.Float(), nullable=False),
        sa.Column('risk_level', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_scenarios_tenant_id', 'scenarios', ['tenant_id'])
    op.create_index('ix_scenarios_tenant_created', 'scenarios', ['tenant_id', 'created_at'])


def downgrade() -> None:
    op.drop_table('scenarios')
    op.drop_table('smart_insights')
    op.drop_table('financial_forecasts')
    op.drop_table('automation_executions')
    op.drop_table('automation_rule_versions')
    op.drop_table('audit_logs')
