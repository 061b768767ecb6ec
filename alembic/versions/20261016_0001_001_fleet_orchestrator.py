"""Fleet orchestrator schema

Revision ID: 001_fleet_orchestrator
Revises:
Create Date: 2026-10-16

Creates the fleet (vps), tenant (organizations) and provisioning workflow
(deployments, deployment_logs) tables.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_fleet_orchestrator'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Fleet
    op.create_table(
        'vps',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False, unique=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('location', sa.String(100), nullable=True),
        sa.Column('deployment_type', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('max_tenants', sa.Integer, nullable=True),
        sa.Column('current_tenants', sa.Integer, nullable=False, server_default='0'),
        sa.Column('cpu_cores', sa.Integer, nullable=False, server_default='0'),
        sa.Column('memory_mb', sa.Integer, nullable=False, server_default='0'),
        sa.Column('disk_gb', sa.Integer, nullable=False, server_default='0'),
        sa.Column('cpu_usage_percent', sa.Float, nullable=True),
        sa.Column('memory_usage_percent', sa.Float, nullable=True),
        sa.Column('telemetry_updated_at', sa.DateTime, nullable=True),
        sa.Column('provider_handle', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
        sa.CheckConstraint('current_tenants >= 0', name='ck_vps_tenants_non_negative'),
        sa.CheckConstraint(
            "(deployment_type != 'shared') OR (max_tenants >= 1 AND current_tenants <= max_tenants)",
            name='ck_vps_shared_capacity',
        ),
        sa.CheckConstraint(
            "(deployment_type != 'dedicated') OR (current_tenants <= 1)",
            name='ck_vps_dedicated_single_tenant',
        ),
    )
    op.create_index('ix_vps_type_status', 'vps', ['deployment_type', 'status'])

    # Tenants
    op.create_table(
        'organizations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(50), nullable=False),
        sa.Column('tier', sa.String(20), nullable=False, server_default='starter'),
        sa.Column('deployment_model', sa.String(20), nullable=False),
        sa.Column('vps_id', sa.String(36), sa.ForeignKey('vps.id'), nullable=True),
        sa.Column('admin_email', sa.String(255), nullable=True),
        sa.Column('admin_name', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint('slug', name='uq_organizations_slug'),
    )
    op.create_index('ix_organizations_vps_id', 'organizations', ['vps_id'])

    # Provisioning workflow
    op.create_table(
        'deployments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('status_message', sa.String(500), nullable=True),
        sa.Column('error_code', sa.String(50), nullable=True),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('access_url', sa.String(255), nullable=True),
        sa.Column('credentials', sa.JSON, nullable=True),
        sa.Column('vps_id', sa.String(36), sa.ForeignKey('vps.id'), nullable=True),
        sa.Column('provider_handle', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('provisioning_started_at', sa.DateTime, nullable=True),
        sa.Column('completed_at', sa.DateTime, nullable=True),
    )
    op.create_index('ix_deployments_tenant_id', 'deployments', ['tenant_id'])
    op.create_index('ix_deployments_status', 'deployments', ['status'])

    op.create_table(
        'deployment_logs',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('deployment_id', sa.String(36), sa.ForeignKey('deployments.id'), nullable=False),
        sa.Column('seq', sa.Integer, nullable=False),
        sa.Column('timestamp', sa.DateTime, server_default=sa.func.now()),
        sa.Column('message', sa.Text, nullable=False),
        sa.UniqueConstraint('deployment_id', 'seq', name='uq_deployment_logs_seq'),
    )


def downgrade() -> None:
    op.drop_table('deployment_logs')
    op.drop_index('ix_deployments_status', table_name='deployments')
    op.drop_index('ix_deployments_tenant_id', table_name='deployments')
    op.drop_table('deployments')
    op.drop_index('ix_organizations_vps_id', table_name='organizations')
    op.drop_table('organizations')
    op.drop_index('ix_vps_type_status', table_name='vps')
    op.drop_table('vps')
