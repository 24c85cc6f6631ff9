"""Create organizations, integrations, webhook_events, data_points, insights, reports

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19

WHAT:
    Initial schema:
    - organizations: tenant anchor (CRUD lives upstream)
    - integrations: one per (organization, platform), encrypted credentials
    - webhook_events: every delivery attempt, with a partial unique index on
      processed rows
    - data_points: normalized observations (revenue, orders, customers...)
    - insights / reports: generated analysis

WHY:
    The partial unique index on webhook_events is what makes concurrent
    deliveries of one event produce DataPoints exactly once.

REFERENCES:
    - storepulse/models.py
    - storepulse/services/webhook_event_log.py
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_000001'
down_revision = None
branch_labels = None
depends_on = None


PLATFORMS = ('shopify', 'stripe', 'google_analytics', 'meta_ads', 'mailchimp')
INTEGRATION_STATUSES = ('pending', 'active', 'error', 'disconnected')
REPORT_TYPES = ('daily', 'weekly', 'monthly')


def upgrade() -> None:
    op.create_table(
        'organizations',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'integrations',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('organization_id', sa.Uuid(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('platform', sa.Enum(*PLATFORMS, name='platformenum'), nullable=False),
        sa.Column('platform_account_id', sa.String(), nullable=True),
        sa.Column('credentials_enc', sa.Text(), nullable=True),
        sa.Column('status', sa.Enum(*INTEGRATION_STATUSES, name='integrationstatusenum'), nullable=False),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_sync_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('disconnected_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('organization_id', 'platform', name='uq_integration_org_platform'),
    )
    op.create_index('ix_integrations_organization_id', 'integrations', ['organization_id'])

    # Status stored as VARCHAR so new delivery outcomes need no enum migration
    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('integration_id', sa.Uuid(), sa.ForeignKey('integrations.id'), nullable=False),
        sa.Column('topic', sa.String(), nullable=False),
        sa.Column('status', sa.String(length=40), nullable=False),
        sa.Column('external_id', sa.String(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        'uq_webhook_events_processed',
        'webhook_events',
        ['integration_id', 'topic', 'external_id'],
        unique=True,
        postgresql_where=sa.text("status = 'processed'"),
        sqlite_where=sa.text("status = 'processed'"),
    )
    op.create_index('ix_webhook_events_lookup', 'webhook_events', ['integration_id', 'topic', 'external_id'])

    op.create_table(
        'data_points',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('integration_id', sa.Uuid(), sa.ForeignKey('integrations.id'), nullable=False),
        sa.Column('metric_type', sa.String(), nullable=False),
        sa.Column('value', sa.Numeric(18, 4), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('date_recorded', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_data_points_range', 'data_points', ['integration_id', 'metric_type', 'date_recorded'])

    op.create_table(
        'insights',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('organization_id', sa.Uuid(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('category', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('impact_score', sa.Float(), nullable=False),
        sa.Column('urgency', sa.String(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_insights_organization_id', 'insights', ['organization_id'])

    op.create_table(
        'reports',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('organization_id', sa.Uuid(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('report_type', sa.Enum(*REPORT_TYPES, name='reporttypeenum'), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('content', sa.JSON(), nullable=False),
        sa.Column('date_range_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('date_range_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_reports_organization_id', 'reports', ['organization_id'])


def downgrade() -> None:
    op.drop_index('ix_reports_organization_id', table_name='reports')
    op.drop_table('reports')
    op.drop_index('ix_insights_organization_id', table_name='insights')
    op.drop_table('insights')
    op.drop_index('ix_data_points_range', table_name='data_points')
    op.drop_table('data_points')
    op.drop_index('ix_webhook_events_lookup', table_name='webhook_events')
    op.drop_index('uq_webhook_events_processed', table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_index('ix_integrations_organization_id', table_name='integrations')
    op.drop_table('integrations')

    sa.Enum(name='reporttypeenum').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='integrationstatusenum').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='platformenum').drop(op.get_bind(), checkfirst=True)
