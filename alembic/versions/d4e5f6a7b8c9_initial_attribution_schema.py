"""initial attribution schema

Revision ID: d4e5f6a7b8c9
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = 'd4e5f6a7b8c9'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'organizations',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_organizations_slug', 'organizations', ['slug'], unique=True)

    op.create_table(
        'api_keys',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('key_hash', sa.String(64), nullable=False),
        sa.Column('key_prefix', sa.String(12), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true')),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_api_keys_organization_id', 'api_keys', ['organization_id'])
    op.create_index('ix_api_keys_key_hash', 'api_keys', ['key_hash'], unique=True)

    op.create_table(
        'ad_creatives',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('platform', sa.String(50), nullable=True),
        sa.Column('campaign_id', sa.String(100), nullable=True),
        sa.Column('campaign_name', sa.Text(), nullable=True),
        sa.Column('ad_id', sa.String(100), nullable=False),
        sa.Column('ad_name', sa.Text(), nullable=True),
        sa.Column('creative_id', sa.String(100), nullable=True),
        sa.Column('refcode', sa.String(255), nullable=True),
        sa.Column('destination_url', sa.Text(), nullable=True),
        sa.Column('utm_source', sa.String(255), nullable=True),
        sa.Column('utm_medium', sa.String(255), nullable=True),
        sa.Column('utm_campaign', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_ad_creatives_organization_id', 'ad_creatives', ['organization_id'])
    op.create_index('ix_ad_creatives_org_ad', 'ad_creatives', ['organization_id', 'ad_id'])

    op.create_table(
        'transactions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('transaction_id', sa.String(255), nullable=False, unique=True),
        sa.Column('transaction_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('transaction_type', sa.String(30), nullable=False, server_default='donation'),
        sa.Column('amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('net_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('donor_email', sa.String(320), nullable=True),
        sa.Column('donor_phone', sa.String(50), nullable=True),
        sa.Column('refcode', sa.String(255), nullable=True),
        sa.Column('refcode2', sa.String(255), nullable=True),
        sa.Column('refcode_custom', sa.String(255), nullable=True),
        sa.Column('click_id', sa.String(255), nullable=True),
        sa.Column('source_campaign', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_transactions_org_date', 'transactions', ['organization_id', 'transaction_date'])
    op.create_index('ix_transactions_org_txn', 'transactions', ['organization_id', 'transaction_id'])

    op.create_table(
        'attribution_touchpoints',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('touchpoint_type', sa.String(50), nullable=False),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('donor_email', sa.String(320), nullable=True),
        sa.Column('donor_phone_hash', sa.String(64), nullable=True),
        sa.Column('campaign_id', sa.String(100), nullable=True),
        sa.Column('campaign_name', sa.Text(), nullable=True),
        sa.Column('ad_id', sa.String(100), nullable=True),
        sa.Column('refcode', sa.String(255), nullable=True),
        sa.Column('utm_source', sa.String(255), nullable=True),
        sa.Column('utm_medium', sa.String(255), nullable=True),
        sa.Column('utm_campaign', sa.String(255), nullable=True),
        sa.Column('metadata', JSONB, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_touchpoints_org_occurred', 'attribution_touchpoints', ['organization_id', 'occurred_at'])
    op.create_index('ix_touchpoints_org_email', 'attribution_touchpoints', ['organization_id', 'donor_email'])
    op.create_index('ix_touchpoints_org_phone', 'attribution_touchpoints', ['organization_id', 'donor_phone_hash'])

    op.create_table(
        'ad_daily_metrics',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('organization_id', UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('campaign_id', sa.String(100), nullable=True),
        sa.Column('ad_id', sa.String(100), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('impressions', sa.Integer(), server_default='0'),
        sa.Column('clicks', sa.Integer(), server_default='0'),
        sa.Column('spend', sa.Numeric(12, 2), server_default='0'),
        sa.UniqueConstraint('organization_id', 'ad_id', 'date', name='uq_ad_daily_metrics_org_ad_date'),
    )
    op.create_index('ix_ad_daily_metrics_org_date', 'ad_daily_metrics', ['organization_id', 'date'])

    op.create_table(
        'refcode_mappings',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('refcode', sa.String(255), nullable=False),
        sa.Column('platform', sa.String(50), nullable=True),
        sa.Column('campaign_id', sa.String(100), nullable=True),
        sa.Column('campaign_name', sa.Text(), nullable=True),
        sa.Column('ad_id', sa.String(100), nullable=True),
        sa.Column('ad_name', sa.Text(), nullable=True),
        sa.Column('creative_id', sa.String(100), nullable=True),
        sa.Column('utm_source', sa.String(255), nullable=True),
        sa.Column('utm_medium', sa.String(255), nullable=True),
        sa.Column('utm_campaign', sa.String(255), nullable=True),
        sa.Column('source', sa.String(30), nullable=False, server_default='creative_url'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('organization_id', 'refcode', name='uq_refcode_mappings_org_refcode'),
    )

    op.create_table(
        'refcode_mapping_history',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('refcode', sa.String(255), nullable=False),
        sa.Column('ad_id', sa.String(100), nullable=False),
        sa.Column('campaign_id', sa.String(100), nullable=True),
        sa.Column('campaign_name', sa.Text(), nullable=True),
        sa.Column('ad_name', sa.Text(), nullable=True),
        sa.Column('first_seen_at', sa.Date(), nullable=False),
        sa.Column('last_seen_at', sa.Date(), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('false')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('organization_id', 'refcode', 'ad_id', name='uq_refcode_history_org_refcode_ad'),
        sa.CheckConstraint('first_seen_at <= last_seen_at', name='ck_refcode_history_seen_order'),
    )

    op.create_table(
        'donor_identity_links',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('email_hash', sa.String(64), nullable=False),
        sa.Column('phone_hash', sa.String(64), nullable=False),
        sa.Column('donor_email', sa.String(320), nullable=True),
        sa.Column('source', sa.String(30), nullable=False, server_default='transaction'),
        sa.Column('confidence', sa.Float(), nullable=False, server_default='1.0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('organization_id', 'email_hash', 'phone_hash', name='uq_identity_links_org_email_phone'),
    )
    op.create_index('ix_identity_links_org_phone', 'donor_identity_links', ['organization_id', 'phone_hash'])

    op.create_table(
        'transaction_attribution',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('transaction_id', sa.String(255), nullable=False, unique=True),
        sa.Column('donor_email', sa.String(320), nullable=True),
        sa.Column('first_touch_channel', sa.String(50), nullable=True),
        sa.Column('first_touch_campaign', sa.Text(), nullable=True),
        sa.Column('first_touch_weight', sa.Float(), nullable=False, server_default='0'),
        sa.Column('last_touch_channel', sa.String(50), nullable=True),
        sa.Column('last_touch_campaign', sa.Text(), nullable=True),
        sa.Column('last_touch_weight', sa.Float(), nullable=False, server_default='0'),
        sa.Column('middle_touches', JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('total_touchpoints', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('attribution_method', sa.String(30), nullable=False),
        sa.Column('attribution_confidence', sa.Float(), nullable=True),
        sa.Column('attribution_calculated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        'ix_transaction_attribution_org_method', 'transaction_attribution',
        ['organization_id', 'attribution_method'],
    )


def downgrade() -> None:
    op.drop_index('ix_transaction_attribution_org_method', table_name='transaction_attribution')
    op.drop_table('transaction_attribution')
    op.drop_index('ix_identity_links_org_phone', table_name='donor_identity_links')
    op.drop_table('donor_identity_links')
    op.drop_table('refcode_mapping_history')
    op.drop_table('refcode_mappings')
    op.drop_index('ix_ad_daily_metrics_org_date', table_name='ad_daily_metrics')
    op.drop_table('ad_daily_metrics')
    op.drop_index('ix_touchpoints_org_phone', table_name='attribution_touchpoints')
    op.drop_index('ix_touchpoints_org_email', table_name='attribution_touchpoints')
    op.drop_index('ix_touchpoints_org_occurred', table_name='attribution_touchpoints')
    op.drop_table('attribution_touchpoints')
    op.drop_index('ix_transactions_org_txn', table_name='transactions')
    op.drop_index('ix_transactions_org_date', table_name='transactions')
    op.drop_table('transactions')
    op.drop_index('ix_ad_creatives_org_ad', table_name='ad_creatives')
    op.drop_index('ix_ad_creatives_organization_id', table_name='ad_creatives')
    op.drop_table('ad_creatives')
    op.drop_index('ix_api_keys_key_hash', table_name='api_keys')
    op.drop_index('ix_api_keys_organization_id', table_name='api_keys')
    op.drop_table('api_keys')
    op.drop_index('ix_organizations_slug', table_name='organizations')
    op.drop_table('organizations')
