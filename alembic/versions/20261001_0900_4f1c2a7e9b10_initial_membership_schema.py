"""initial_membership_schema

Revision ID: 4f1c2a7e9b10
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4f1c2a7e9b10'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()')),
    ]


def upgrade() -> None:
    op.create_table(
        'members',
        sa.Column('member_id', sa.TEXT(), primary_key=True),
        sa.Column('customer_ref', sa.TEXT(), nullable=True),
        sa.Column('email', sa.TEXT(), nullable=True),
        sa.Column('name', sa.TEXT(), nullable=True),
        sa.Column('membership_tier', sa.TEXT(), nullable=False, server_default='FREE'),
        sa.Column('membership_status', sa.TEXT(), nullable=False, server_default='INACTIVE'),
        sa.Column('trial_start', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('trial_end', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('shipping_address', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('customer_ref', name='uq_members_customer_ref'),
    )
    op.create_index('idx_members_email', 'members', ['email'])

    op.create_table(
        'accounts',
        sa.Column('account_id', sa.TEXT(), primary_key=True),
        sa.Column('email', sa.TEXT(), nullable=True),
        sa.Column('display_name', sa.TEXT(), nullable=True),
        sa.Column('role', sa.TEXT(), nullable=False, server_default='member'),
        sa.Column('member_id', sa.TEXT(), sa.ForeignKey('members.member_id'), nullable=True),
        sa.Column('is_active', sa.BOOLEAN(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index('idx_accounts_email', 'accounts', ['email'])
    op.create_index('idx_accounts_member', 'accounts', ['member_id'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.BIGINT(), primary_key=True, autoincrement=True),
        sa.Column('subscription_ref', sa.TEXT(), nullable=False),
        sa.Column('member_id', sa.TEXT(), sa.ForeignKey('members.member_id'), nullable=False),
        sa.Column('price_ref', sa.TEXT(), nullable=True),
        sa.Column('tier', sa.TEXT(), nullable=True),
        sa.Column('billing_cycle', sa.TEXT(), nullable=False, server_default='MONTHLY'),
        sa.Column('status', sa.TEXT(), nullable=False),
        sa.Column('current_period_start', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        sa.Column('trial_start', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('trial_end', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('grace_expires_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('canceled_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('version', sa.BIGINT(), nullable=False, server_default='0'),
        *_timestamps(),
        sa.UniqueConstraint('subscription_ref', name='uq_subscriptions_ref'),
    )
    op.create_index('idx_subscriptions_member', 'subscriptions', ['member_id'])
    op.create_index('idx_subscriptions_status_grace', 'subscriptions', ['status', 'grace_expires_at'])

    op.create_table(
        'processed_events',
        sa.Column('event_id', sa.TEXT(), primary_key=True),
        sa.Column('event_type', sa.TEXT(), nullable=False),
        sa.Column('outcome', sa.TEXT(), nullable=False),
        sa.Column('payload_hash', sa.TEXT(), nullable=True),
        sa.Column('processed_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('idx_processed_events_processed_at', 'processed_events', ['processed_at'])

    op.create_table(
        'article_views',
        sa.Column('id', sa.BIGINT(), primary_key=True, autoincrement=True),
        sa.Column('account_id', sa.TEXT(), nullable=True),
        sa.Column('session_id', sa.TEXT(), nullable=True),
        sa.Column('content_id', sa.TEXT(), nullable=False),
        sa.Column('viewed_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('idx_article_views_account_time', 'article_views', ['account_id', 'viewed_at'])
    op.create_index('idx_article_views_session_time', 'article_views', ['session_id', 'viewed_at'])

    op.create_table(
        'paywall_config',
        sa.Column('config_id', sa.INTEGER(), primary_key=True, server_default='1'),
        sa.Column('free_article_limit', sa.INTEGER(), nullable=False, server_default='3'),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.CheckConstraint('config_id = 1', name='ck_paywall_config_singleton'),
    )
    op.execute("INSERT INTO paywall_config (config_id, free_article_limit) VALUES (1, 3)")

    op.create_table(
        'magazine_fulfillment_records',
        sa.Column('id', sa.BIGINT(), primary_key=True, autoincrement=True),
        sa.Column('member_id', sa.TEXT(), sa.ForeignKey('members.member_id'), nullable=False),
        sa.Column('subscription_ref', sa.TEXT(), nullable=True),
        sa.Column('tier', sa.TEXT(), nullable=False, server_default='INSIDER'),
        sa.Column('billing_cycle', sa.TEXT(), nullable=True),
        sa.Column('shipping_address', sa.JSON(), nullable=True),
        sa.Column('status', sa.TEXT(), nullable=False, server_default='active'),
        sa.Column('started_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('canceled_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('dispatch_status', sa.TEXT(), nullable=False, server_default='pending'),
        sa.Column('dispatch_attempts', sa.INTEGER(), nullable=False, server_default='0'),
        sa.Column('last_dispatch_error', sa.TEXT(), nullable=True),
        sa.Column('last_dispatch_at', sa.TIMESTAMP(timezone=True), nullable=True),
        *_timestamps(),
    )
    # At most one active fulfillment record per member
    op.create_index(
        'uq_fulfillment_active_member',
        'magazine_fulfillment_records',
        ['member_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )
    op.create_index(
        'idx_fulfillment_dispatch', 'magazine_fulfillment_records', ['dispatch_status', 'updated_at']
    )

    op.create_table(
        'audit_log_entries',
        sa.Column('id', sa.BIGINT(), primary_key=True, autoincrement=True),
        sa.Column('event_type', sa.TEXT(), nullable=False),
        sa.Column('member_id', sa.TEXT(), nullable=True),
        sa.Column('related_entity_type', sa.TEXT(), nullable=True),
        sa.Column('related_entity_id', sa.TEXT(), nullable=True),
        sa.Column('actor', sa.TEXT(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('idx_audit_member_time', 'audit_log_entries', ['member_id', 'created_at'])
    op.create_index('idx_audit_event_type', 'audit_log_entries', ['event_type'])


def downgrade() -> None:
    op.drop_table('audit_log_entries')
    op.drop_table('magazine_fulfillment_records')
    op.drop_table('paywall_config')
    op.drop_table('article_views')
    op.drop_table('processed_events')
    op.drop_table('subscriptions')
    op.drop_table('accounts')
    op.drop_table('members')
