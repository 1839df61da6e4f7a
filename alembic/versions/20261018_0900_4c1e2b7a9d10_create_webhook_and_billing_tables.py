"""create_webhook_and_billing_tables

Revision ID: 4c1e2b7a9d10
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '4c1e2b7a9d10'
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        'mercadopago_webhook_events',
        sa.Column('id', sa.UUID(as_uuid=False), primary_key=True),
        sa.Column('mercadopago_event_id', sa.TEXT(), nullable=False),
        sa.Column('notification_id', sa.TEXT(), nullable=True),
        sa.Column('resource_id', sa.TEXT(), nullable=True),
        sa.Column('topic', sa.TEXT(), nullable=True),
        sa.Column('action', sa.TEXT(), nullable=True),
        sa.Column('api_version', sa.TEXT(), nullable=True),
        sa.Column('live_mode', sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        sa.Column('created_at_mp', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('received_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('payload_raw', JSON_TYPE, nullable=False),
        sa.Column('headers_raw', JSON_TYPE, nullable=False),
        sa.Column('status', sa.TEXT(), nullable=False, server_default='RECEIVED'),
        sa.Column('process_attempts', sa.INTEGER(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.TEXT(), nullable=True),
        sa.UniqueConstraint('mercadopago_event_id', name='uq_mercadopago_webhook_events_event_id'),
        sa.CheckConstraint(
            "status IN ('RECEIVED', 'PROCESSED', 'FAILED')",
            name='ck_mercadopago_webhook_events_status',
        ),
        sa.CheckConstraint('process_attempts >= 0', name='ck_mercadopago_webhook_events_attempts'),
    )
    # republish scan: status='FAILED' ORDER BY received_at
    op.create_index(
        'idx_mercadopago_webhook_events_status_received',
        'mercadopago_webhook_events',
        ['status', 'received_at'],
    )

    op.create_table(
        'plans',
        sa.Column('id', sa.UUID(as_uuid=False), primary_key=True),
        sa.Column('code', sa.TEXT(), nullable=False),
        sa.Column('name', sa.TEXT(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('code', name='uq_plans_code'),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.UUID(as_uuid=False), primary_key=True),
        sa.Column('user_id', sa.TEXT(), nullable=False),
        sa.Column('plan_id', sa.UUID(as_uuid=False), sa.ForeignKey('plans.id'), nullable=False),
        sa.Column('status', sa.TEXT(), nullable=False),
        sa.Column('trial_ends_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('current_period_start', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('idx_subscriptions_user_created', 'subscriptions', ['user_id', 'created_at'])

    op.create_table(
        'subscription_payments',
        sa.Column('id', sa.UUID(as_uuid=False), primary_key=True),
        sa.Column(
            'subscription_id',
            sa.UUID(as_uuid=False),
            sa.ForeignKey('subscriptions.id'),
            nullable=False,
        ),
        sa.Column('provider', sa.TEXT(), nullable=False, server_default='mercadopago'),
        sa.Column('mp_payment_id', sa.TEXT(), nullable=False),
        sa.Column('mp_merchant_order_id', sa.TEXT(), nullable=True),
        sa.Column('amount', sa.NUMERIC(12, 2), nullable=False),
        sa.Column('currency', sa.TEXT(), nullable=False),
        sa.Column('status', sa.TEXT(), nullable=False),
        sa.Column('paid_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('external_reference', sa.TEXT(), nullable=True),
        sa.Column('raw', JSON_TYPE, nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('mp_payment_id', name='uq_subscription_payments_mp_payment_id'),
    )


def downgrade() -> None:
    op.drop_table('subscription_payments')
    op.drop_index('idx_subscriptions_user_created', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('plans')
    op.drop_index('idx_mercadopago_webhook_events_status_received', table_name='mercadopago_webhook_events')
    op.drop_table('mercadopago_webhook_events')
