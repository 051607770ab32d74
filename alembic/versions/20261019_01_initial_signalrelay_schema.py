# alembic/versions/20261019_01_initial_signalrelay_schema.py
"""Initial schema: users, alerts, configurations, billing and trades

Revision ID: 20261019_01_initial
Revises: None
Create Date: 2026-10-19 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = '20261019_01_initial'
down_revision = None
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _ts(name, nullable=True, server_default=None):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable, server_default=server_default)


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('email', sa.String(255), unique=True, nullable=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        _ts('created_at', False, sa.func.now()),
        _ts('updated_at', False, sa.func.now()),
    )

    op.create_table(
        'telegram_links',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column('chat_id', sa.BigInteger(), nullable=False, unique=True),
        sa.Column('username', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_blocked', sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts('blocked_at'),
        sa.Column('block_reason', sa.Text(), nullable=True),
        _ts('linked_at', False, sa.func.now()),
        _ts('last_delivery_at'),
    )
    op.create_index('ix_telegram_links_is_blocked', 'telegram_links', ['is_blocked'])

    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(100), unique=True, nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='INR'),
        sa.Column('duration_months', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('duration_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('display_order', sa.Integer(), nullable=False, server_default='0'),
        _ts('created_at', False, sa.func.now()),
    )

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete="CASCADE"), nullable=False),
        sa.Column('plan_id', sa.Integer(), sa.ForeignKey('subscription_plans.id'), nullable=False),
        sa.Column('transaction_id', sa.String(32), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('method', sa.String(32), nullable=False),
        sa.Column('upi_vpa', sa.String(255), nullable=True),
        sa.Column('upi_merchant_name', sa.String(255), nullable=True),
        sa.Column('upi_merchant_code', sa.String(50), nullable=True),
        sa.Column('payment_string', sa.Text(), nullable=True),
        sa.Column('qr_code_path', sa.String(512), nullable=True),
        sa.Column('qr_code_url', sa.String(512), nullable=True),
        sa.Column('proof_original_name', sa.String(255), nullable=True),
        sa.Column('proof_filename', sa.String(255), nullable=True),
        sa.Column('proof_path', sa.String(512), nullable=True),
        sa.Column('proof_url', sa.String(512), nullable=True),
        sa.Column('proof_size', sa.Integer(), nullable=True),
        sa.Column('proof_mimetype', sa.String(64), nullable=True),
        _ts('proof_uploaded_at'),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('verified_by', sa.Integer(), nullable=True),
        _ts('verified_at'),
        sa.Column('verification_notes', sa.Text(), nullable=True),
        sa.Column('rejection_reason', sa.String(200), nullable=True),
        sa.Column('ip_address', sa.String(64), nullable=True),
        sa.Column('user_agent', sa.String(512), nullable=True),
        _ts('expires_at', False),
        sa.Column('subscription_id', sa.Integer(), nullable=True),
        _ts('created_at', False, sa.func.now()),
        _ts('updated_at', False, sa.func.now()),
    )
    op.create_index('ix_payments_transaction_id', 'payments', ['transaction_id'], unique=True)
    op.create_index('ix_payments_user_id', 'payments', ['user_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_expires_at', 'payments', ['expires_at'])
    op.create_index('ix_payments_user_status', 'payments', ['user_id', 'status'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete="CASCADE"), nullable=False),
        sa.Column('plan_id', sa.Integer(), sa.ForeignKey('subscription_plans.id'), nullable=False),
        sa.Column('payment_id', sa.Integer(), sa.ForeignKey('payments.id', ondelete="SET NULL"), nullable=True),
        sa.Column('transaction_id', sa.String(32), nullable=False),
        _ts('start_date', False),
        _ts('end_date', False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('renewal_notification_sent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('alerts_received', sa.Integer(), nullable=False, server_default='0'),
        _ts('last_activity_at'),
        sa.Column('superseded_by_id', sa.Integer(), sa.ForeignKey('subscriptions.id', ondelete="SET NULL"), nullable=True),
        _ts('created_at', False, sa.func.now()),
        _ts('updated_at', False, sa.func.now()),
        sa.UniqueConstraint('user_id', 'plan_id', 'transaction_id', name='uq_subscription_user_plan_txn'),
        sa.CheckConstraint('end_date > start_date', name='ck_subscription_end_after_start'),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_plan_id', 'subscriptions', ['plan_id'])
    op.create_index('ix_subscriptions_end_date', 'subscriptions', ['end_date'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_user_status', 'subscriptions', ['user_id', 'status'])
    op.create_index(
        'uq_subscription_one_active', 'subscriptions', ['user_id', 'plan_id'], unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )
    op.create_foreign_key(
        'fk_payments_subscription_id', 'payments', 'subscriptions',
        ['subscription_id'], ['id'], ondelete="SET NULL",
    )

    op.create_table(
        'alert_configurations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('symbol', sa.String(20), nullable=False),
        sa.Column('timeframe', sa.String(8), nullable=True),
        sa.Column('strategy', sa.String(100), nullable=False),
        sa.Column('entry_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('entry_signals', JSONType, nullable=False),
        sa.Column('exit_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('exit_signals', JSONType, nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('max_open_trades', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('replace_on_same_signal', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('allow_opposite_signals', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('price_min', sa.Numeric(20, 8), nullable=True),
        sa.Column('price_max', sa.Numeric(20, 8), nullable=True),
        sa.Column('total_alerts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('successful_alerts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_alerts', sa.Integer(), nullable=False, server_default='0'),
        _ts('last_alert_at'),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id', ondelete="SET NULL"), nullable=True),
        _ts('created_at', False, sa.func.now()),
        _ts('updated_at', False, sa.func.now()),
    )
    op.create_index('ix_alert_configurations_symbol', 'alert_configurations', ['symbol'])
    op.create_index('ix_alert_configurations_strategy', 'alert_configurations', ['strategy'])
    op.create_index('ix_alert_configurations_status', 'alert_configurations', ['status'])

    op.create_table(
        'alert_configuration_plans',
        sa.Column('configuration_id', sa.Integer(),
                  sa.ForeignKey('alert_configurations.id', ondelete="CASCADE"), primary_key=True),
        sa.Column('plan_id', sa.Integer(),
                  sa.ForeignKey('subscription_plans.id', ondelete="CASCADE"), primary_key=True),
    )

    op.create_table(
        'config_subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete="CASCADE"), nullable=False),
        sa.Column('configuration_id', sa.Integer(),
                  sa.ForeignKey('alert_configurations.id', ondelete="CASCADE"), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts('subscribed_at', False, sa.func.now()),
        sa.UniqueConstraint('user_id', 'configuration_id', name='uq_config_subscription_user'),
    )
    op.create_index('ix_config_subscriptions_user_id', 'config_subscriptions', ['user_id'])
    op.create_index('ix_config_subscriptions_configuration_id', 'config_subscriptions', ['configuration_id'])

    op.create_table(
        'alerts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('source', sa.String(32), nullable=False, server_default='tradingview'),
        sa.Column('raw_body', sa.Text(), nullable=False),
        sa.Column('raw_payload', JSONType, nullable=False),
        sa.Column('signature', sa.String(255), nullable=True),
        sa.Column('ip_address', sa.String(64), nullable=True),
        sa.Column('symbol', sa.String(20), nullable=False),
        sa.Column('timeframe', sa.String(8), nullable=False),
        sa.Column('strategy', sa.String(100), nullable=False),
        sa.Column('signal', sa.String(32), nullable=False),
        sa.Column('price', sa.Numeric(20, 8), nullable=False),
        sa.Column('take_profit_price', sa.Numeric(20, 8), nullable=True),
        sa.Column('stop_loss_price', sa.Numeric(20, 8), nullable=True),
        _ts('event_time', False),
        sa.Column('additional_data', JSONType, nullable=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        _ts('received_at', False, sa.func.now()),
        _ts('processed_at'),
        _ts('updated_at', False, sa.func.now()),
    )
    op.create_index('ix_alerts_symbol', 'alerts', ['symbol'])
    op.create_index('ix_alerts_strategy', 'alerts', ['strategy'])
    op.create_index('ix_alerts_status', 'alerts', ['status'])
    op.create_index('ix_alerts_symbol_strategy', 'alerts', ['symbol', 'strategy'])

    op.create_table(
        'trades',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('trade_number', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete="CASCADE"), nullable=False),
        sa.Column('configuration_id', sa.Integer(),
                  sa.ForeignKey('alert_configurations.id', ondelete="SET NULL"), nullable=True),
        sa.Column('subscription_id', sa.Integer(), sa.ForeignKey('subscriptions.id', ondelete="SET NULL"), nullable=True),
        sa.Column('symbol', sa.String(20), nullable=False),
        sa.Column('timeframe', sa.String(8), nullable=False),
        sa.Column('strategy', sa.String(100), nullable=False),
        sa.Column('signal', sa.String(32), nullable=False),
        sa.Column('entry_price', sa.Numeric(20, 8), nullable=False),
        sa.Column('take_profit_price', sa.Numeric(20, 8), nullable=True),
        sa.Column('stop_loss_price', sa.Numeric(20, 8), nullable=True),
        sa.Column('exit_price', sa.Numeric(20, 8), nullable=True),
        sa.Column('exit_reason', sa.String(32), nullable=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('pnl_amount', sa.Numeric(20, 8), nullable=True),
        sa.Column('pnl_percentage', sa.Numeric(10, 2), nullable=True),
        sa.Column('entry_alert_id', sa.Integer(), sa.ForeignKey('alerts.id', ondelete="SET NULL"), nullable=True),
        sa.Column('exit_alert_id', sa.Integer(), sa.ForeignKey('alerts.id', ondelete="SET NULL"), nullable=True),
        sa.Column('replaced_by_id', sa.Integer(), sa.ForeignKey('trades.id', ondelete="SET NULL"), nullable=True),
        sa.Column('replacement_reason', sa.String(100), nullable=True),
        _ts('opened_at', False, sa.func.now()),
        _ts('closed_at'),
        _ts('replaced_at'),
    )
    op.create_index('ix_trades_trade_number', 'trades', ['trade_number'], unique=True)
    op.create_index('ix_trades_user_id', 'trades', ['user_id'])
    op.create_index('ix_trades_status', 'trades', ['status'])
    op.create_index('ix_trades_user_symbol_status', 'trades', ['user_id', 'symbol', 'strategy', 'status'])

    op.create_table(
        'alert_recipients',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('alert_id', sa.Integer(), sa.ForeignKey('alerts.id', ondelete="CASCADE"), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete="CASCADE"), nullable=False),
        sa.Column('subscription_id', sa.Integer(), sa.ForeignKey('subscriptions.id', ondelete="SET NULL"), nullable=True),
        sa.Column('configuration_id', sa.Integer(),
                  sa.ForeignKey('alert_configurations.id', ondelete="SET NULL"), nullable=True),
        sa.Column('chat_id', sa.BigInteger(), nullable=False),
        _ts('claimed_at'),
        sa.Column('delivered', sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts('delivered_at'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('message_id', sa.BigInteger(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        _ts('created_at', False, sa.func.now()),
        sa.UniqueConstraint('alert_id', 'user_id', name='uq_alert_recipient_user'),
    )
    op.create_index('ix_alert_recipients_alert_id', 'alert_recipients', ['alert_id'])
    op.create_index('ix_alert_recipients_user_id', 'alert_recipients', ['user_id'])

    op.create_table(
        'alert_trade_actions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('alert_id', sa.Integer(), sa.ForeignKey('alerts.id', ondelete="CASCADE"), nullable=False),
        sa.Column('action', sa.String(32), nullable=False),
        sa.Column('trade_id', sa.Integer(), sa.ForeignKey('trades.id', ondelete="SET NULL"), nullable=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete="CASCADE"), nullable=False),
        sa.Column('executed', sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts('executed_at'),
        sa.Column('error', sa.Text(), nullable=True),
    )
    op.create_index('ix_alert_trade_actions_alert_id', 'alert_trade_actions', ['alert_id'])

    op.create_table(
        'alert_errors',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('alert_id', sa.Integer(), sa.ForeignKey('alerts.id', ondelete="CASCADE"), nullable=False),
        sa.Column('kind', sa.String(32), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        _ts('created_at', False, sa.func.now()),
    )
    op.create_index('ix_alert_errors_alert_id', 'alert_errors', ['alert_id'])


def downgrade() -> None:
    op.drop_table('alert_errors')
    op.drop_table('alert_trade_actions')
    op.drop_table('alert_recipients')
    op.drop_table('trades')
    op.drop_table('alerts')
    op.drop_table('config_subscriptions')
    op.drop_table('alert_configuration_plans')
    op.drop_table('alert_configurations')
    op.drop_constraint('fk_payments_subscription_id', 'payments', type_='foreignkey')
    op.drop_table('subscriptions')
    op.drop_table('payments')
    op.drop_table('subscription_plans')
    op.drop_table('telegram_links')
    op.drop_table('users')
