"""create payment tables

Revision ID: 4e1d9c7a2b60
Revises:
Create Date: 2026-10-18 10:12:31.402117
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '4e1d9c7a2b60'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'payment_plugins',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('plugin_name', sa.String(100), nullable=False, unique=True),
        sa.Column('plugin_code', sa.String(50), nullable=False),
        sa.Column('plugin_version', sa.String(20), nullable=True),
        sa.Column('plugin_path', sa.String(255), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('author', sa.String(100), nullable=True),
        sa.Column('config_schema', sa.JSON(), nullable=True),
        sa.Column('supported_methods', sa.JSON(), nullable=True),
        sa.Column('supported_currencies', sa.JSON(), nullable=True),
        sa.Column('load_priority', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('loaded_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_payment_plugins_id', 'payment_plugins', ['id'])
    op.create_index('ix_payment_plugins_plugin_code', 'payment_plugins', ['plugin_code'], unique=True)
    op.create_index('ix_payment_plugins_status', 'payment_plugins', ['status'])
    op.create_index('ix_payment_plugins_load_priority', 'payment_plugins', ['load_priority'])

    op.create_table(
        'payment_channels',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('channel_code', sa.String(50), nullable=False),
        sa.Column('channel_name', sa.String(100), nullable=False),
        sa.Column('plugin_id', sa.Integer(), sa.ForeignKey('payment_plugins.id'), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('supported_currencies', sa.JSON(), nullable=True),
        sa.Column('min_amount', sa.Numeric(15, 2), nullable=False),
        sa.Column('max_amount', sa.Numeric(15, 2), nullable=False),
        sa.Column('fee_rate', sa.Numeric(5, 4), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_payment_channels_id', 'payment_channels', ['id'])
    op.create_index('ix_payment_channels_channel_code', 'payment_channels', ['channel_code'], unique=True)
    op.create_index('ix_payment_channels_plugin_id', 'payment_channels', ['plugin_id'])
    op.create_index('ix_payment_channels_status_priority', 'payment_channels', ['status', 'priority'])

    op.create_table(
        'payment_configs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('channel_id', sa.Integer(), sa.ForeignKey('payment_channels.id', ondelete='CASCADE'), nullable=False),
        sa.Column('config_key', sa.String(100), nullable=False),
        sa.Column('config_value', sa.Text(), nullable=False),
        sa.Column('is_encrypted', sa.Boolean(), nullable=False),
        sa.Column('description', sa.String(255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('channel_id', 'config_key', name='uq_payment_configs_channel_key'),
    )
    op.create_index('ix_payment_configs_id', 'payment_configs', ['id'])
    op.create_index('ix_payment_configs_channel_id', 'payment_configs', ['channel_id'])

    op.create_table(
        'payment_orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_no', sa.String(64), nullable=False),
        sa.Column('merchant_order_no', sa.String(64), nullable=False),
        sa.Column('channel_id', sa.Integer(), sa.ForeignKey('payment_channels.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('amount', sa.Numeric(15, 2), nullable=False),
        sa.Column('currency', sa.String(10), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('payment_method', sa.String(50), nullable=True),
        sa.Column('gateway_order_no', sa.String(128), nullable=True),
        sa.Column('gateway_trade_no', sa.String(128), nullable=True),
        sa.Column('subject', sa.String(255), nullable=False),
        sa.Column('body', sa.Text(), nullable=True),
        sa.Column('notify_url', sa.String(500), nullable=True),
        sa.Column('return_url', sa.String(500), nullable=True),
        sa.Column('extra_params', sa.JSON(), nullable=True),
        sa.Column('fee_amount', sa.Numeric(15, 2), nullable=True),
        sa.Column('actual_amount', sa.Numeric(15, 2), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('expired_at', sa.DateTime(), nullable=True),
        # Счётчик для оптимистичной блокировки
        sa.Column('version', sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_payment_orders_id', 'payment_orders', ['id'])
    op.create_index('ix_payment_orders_order_no', 'payment_orders', ['order_no'], unique=True)
    op.create_index('ix_payment_orders_merchant_order_no', 'payment_orders', ['merchant_order_no'])
    op.create_index('ix_payment_orders_channel_id', 'payment_orders', ['channel_id'])
    op.create_index('ix_payment_orders_user_id', 'payment_orders', ['user_id'])
    op.create_index('ix_payment_orders_status_expired', 'payment_orders', ['status', 'expired_at'])

    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('transaction_no', sa.String(64), nullable=False),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('payment_orders.id'), nullable=False),
        sa.Column('type', sa.String(16), nullable=False),
        sa.Column('amount', sa.Numeric(15, 2), nullable=False),
        sa.Column('currency', sa.String(10), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('gateway_transaction_no', sa.String(128), nullable=True),
        sa.Column('gateway_response', sa.JSON(), nullable=True),
        sa.Column('error_code', sa.String(50), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_payment_transactions_id', 'payment_transactions', ['id'])
    op.create_index('ix_payment_transactions_transaction_no', 'payment_transactions', ['transaction_no'], unique=True)
    op.create_index('ix_payment_transactions_order_id', 'payment_transactions', ['order_id'])
    op.create_index(
        'ix_payment_transactions_gateway_transaction_no', 'payment_transactions', ['gateway_transaction_no']
    )
    op.create_index('ix_payment_transactions_type_status', 'payment_transactions', ['type', 'status'])

    op.create_table(
        'payment_callbacks',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('payment_orders.id'), nullable=True),
        sa.Column('channel_code', sa.String(50), nullable=True),
        sa.Column('callback_type', sa.String(16), nullable=False),
        sa.Column('request_method', sa.String(10), nullable=True),
        sa.Column('request_headers', sa.JSON(), nullable=True),
        sa.Column('request_body', sa.JSON(), nullable=True),
        sa.Column('request_params', sa.JSON(), nullable=True),
        sa.Column('client_ip', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('is_verified', sa.Boolean(), nullable=False),
        sa.Column('is_processed', sa.Boolean(), nullable=False),
        sa.Column('process_result', sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_payment_callbacks_id', 'payment_callbacks', ['id'])
    op.create_index('ix_payment_callbacks_order_id', 'payment_callbacks', ['order_id'])
    op.create_index(
        'ix_payment_callbacks_verified_processed', 'payment_callbacks', ['is_verified', 'is_processed']
    )


def downgrade() -> None:
    op.drop_table('payment_callbacks')
    op.drop_table('payment_transactions')
    op.drop_table('payment_orders')
    op.drop_table('payment_configs')
    op.drop_table('payment_channels')
    op.drop_table('payment_plugins')
