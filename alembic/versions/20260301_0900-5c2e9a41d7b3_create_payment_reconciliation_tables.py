"""create_payment_reconciliation_tables

Revision ID: 5c2e9a41d7b3
Revises:
Create Date: 2026-03-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '5c2e9a41d7b3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'stores',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('slug', sa.String(length=64), nullable=False, comment='店铺标识（URL 使用）'),
        sa.Column('name', sa.String(length=200), nullable=False, comment='店铺名称'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='ILS', comment='默认货币'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true(), comment='是否启用'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_stores_id', 'stores', ['id'])
    op.create_index('ix_stores_slug', 'stores', ['slug'], unique=True)

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False, comment='店铺ID'),
        sa.Column('order_number', sa.String(length=64), nullable=False, comment='订单号'),
        sa.Column('financial_status', sa.String(length=32), nullable=False, server_default='pending',
                  comment='财务状态: pending/paid/partially_refunded/refunded/voided'),
        sa.Column('total', sa.Numeric(precision=15, scale=2), nullable=False, comment='订单总额'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码'),
        sa.Column('pending_payment_id', sa.String(length=36), nullable=True, comment='来源待支付记录'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'order_number', name='uq_orders_store_number'),
    )
    op.create_index('ix_orders_id', 'orders', ['id'])
    op.create_index('ix_orders_store_id', 'orders', ['store_id'])
    op.create_index('ix_orders_financial_status', 'orders', ['financial_status'])
    op.create_index('ix_orders_pending_payment_id', 'orders', ['pending_payment_id'])

    op.create_table(
        'payment_provider_configs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False, comment='店铺ID'),
        sa.Column('provider', sa.String(length=50), nullable=False, comment='支付渠道'),
        sa.Column('display_name', sa.String(length=100), nullable=True, comment='展示名称'),
        sa.Column('credentials', sa.JSON(), nullable=False, comment='渠道凭据（密钥等）'),
        sa.Column('settings', sa.JSON(), nullable=False, comment='渠道设置'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true(), comment='是否启用'),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.false(), comment='是否默认渠道'),
        sa.Column('test_mode', sa.Boolean(), nullable=False, server_default=sa.true(), comment='是否沙箱'),
        sa.Column('total_transactions', sa.Integer(), nullable=False, server_default='0', comment='成功交易笔数'),
        sa.Column('total_volume', sa.Numeric(precision=15, scale=2), nullable=False, server_default='0', comment='成功交易总额'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'provider', name='uq_payment_provider_configs_store_provider'),
    )
    op.create_index('ix_payment_provider_configs_id', 'payment_provider_configs', ['id'])
    op.create_index('ix_payment_provider_configs_store_id', 'payment_provider_configs', ['store_id'])

    op.create_table(
        'pending_payments',
        sa.Column('id', sa.String(length=36), nullable=False, comment='主键（UUID）'),
        sa.Column('store_id', sa.Integer(), nullable=False, comment='店铺ID'),
        sa.Column('provider', sa.String(length=50), nullable=False, comment='支付渠道'),
        sa.Column('correlation_id', sa.String(length=200), nullable=True, comment='渠道请求ID'),
        sa.Column('order_reference', sa.String(length=64), nullable=True, comment='面向客户的订单号'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending',
                  comment='状态: pending/confirmed/failed/expired'),
        sa.Column('items', sa.JSON(), nullable=False, comment='购物车行项目快照'),
        sa.Column('customer', sa.JSON(), nullable=True, comment='客户联系方式'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码 ISO-4217'),
        sa.Column('subtotal', sa.Numeric(precision=15, scale=2), nullable=False, server_default='0', comment='商品小计'),
        sa.Column('discount_amount', sa.Numeric(precision=15, scale=2), nullable=False, server_default='0', comment='折扣'),
        sa.Column('shipping_cost', sa.Numeric(precision=15, scale=2), nullable=False, server_default='0', comment='运费'),
        sa.Column('credit_used', sa.Numeric(precision=15, scale=2), nullable=False, server_default='0', comment='余额抵扣'),
        sa.Column('expected_total', sa.Numeric(precision=15, scale=2), nullable=False, comment='应付金额'),
        sa.Column('payment_details', sa.JSON(), nullable=True, comment='支付详情（流水号、审批号、卡信息）'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True, comment='过期时间'),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True, comment='确认时间'),
        sa.Column('consumed_at', sa.DateTime(timezone=True), nullable=True, comment='被下单服务领取的时间'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'correlation_id', name='uq_pending_payments_store_correlation'),
    )
    op.create_index('ix_pending_payments_store_id', 'pending_payments', ['store_id'])
    op.create_index('ix_pending_payments_order_reference', 'pending_payments', ['order_reference'])
    op.create_index('ix_pending_payments_status', 'pending_payments', ['status'])
    op.create_index('ix_pending_payments_expires_at', 'pending_payments', ['expires_at'])
    op.create_index('ix_pending_payments_created_at', 'pending_payments', ['created_at'])
    op.create_index('ix_pending_payments_store_status', 'pending_payments', ['store_id', 'status'])

    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False, comment='店铺ID'),
        sa.Column('provider', sa.String(length=50), nullable=False, comment='支付渠道'),
        sa.Column('provider_transaction_id', sa.String(length=200), nullable=True, comment='网关流水号'),
        sa.Column('provider_config_id', sa.Integer(), nullable=True, comment='渠道配置ID'),
        sa.Column('type', sa.String(length=20), nullable=False, comment='类型: charge/refund'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending',
                  comment='状态: pending/success/failed'),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False, comment='金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码'),
        sa.Column('pending_payment_id', sa.String(length=36), nullable=True, comment='关联的待支付记录'),
        sa.Column('order_id', sa.Integer(), nullable=True, comment='关联订单'),
        sa.Column('parent_transaction_id', sa.Integer(), nullable=True, comment='退款对应的原扣款流水'),
        sa.Column('provider_approval_num', sa.String(length=64), nullable=True, comment='发卡行审批号'),
        sa.Column('card_brand', sa.String(length=32), nullable=True, comment='卡品牌'),
        sa.Column('card_last_four', sa.String(length=4), nullable=True, comment='卡号后四位'),
        sa.Column('provider_response', sa.JSON(), nullable=True, comment='网关原始响应'),
        sa.Column('error_code', sa.String(length=64), nullable=True, comment='错误码'),
        sa.Column('error_message', sa.Text(), nullable=True, comment='错误信息'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True, comment='终态时间'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['provider_config_id'], ['payment_provider_configs.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['pending_payment_id'], ['pending_payments.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['parent_transaction_id'], ['payment_transactions.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        # 并发幂等的最终保证
        sa.UniqueConstraint('provider', 'provider_transaction_id', name='uq_payment_transactions_provider_txn'),
    )
    op.create_index('ix_payment_transactions_id', 'payment_transactions', ['id'])
    op.create_index('ix_payment_transactions_store_id', 'payment_transactions', ['store_id'])
    op.create_index('ix_payment_transactions_status', 'payment_transactions', ['status'])
    op.create_index('ix_payment_transactions_pending_payment_id', 'payment_transactions', ['pending_payment_id'])
    op.create_index('ix_payment_transactions_order_id', 'payment_transactions', ['order_id'])
    op.create_index('ix_payment_transactions_parent_transaction_id', 'payment_transactions', ['parent_transaction_id'])
    op.create_index('ix_payment_transactions_created_at', 'payment_transactions', ['created_at'])
    op.create_index('ix_payment_transactions_store_created', 'payment_transactions', ['store_id', 'created_at'])


def downgrade() -> None:
    op.drop_table('payment_transactions')
    op.drop_table('pending_payments')
    op.drop_table('payment_provider_configs')
    op.drop_table('orders')
    op.drop_table('stores')
