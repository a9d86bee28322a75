"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Boolean, Column, Integer, String, Numeric, DateTime, Text, JSON,
    Index, ForeignKey, UniqueConstraint
)
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PendingPaymentModel(Base):
    """
    待支付记录数据库模型

    所有业务规则都在 domain.payment.entity.PendingPayment 中
    """
    __tablename__ = "pending_payments"

    id = Column(String(36), primary_key=True, comment="主键（UUID）")
    store_id = Column(Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True, comment="店铺ID")

    provider = Column(String(50), nullable=False, comment="支付渠道")
    correlation_id = Column(String(200), nullable=True, comment="渠道请求ID（如 PayPlus page_request_uid）")
    order_reference = Column(String(64), nullable=True, index=True, comment="面向客户的订单号")

    status = Column(
        String(20),
        nullable=False,
        default="pending",
        index=True,
        comment="状态: pending/confirmed/failed/expired"
    )

    # 购物车与客户快照
    items = Column(JSON, nullable=False, default=list, comment="购物车行项目快照")
    customer = Column(JSON, nullable=True, comment="客户联系方式")

    # 金额（Numeric 精确存储）
    currency = Column(String(3), nullable=False, comment="货币代码 ISO-4217")
    subtotal = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="商品小计")
    discount_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="折扣")
    shipping_cost = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="运费")
    credit_used = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="余额抵扣")
    expected_total = Column(Numeric(precision=15, scale=2), nullable=False, comment="应付金额")

    payment_details = Column(JSON, nullable=True, comment="支付详情（流水号、审批号、卡信息）")
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    expires_at = Column(DateTime(timezone=True), nullable=True, index=True, comment="过期时间")
    confirmed_at = Column(DateTime(timezone=True), nullable=True, comment="确认时间")
    consumed_at = Column(DateTime(timezone=True), nullable=True, comment="被下单服务领取的时间")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, comment="更新时间")

    __table_args__ = (
        UniqueConstraint("store_id", "correlation_id", name="uq_pending_payments_store_correlation"),
        Index("ix_pending_payments_store_status", "store_id", "status"),
    )

    def __repr__(self):
        return (
            f"<PendingPaymentModel(id='{self.id}', store_id={self.store_id}, "
            f"provider='{self.provider}', status='{self.status}')>"
        )


class PaymentTransactionModel(Base):
    """
    交易流水数据库模型

    (provider, provider_transaction_id) 唯一约束是并发幂等的最终保证
    """
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True, comment="店铺ID")

    provider = Column(String(50), nullable=False, comment="支付渠道")
    provider_transaction_id = Column(String(200), nullable=True, comment="网关流水号")
    provider_config_id = Column(
        Integer,
        ForeignKey("payment_provider_configs.id", ondelete="SET NULL"),
        nullable=True,
        comment="渠道配置ID"
    )

    type = Column(String(20), nullable=False, comment="类型: charge/refund")
    status = Column(String(20), nullable=False, default="pending", index=True, comment="状态: pending/success/failed")

    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="金额")
    currency = Column(String(3), nullable=False, comment="货币代码")

    pending_payment_id = Column(
        String(36),
        ForeignKey("pending_payments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="关联的待支付记录"
    )
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True, comment="关联订单")
    parent_transaction_id = Column(
        Integer,
        ForeignKey("payment_transactions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="退款对应的原扣款流水"
    )

    provider_approval_num = Column(String(64), nullable=True, comment="发卡行审批号")
    card_brand = Column(String(32), nullable=True, comment="卡品牌")
    card_last_four = Column(String(4), nullable=True, comment="卡号后四位")
    provider_response = Column(JSON, nullable=True, comment="网关原始响应")
    error_code = Column(String(64), nullable=True, comment="错误码")
    error_message = Column(Text, nullable=True, comment="错误信息")

    processed_at = Column(DateTime(timezone=True), nullable=True, comment="终态时间")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, comment="更新时间")

    __table_args__ = (
        UniqueConstraint("provider", "provider_transaction_id", name="uq_payment_transactions_provider_txn"),
        Index("ix_payment_transactions_store_created", "store_id", "created_at"),
    )

    def __repr__(self):
        return (
            f"<PaymentTransactionModel(id={self.id}, provider='{self.provider}', "
            f"type='{self.type}', status='{self.status}', amount={self.amount})>"
        )


class PaymentProviderConfigModel(Base):
    """店铺支付渠道配置"""
    __tablename__ = "payment_provider_configs"

    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True, comment="店铺ID")
    provider = Column(String(50), nullable=False, comment="支付渠道")
    display_name = Column(String(100), nullable=True, comment="展示名称")

    credentials = Column(JSON, nullable=False, default=dict, comment="渠道凭据（密钥等）")
    settings = Column(JSON, nullable=False, default=dict, comment="渠道设置")

    is_active = Column(Boolean, nullable=False, default=True, comment="是否启用")
    is_default = Column(Boolean, nullable=False, default=False, comment="是否默认渠道")
    test_mode = Column(Boolean, nullable=False, default=True, comment="是否沙箱")

    total_transactions = Column(Integer, nullable=False, default=0, comment="成功交易笔数")
    total_volume = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="成功交易总额")

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, comment="更新时间")

    __table_args__ = (
        UniqueConstraint("store_id", "provider", name="uq_payment_provider_configs_store_provider"),
    )

    def __repr__(self):
        return (
            f"<PaymentProviderConfigModel(id={self.id}, store_id={self.store_id}, "
            f"provider='{self.provider}', is_active={self.is_active})>"
        )
