"""
店铺与订单数据库模型
"""
from sqlalchemy import Boolean, Column, Integer, String, Numeric, DateTime, ForeignKey, UniqueConstraint
from datetime import datetime, timezone

from .base import Base


class StoreModel(Base):
    __tablename__ = "stores"

    id = Column(Integer, primary_key=True, index=True)
    slug = Column(String(64), unique=True, index=True, nullable=False, comment="店铺标识（URL 使用）")
    name = Column(String(200), nullable=False, comment="店铺名称")
    currency = Column(String(3), nullable=False, default="ILS", comment="默认货币")
    is_active = Column(Boolean, default=True, nullable=False, comment="是否启用")
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )

    def __repr__(self):
        return f"<StoreModel(id={self.id}, slug='{self.slug}')>"


class OrderModel(Base):
    """订单（仅财务相关字段）"""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True, comment="店铺ID")
    order_number = Column(String(64), nullable=False, comment="订单号")
    financial_status = Column(
        String(32),
        nullable=False,
        default="pending",
        index=True,
        comment="财务状态: pending/paid/partially_refunded/refunded/voided"
    )
    total = Column(Numeric(precision=15, scale=2), nullable=False, comment="订单总额")
    currency = Column(String(3), nullable=False, comment="货币代码")
    pending_payment_id = Column(String(36), nullable=True, index=True, comment="来源待支付记录")
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )

    __table_args__ = (
        UniqueConstraint("store_id", "order_number", name="uq_orders_store_number"),
    )

    def __repr__(self):
        return f"<OrderModel(id={self.id}, order_number='{self.order_number}', status='{self.financial_status}')>"
