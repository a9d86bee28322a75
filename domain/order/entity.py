"""
订单实体（仅财务状态部分）

订单由下单服务根据已确认的 PendingPayment 创建；本服务只负责退款流程中的财务状态流转。
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class OrderFinancialStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    VOIDED = "voided"


REFUNDABLE_STATES = frozenset({OrderFinancialStatus.PAID, OrderFinancialStatus.PARTIALLY_REFUNDED})


@dataclass
class Order:
    id: Optional[int]
    store_id: int
    order_number: str
    financial_status: OrderFinancialStatus
    total: Decimal
    currency: str
    pending_payment_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.financial_status = OrderFinancialStatus(self.financial_status)

    @property
    def is_refundable(self) -> bool:
        return self.financial_status in REFUNDABLE_STATES
