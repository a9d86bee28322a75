"""订单仓储接口"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, Optional

from .entity import Order, OrderFinancialStatus


class OrderRepository(ABC):

    @abstractmethod
    async def get_by_id(self, store_id: int, order_id: int) -> Optional[Order]:
        """根据店铺与订单ID获取订单"""
        pass

    @abstractmethod
    async def create(self, order: Order) -> Order:
        """创建订单（下单服务使用）"""
        pass

    @abstractmethod
    async def transition_financial_status(
        self,
        order_id: int,
        *,
        expected: Iterable[OrderFinancialStatus],
        new_status: OrderFinancialStatus,
    ) -> bool:
        """条件更新财务状态：仅当当前状态属于 expected 时更新，返回是否更新成功"""
        pass
