"""
支付仓储接口 - 定义待支付记录、交易流水、渠道配置的数据访问抽象

并发安全完全依赖这里声明的条件更新（返回 bool 表示是否抢到状态迁移）
与唯一约束，应用层不做读后写。
"""
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from .entity import (
    PaymentProviderConfig,
    PaymentTransaction,
    PendingPayment,
    TransactionStatus,
)


class PendingPaymentRepository(ABC):
    """待支付记录仓储"""

    @abstractmethod
    async def create(self, payment: PendingPayment) -> PendingPayment:
        """创建待支付记录"""
        pass

    @abstractmethod
    async def get_by_id(self, payment_id: str) -> Optional[PendingPayment]:
        """根据ID获取"""
        pass

    @abstractmethod
    async def get_by_correlation_id(self, store_id: int, correlation_id: str) -> Optional[PendingPayment]:
        """根据渠道请求ID获取（店铺内唯一）"""
        pass

    @abstractmethod
    async def list_recent(self, store_id: int, limit: int = 100) -> List[PendingPayment]:
        """店铺最近的待支付记录，按创建时间倒序"""
        pass

    @abstractmethod
    async def list_confirmed_unclaimed(self, store_id: int, limit: int = 100) -> List[PendingPayment]:
        """已确认但尚未被下单服务领取的记录"""
        pass

    @abstractmethod
    async def set_correlation_id(self, payment_id: str, correlation_id: str) -> bool:
        """仅在 pending 状态下绑定渠道请求ID"""
        pass

    @abstractmethod
    async def confirm(
        self,
        payment_id: str,
        payment_details: dict,
        confirmed_at: datetime,
        *,
        not_expired_at: Optional[datetime] = None,
    ) -> bool:
        """条件确认：status 仍为 pending（且 not_expired_at 给定时未过期）才更新"""
        pass

    @abstractmethod
    async def mark_failed(self, payment_id: str, reason: Optional[str] = None) -> bool:
        """条件更新为 failed"""
        pass

    @abstractmethod
    async def mark_expired(self, payment_id: str) -> bool:
        """条件更新为 expired"""
        pass

    @abstractmethod
    async def merge_payment_details(self, payment_id: str, details: dict) -> None:
        """补充支付详情（非空字段覆盖）"""
        pass

    @abstractmethod
    async def claim(self, payment_id: str, claimed_at: datetime) -> bool:
        """下单服务领取：仅 confirmed 且未领取时成功"""
        pass

    @abstractmethod
    async def expire_overdue(self, now: datetime, limit: int = 500) -> int:
        """批量将超时的 pending 记录标记为 expired，返回处理条数"""
        pass


class PaymentTransactionRepository(ABC):
    """交易流水仓储"""

    @abstractmethod
    async def create(self, transaction: PaymentTransaction) -> PaymentTransaction:
        """写入流水；(provider, provider_transaction_id) 冲突时抛 TransactionAlreadyRecordedError"""
        pass

    @abstractmethod
    async def get_by_id(self, transaction_id: int) -> Optional[PaymentTransaction]:
        """根据ID获取"""
        pass

    @abstractmethod
    async def get_by_provider_transaction_id(
        self,
        provider: str,
        provider_transaction_id: str
    ) -> Optional[PaymentTransaction]:
        """根据网关流水号获取"""
        pass

    @abstractmethod
    async def get_successful_charge(self, pending_payment_id: str) -> Optional[PaymentTransaction]:
        """待支付记录对应的成功扣款"""
        pass

    @abstractmethod
    async def list_by_pending_payment(self, pending_payment_id: str) -> List[PaymentTransaction]:
        """待支付记录下的所有扣款尝试"""
        pass

    @abstractmethod
    async def list_refunds(self, parent_transaction_id: int) -> List[PaymentTransaction]:
        """某笔扣款下的退款流水"""
        pass

    @abstractmethod
    async def finalize(
        self,
        transaction_id: int,
        status: TransactionStatus,
        *,
        processed_at: datetime,
        approval_number: Optional[str] = None,
        card_brand: Optional[str] = None,
        card_last_four: Optional[str] = None,
        provider_response: Optional[dict] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """条件迁移 pending -> success/failed，返回是否抢到迁移"""
        pass

    @abstractmethod
    async def enrich(
        self,
        transaction_id: int,
        *,
        approval_number: Optional[str] = None,
        card_brand: Optional[str] = None,
        card_last_four: Optional[str] = None,
        provider_response: Optional[dict] = None,
    ) -> bool:
        """补充网关独有字段（只填空缺，不覆盖、不改变状态），返回是否有变化"""
        pass

    @abstractmethod
    async def annotate_error(self, transaction_id: int, error_code: str, error_message: str) -> None:
        """仅在 pending 状态下记录异常信息（如金额不符）"""
        pass


class PaymentProviderConfigRepository(ABC):
    """支付渠道配置仓储"""

    @abstractmethod
    async def create(self, config: PaymentProviderConfig) -> PaymentProviderConfig:
        """创建配置"""
        pass

    @abstractmethod
    async def update(self, config: PaymentProviderConfig) -> PaymentProviderConfig:
        """更新配置（不包含计数器）"""
        pass

    @abstractmethod
    async def delete(self, config_id: int) -> bool:
        """删除配置"""
        pass

    @abstractmethod
    async def get_by_store_and_provider(self, store_id: int, provider: str) -> Optional[PaymentProviderConfig]:
        """根据店铺与渠道获取"""
        pass

    @abstractmethod
    async def get_active(self, store_id: int, provider: str) -> Optional[PaymentProviderConfig]:
        """获取启用中的配置"""
        pass

    @abstractmethod
    async def list_by_store(self, store_id: int) -> List[PaymentProviderConfig]:
        """店铺所有配置"""
        pass

    @abstractmethod
    async def count_active(self, store_id: int) -> int:
        """店铺启用中的配置数量"""
        pass

    @abstractmethod
    async def clear_default(self, store_id: int) -> None:
        """清除店铺的默认渠道标记"""
        pass

    @abstractmethod
    async def increment_counters(self, config_id: int, amount: Decimal) -> None:
        """原子自增 total_transactions 与 total_volume"""
        pass
