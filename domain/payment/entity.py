"""
支付领域实体 - 待支付记录（PendingPayment）、交易流水（PaymentTransaction）与支付渠道配置
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Optional

from domain.common.exceptions import DomainValidationException


CENT = Decimal("0.01")


class PendingPaymentStatus(str, Enum):
    """待支付记录状态：仅允许 pending -> confirmed/failed/expired"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"


class TransactionType(str, Enum):
    CHARGE = "charge"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    """流水状态：仅允许 pending -> success/failed，终态不可变"""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class ReconciliationOutcome(str, Enum):
    """单次回调的处理结果"""
    CONFIRMED = "confirmed"
    FAILED = "failed"
    IN_PROGRESS = "in_progress"
    ALREADY_PROCESSED = "already_processed"
    EXPIRED = "expired"
    UNAUTHORIZED = "unauthorized"
    ROUTING_FAILED = "routing_failed"
    NOT_MATCHED = "not_matched"
    AMOUNT_MISMATCH = "amount_mismatch"
    INVALID_PAYLOAD = "invalid_payload"


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def quantize_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value if value is not None else 0))


def _validate_currency(currency: str) -> str:
    u = (currency or "").upper()
    if len(u) != 3 or not u.isalpha():
        raise DomainValidationException(f"无效的货币代码: {currency}", field="currency")
    return u


@dataclass
class CartLineItem:
    """购物车行快照（下单时价格，不随商品目录变化）"""

    product_id: str
    name: str
    quantity: int
    unit_price: Decimal
    variant: Optional[str] = None
    image_url: Optional[str] = None

    def __post_init__(self):
        self.unit_price = _to_decimal(self.unit_price)
        if self.quantity <= 0:
            raise DomainValidationException(f"商品数量必须大于0: {self.quantity}", field="quantity")
        if self.unit_price < 0:
            raise DomainValidationException(f"商品单价不能为负: {self.unit_price}", field="unit_price")

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "variant": self.variant,
            "image_url": self.image_url,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CartLineItem":
        return cls(
            product_id=str(data.get("product_id")),
            name=data.get("name") or "",
            quantity=int(data.get("quantity") or 0),
            unit_price=_to_decimal(data.get("unit_price")),
            variant=data.get("variant"),
            image_url=data.get("image_url"),
        )


@dataclass
class CustomerContact:
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    def to_dict(self) -> dict:
        return {"name": self.name, "email": self.email, "phone": self.phone}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "CustomerContact":
        data = data or {}
        return cls(name=data.get("name"), email=data.get("email"), phone=data.get("phone"))


@dataclass
class PendingPayment:
    """
    待支付记录 - 一次尚未转为订单的结账尝试

    业务规则：
    1. 状态只能从 pending 单向流转为 confirmed/failed/expired
    2. 预期金额只由自身快照计算（行项目 × 数量 + 运费 - 折扣 - 余额抵扣）
    3. confirmed 之后仅允许补充支付详情与一次性的 consumed 标记
    状态流转全部由仓储的条件更新（WHERE status = 'pending'）完成，实体本身不做迁移
    """

    id: Optional[str]
    store_id: int
    provider: str
    currency: str
    items: list[CartLineItem] = field(default_factory=list)
    customer: CustomerContact = field(default_factory=CustomerContact)
    status: PendingPaymentStatus = PendingPaymentStatus.PENDING
    correlation_id: Optional[str] = None
    order_reference: Optional[str] = None

    subtotal: Decimal = field(default_factory=lambda: Decimal("0"))
    discount_amount: Decimal = field(default_factory=lambda: Decimal("0"))
    shipping_cost: Decimal = field(default_factory=lambda: Decimal("0"))
    credit_used: Decimal = field(default_factory=lambda: Decimal("0"))
    expected_total: Decimal = field(default_factory=lambda: Decimal("0"))

    payment_details: dict = field(default_factory=dict)
    failure_reason: Optional[str] = None

    expires_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    consumed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.currency = _validate_currency(self.currency)
        for name in ("subtotal", "discount_amount", "shipping_cost", "credit_used", "expected_total"):
            value = _to_decimal(getattr(self, name))
            if value < 0:
                raise DomainValidationException(f"{name} 不能为负: {value}", field=name)
            setattr(self, name, value)
        self.status = PendingPaymentStatus(self.status)
        if self.payment_details is None:
            self.payment_details = {}
        self.expires_at = _ensure_utc(self.expires_at)
        self.confirmed_at = _ensure_utc(self.confirmed_at)
        self.consumed_at = _ensure_utc(self.consumed_at)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)

    @classmethod
    def open(
        cls,
        *,
        store_id: int,
        provider: str,
        currency: str,
        items: list[CartLineItem],
        customer: CustomerContact,
        ttl: timedelta,
        discount_amount: Decimal = Decimal("0"),
        shipping_cost: Decimal = Decimal("0"),
        credit_used: Decimal = Decimal("0"),
        order_reference: Optional[str] = None,
        correlation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "PendingPayment":
        """创建新的结账尝试，金额全部在服务端重新计算"""
        if not items:
            raise DomainValidationException("购物车不能为空", field="items")
        now = now or _utcnow()
        payment = cls(
            id=str(uuid.uuid4()),
            store_id=store_id,
            provider=provider,
            currency=currency,
            items=list(items),
            customer=customer,
            correlation_id=correlation_id,
            order_reference=order_reference,
            discount_amount=discount_amount,
            shipping_cost=shipping_cost,
            credit_used=credit_used,
            expires_at=now + ttl,
            created_at=now,
            updated_at=now,
        )
        payment.subtotal = quantize_money(sum((i.line_total for i in payment.items), Decimal("0")))
        payment.expected_total = payment.compute_expected_total()
        if not payment.order_reference:
            payment.order_reference = payment.id.split("-")[0].upper()
        return payment

    def compute_expected_total(self) -> Decimal:
        """仅依据快照计算应付金额，不信任任何回调方提供的数据"""
        items_total = sum((i.line_total for i in self.items), Decimal("0"))
        total = items_total + self.shipping_cost - self.discount_amount - self.credit_used
        return quantize_money(max(total, Decimal("0")))

    @property
    def is_terminal(self) -> bool:
        return self.status != PendingPaymentStatus.PENDING

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.status == PendingPaymentStatus.EXPIRED:
            return True
        if self.expires_at is None:
            return False
        return (now or _utcnow()) >= self.expires_at


@dataclass
class PaymentTransaction:
    """
    交易流水 - 每一次网关操作（扣款/退款）一条记录

    业务规则：
    1. (provider, provider_transaction_id) 唯一，是幂等判断的依据
    2. 只允许 pending -> success/failed，终态之后仅可补充网关独有字段
    3. 退款必须指向一笔成功的扣款（parent_transaction_id）
    """

    id: Optional[int]
    store_id: int
    provider: str
    type: TransactionType
    status: TransactionStatus
    amount: Decimal
    currency: str
    provider_transaction_id: Optional[str] = None
    pending_payment_id: Optional[str] = None
    order_id: Optional[int] = None
    provider_config_id: Optional[int] = None
    parent_transaction_id: Optional[int] = None
    provider_approval_num: Optional[str] = None
    card_brand: Optional[str] = None
    card_last_four: Optional[str] = None
    provider_response: dict = field(default_factory=dict)
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = _to_decimal(self.amount)
        if self.amount < 0:
            raise DomainValidationException(f"交易金额不能为负: {self.amount}", field="amount")
        self.currency = _validate_currency(self.currency)
        self.type = TransactionType(self.type)
        self.status = TransactionStatus(self.status)
        if self.type == TransactionType.REFUND and self.parent_transaction_id is None:
            raise DomainValidationException("退款流水必须关联原扣款流水", field="parent_transaction_id")
        if self.provider_response is None:
            self.provider_response = {}
        self.processed_at = _ensure_utc(self.processed_at)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)

    @property
    def is_terminal(self) -> bool:
        return self.status != TransactionStatus.PENDING


@dataclass
class PaymentProviderConfig:
    """
    店铺维度的支付渠道配置

    业务规则：
    1. 同一店铺同一渠道仅一条配置
    2. 每个店铺最多一个启用中的默认渠道
    3. 统计计数器只能通过原子自增修改
    """

    id: Optional[int]
    store_id: int
    provider: str
    display_name: Optional[str] = None
    credentials: dict = field(default_factory=dict)
    settings: dict = field(default_factory=dict)
    is_active: bool = True
    is_default: bool = False
    test_mode: bool = True
    total_transactions: int = 0
    total_volume: Decimal = field(default_factory=lambda: Decimal("0"))
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    MASK = "••••••••"

    def __post_init__(self):
        self.provider = (self.provider or "").strip().lower()
        if not self.provider:
            raise DomainValidationException("支付渠道不能为空", field="provider")
        self.total_volume = _to_decimal(self.total_volume)
        if self.credentials is None:
            self.credentials = {}
        if self.settings is None:
            self.settings = {}
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)

    def masked_credentials(self) -> dict:
        """凭据对外只返回掩码，空值保持为空以便前端识别未配置项"""
        return {key: (self.MASK if value else value) for key, value in self.credentials.items()}

    def merge_credentials(self, updates: dict) -> None:
        """合并凭据；掩码值表示保持原值不变"""
        for key, value in updates.items():
            if value == self.MASK:
                continue
            self.credentials[key] = value
        self.updated_at = _utcnow()

    def deactivate(self) -> None:
        self.is_active = False
        self.is_default = False
        self.updated_at = _utcnow()
