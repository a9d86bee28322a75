"""
结账与支付配置相关 DTO - 待支付记录、支付渠道配置、退款
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import EmailStr, Field, field_validator
from pydantic.types import condecimal

from application.dtos.base import DTOBase
from domain.order.entity import Order
from domain.payment.entity import (
    CartLineItem,
    CustomerContact,
    PaymentProviderConfig,
    PendingPayment,
)


# ============================================================================
# 待支付记录
# ============================================================================


class CartLineItemDTO(DTOBase):
    product_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=255)
    quantity: int = Field(..., gt=0)
    unit_price: condecimal(ge=0, max_digits=15, decimal_places=2)  # type: ignore[valid-type]
    variant: Optional[str] = None
    image_url: Optional[str] = None

    def to_entity(self) -> CartLineItem:
        return CartLineItem(
            product_id=self.product_id,
            name=self.name,
            quantity=self.quantity,
            unit_price=self.unit_price,
            variant=self.variant,
            image_url=self.image_url,
        )

    @classmethod
    def from_entity(cls, item: CartLineItem) -> "CartLineItemDTO":
        return cls(
            product_id=item.product_id,
            name=item.name,
            quantity=item.quantity,
            unit_price=item.unit_price,
            variant=item.variant,
            image_url=item.image_url,
        )


class CustomerDTO(DTOBase):
    name: Optional[str] = Field(None, max_length=200)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=32)

    def to_entity(self) -> CustomerContact:
        return CustomerContact(name=self.name, email=self.email, phone=self.phone)


class PendingPaymentCreateDTO(DTOBase):
    """结账发起：金额由服务端根据行项目重新计算"""
    provider: str = Field(..., min_length=1, max_length=50)
    currency: Optional[str] = Field(None, description="默认使用店铺货币")
    items: list[CartLineItemDTO] = Field(..., min_length=1)
    customer: CustomerDTO = Field(default_factory=CustomerDTO)
    discount_amount: condecimal(ge=0, decimal_places=2) = Decimal("0")  # type: ignore[valid-type]
    shipping_cost: condecimal(ge=0, decimal_places=2) = Decimal("0")  # type: ignore[valid-type]
    credit_used: condecimal(ge=0, decimal_places=2) = Decimal("0")  # type: ignore[valid-type]
    order_reference: Optional[str] = Field(None, max_length=64)
    correlation_id: Optional[str] = Field(None, max_length=200)
    ttl_minutes: Optional[int] = Field(None, gt=0, le=24 * 60)

    @field_validator("provider")
    @classmethod
    def _lower_provider(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        u = v.upper()
        if len(u) != 3 or not u.isalpha():
            raise ValueError("currency must be ISO-4217 alpha-3")
        return u


class CorrelationAttachDTO(DTOBase):
    correlation_id: str = Field(..., min_length=1, max_length=200)


class PendingPaymentResponseDTO(DTOBase):
    id: str
    store_id: int
    provider: str
    status: str
    correlation_id: Optional[str]
    order_reference: Optional[str]
    currency: str
    items: list[CartLineItemDTO]
    customer: dict[str, Optional[str]]
    subtotal: Decimal
    discount_amount: Decimal
    shipping_cost: Decimal
    credit_used: Decimal
    expected_total: Decimal
    payment_details: dict[str, Any]
    failure_reason: Optional[str]
    expires_at: Optional[datetime]
    confirmed_at: Optional[datetime]
    consumed_at: Optional[datetime]
    created_at: Optional[datetime]

    @classmethod
    def from_entity(cls, payment: PendingPayment) -> "PendingPaymentResponseDTO":
        return cls(
            id=payment.id,
            store_id=payment.store_id,
            provider=payment.provider,
            status=payment.status.value,
            correlation_id=payment.correlation_id,
            order_reference=payment.order_reference,
            currency=payment.currency,
            items=[CartLineItemDTO.from_entity(i) for i in payment.items],
            customer=payment.customer.to_dict(),
            subtotal=payment.subtotal,
            discount_amount=payment.discount_amount,
            shipping_cost=payment.shipping_cost,
            credit_used=payment.credit_used,
            expected_total=payment.expected_total,
            payment_details=payment.payment_details,
            failure_reason=payment.failure_reason,
            expires_at=payment.expires_at,
            confirmed_at=payment.confirmed_at,
            consumed_at=payment.consumed_at,
            created_at=payment.created_at,
        )


# ============================================================================
# 支付渠道配置
# ============================================================================


class ProviderConfigCreateDTO(DTOBase):
    provider: str = Field(..., min_length=1, max_length=50)
    display_name: Optional[str] = Field(None, max_length=100)
    credentials: dict[str, Any] = Field(default_factory=dict)
    settings: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    test_mode: bool = True

    @field_validator("provider")
    @classmethod
    def _lower_provider(cls, v: str) -> str:
        return v.strip().lower()


class ProviderConfigUpdateDTO(DTOBase):
    """部分更新；credentials 中的掩码值表示保持原值"""
    display_name: Optional[str] = Field(None, max_length=100)
    credentials: Optional[dict[str, Any]] = None
    settings: Optional[dict[str, Any]] = None
    is_active: Optional[bool] = None
    test_mode: Optional[bool] = None


class ProviderConfigResponseDTO(DTOBase):
    id: int
    provider: str
    display_name: Optional[str]
    credentials: dict[str, Any]
    settings: dict[str, Any]
    is_active: bool
    is_default: bool
    test_mode: bool
    total_transactions: int
    total_volume: Decimal
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_entity(cls, config: PaymentProviderConfig) -> "ProviderConfigResponseDTO":
        return cls(
            id=config.id,
            provider=config.provider,
            display_name=config.display_name,
            credentials=config.masked_credentials(),
            settings=config.settings,
            is_active=config.is_active,
            is_default=config.is_default,
            test_mode=config.test_mode,
            total_transactions=config.total_transactions,
            total_volume=config.total_volume,
            created_at=config.created_at,
            updated_at=config.updated_at,
        )


# ============================================================================
# 退款
# ============================================================================


class OrderRefundDTO(DTOBase):
    amount: Optional[condecimal(gt=0, decimal_places=2)] = Field(  # type: ignore[valid-type]
        None, description="为空时退还全部剩余可退金额"
    )
    reason: Optional[str] = Field(None, max_length=500)


class RefundResponseDTO(DTOBase):
    order_id: int
    financial_status: str
    refund_transaction_id: int
    refund_id: Optional[str]
    amount: Decimal
    currency: str
    remaining_refundable: Decimal

    @classmethod
    def build(cls, order: Order, *, refund_transaction_id: int, refund_id: Optional[str],
              amount: Decimal, remaining: Decimal) -> "RefundResponseDTO":
        return cls(
            order_id=order.id,
            financial_status=order.financial_status.value,
            refund_transaction_id=refund_transaction_id,
            refund_id=refund_id,
            amount=amount,
            currency=order.currency,
            remaining_refundable=remaining,
        )
