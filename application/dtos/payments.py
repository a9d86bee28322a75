"""
Payment DTOs (Pydantic v2) used at application boundaries.

`CallbackResult` is the canonical shape every gateway adapter produces; nothing
after the callback normalizer branches on the gateway.
"""
from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field, field_validator
from pydantic.types import condecimal

from domain.payment.entity import ReconciliationOutcome


class CallbackStatus(str, Enum):
    SUCCESS = "success"
    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_final(self) -> bool:
        return self in (CallbackStatus.SUCCESS, CallbackStatus.FAILED, CallbackStatus.CANCELLED)


class CallbackResult(BaseModel):
    provider: str
    success: bool = False
    status: CallbackStatus = CallbackStatus.PENDING
    provider_transaction_id: Optional[str] = None
    # gateway-issued request/session id (PayPlus page_request_uid, PayPal order id)
    correlation_id: Optional[str] = None
    order_reference: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    approval_number: Optional[str] = None
    card_brand: Optional[str] = None
    card_last_four: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)
    # None: no lookup attempted; True/False: outcome of the server-to-server lookup
    verified: Optional[bool] = None


class WebhookValidation(BaseModel):
    is_valid: bool
    error: Optional[str] = None


class RefundRequest(BaseModel):
    provider_transaction_id: str
    amount: condecimal(gt=0)  # type: ignore[valid-type]
    currency: str = Field(default="ILS")
    reason: Optional[str] = None
    order_id: Optional[int] = None
    idempotency_key: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _upper_and_validate_currency_refund(cls, v: str) -> str:
        u = (v or "").upper()
        if len(u) != 3 or not u.isalpha():
            raise ValueError("currency must be ISO-4217 alpha-3")
        return u


class RefundResult(BaseModel):
    success: bool
    refund_id: Optional[str] = None
    amount: Optional[Decimal] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class ReconciliationResult(BaseModel):
    outcome: ReconciliationOutcome
    provider: Optional[str] = None
    pending_payment_id: Optional[str] = None
    pending_status: Optional[str] = None
    transaction_id: Optional[int] = None
    message: Optional[str] = None

    @property
    def is_success(self) -> bool:
        """重定向场景下是否展示成功页"""
        if self.outcome in (ReconciliationOutcome.CONFIRMED, ReconciliationOutcome.IN_PROGRESS):
            return True
        return self.outcome == ReconciliationOutcome.ALREADY_PROCESSED and self.pending_status == "confirmed"
