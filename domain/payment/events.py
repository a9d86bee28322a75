"""
Payment domain events.

Dataclass events record payment lifecycle facts for downstream handling
(notification emails, order creation hooks). Domain remains free of
infrastructure imports; publishing happens through an application port.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid


@dataclass
class PaymentEvent:
    store_id: int
    provider: str
    pending_payment_id: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_payload(self) -> dict:
        payload = asdict(self)
        payload["occurred_at"] = self.occurred_at.isoformat()
        payload["event"] = self.name
        return payload


@dataclass
class PaymentConfirmed(PaymentEvent):
    amount: str = ""
    currency: str = ""
    customer_email: Optional[str] = None


@dataclass
class PaymentFailed(PaymentEvent):
    reason: Optional[str] = None


@dataclass
class LatePaymentReceived(PaymentEvent):
    """PendingPayment 已过期后才收到成功扣款，需要人工退款"""
    amount: str = ""
    currency: str = ""


@dataclass
class PaymentRefunded(PaymentEvent):
    order_id: Optional[int] = None
    refund_id: Optional[str] = None
    amount: str = ""
    currency: str = ""
