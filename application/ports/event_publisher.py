"""
Payment event publisher port.

Publishing is fire-and-forget from the reconciliation path; implementations
should not block on downstream consumers.
"""
from __future__ import annotations

from typing import Protocol, runtime_checkable

from domain.payment.events import PaymentEvent


@runtime_checkable
class PaymentEventPublisher(Protocol):
    async def publish(self, event: PaymentEvent) -> None: ...
