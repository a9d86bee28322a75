"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from typing import Mapping, Optional, Protocol, runtime_checkable

from application.dtos.payments import (
    CallbackResult,
    RefundRequest,
    RefundResult,
    WebhookValidation,
)
from domain.payment.entity import PaymentProviderConfig


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for third-party payment providers.

    Parsing and validation are pure; only refund and status lookup touch the
    network, and none of the methods raise on gateway misbehaviour.
    """

    provider: str
    # callbacks carry no usable proof; the status lookup is authoritative
    verify_via_lookup: bool

    def configure(self, config: PaymentProviderConfig) -> None: ...

    def validate_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookValidation: ...

    def parse_callback(self, raw_body: bytes) -> CallbackResult: ...

    def parse_redirect(self, params: Mapping[str, str]) -> CallbackResult: ...

    async def get_transaction_status(
        self,
        *,
        provider_transaction_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Optional[CallbackResult]: ...

    async def refund(self, req: RefundRequest) -> RefundResult: ...

    async def aclose(self) -> None: ...


@runtime_checkable
class PaymentGatewayFactory(Protocol):
    """Resolves provider names (and aliases) and builds configured adapters."""

    def canonical(self, provider: Optional[str]) -> str: ...

    def create(self, provider: str, config: Optional[PaymentProviderConfig] = None) -> PaymentGateway: ...
