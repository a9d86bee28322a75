"""
Factory for payment gateway clients.
"""
from __future__ import annotations

from typing import Optional

from application.ports.payment_gateway import PaymentGateway
from domain.payment.entity import PaymentProviderConfig
from domain.payment.service import UnsupportedProviderError

PROVIDER_ALIASES = {
    "payplus": "payplus",
    "paypal": "paypal",
    "pelecard": "pelecard",
    "quick_payments": "quick_payments",
    "quick-payments": "quick_payments",
    "quick": "quick_payments",
    "payme": "quick_payments",
}

SUPPORTED_PROVIDERS = frozenset(PROVIDER_ALIASES.values())


def canonical_provider(provider: Optional[str]) -> str:
    name = PROVIDER_ALIASES.get((provider or "").strip().lower())
    if not name:
        raise UnsupportedProviderError(provider)
    return name


def get_payment_gateway(provider: str, config: Optional[PaymentProviderConfig] = None, **kwargs) -> PaymentGateway:
    name = canonical_provider(provider)
    if name == "payplus":
        from .payplus_client import PayPlusClient
        gateway = PayPlusClient(**kwargs)
    elif name == "paypal":
        from .paypal_client import PayPalClient
        gateway = PayPalClient(**kwargs)
    elif name == "pelecard":
        from .pelecard_client import PelecardClient
        gateway = PelecardClient(**kwargs)
    else:
        from .quick_payments_client import QuickPaymentsClient
        gateway = QuickPaymentsClient(**kwargs)
    if config is not None:
        gateway.configure(config)
    return gateway


class DefaultPaymentGatewayFactory:
    """PaymentGatewayFactory backed by the adapters in this package."""

    def __init__(self, **client_kwargs) -> None:
        self._client_kwargs = client_kwargs

    def canonical(self, provider: Optional[str]) -> str:
        return canonical_provider(provider)

    def create(self, provider: str, config: Optional[PaymentProviderConfig] = None) -> PaymentGateway:
        return get_payment_gateway(provider, config, **self._client_kwargs)
