"""Infrastructure models package exports."""
from .base import Base, metadata
from .store import StoreModel, OrderModel
from .payment import PendingPaymentModel, PaymentTransactionModel, PaymentProviderConfigModel

__all__ = [
    "Base",
    "metadata",
    "StoreModel",
    "OrderModel",
    "PendingPaymentModel",
    "PaymentTransactionModel",
    "PaymentProviderConfigModel",
]
