"""Order domain exports (financial state only)."""
from .entity import Order, OrderFinancialStatus
from .repository import OrderRepository

__all__ = ["Order", "OrderFinancialStatus", "OrderRepository"]
