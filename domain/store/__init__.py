"""Store (tenant) domain exports."""
from .entity import Store
from .repository import StoreRepository

__all__ = ["Store", "StoreRepository"]
