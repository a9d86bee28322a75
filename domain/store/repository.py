"""Repository abstraction for stores."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from .entity import Store


class StoreRepository(ABC):
    """Read access to tenants."""

    @abstractmethod
    async def get_by_slug(self, slug: str) -> Optional[Store]:
        ...

    @abstractmethod
    async def get_by_id(self, store_id: int) -> Optional[Store]:
        ...

    @abstractmethod
    async def create(self, store: Store) -> Store:
        ...
