"""Store (tenant) entity.

Stores are owned by the store-administration side of the platform; the
reconciliation engine only resolves them by slug to route callbacks.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class Store:
    id: Optional[int]
    slug: str
    name: str
    currency: str = "ILS"
    is_active: bool = True
    created_at: Optional[datetime] = None
