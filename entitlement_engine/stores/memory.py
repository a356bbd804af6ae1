"""
In-memory purchase store.

Suitable for tests and single-process hosts without persistence. Records are
immutable Purchase values, so they are shared without copying.
"""

import asyncio

from entitlement_engine.exceptions import OwnershipConflictError
from entitlement_engine.models.domain import Purchase


class InMemoryPurchaseStore:
    """Dict-backed PurchaseStore keyed by transaction ID."""

    def __init__(self, purchases: list[Purchase] | None = None) -> None:
        self._purchases: dict[str, Purchase] = {p.transaction_id: p for p in purchases or []}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._purchases)

    async def get_all_purchases(self, user_id: str) -> list[Purchase]:
        async with self._lock:
            return [p for p in self._purchases.values() if p.user_id == user_id]

    async def get_purchase(self, transaction_id: str) -> Purchase | None:
        async with self._lock:
            return self._purchases.get(transaction_id)

    async def insert_or_update_purchase(self, purchase: Purchase) -> Purchase:
        async with self._lock:
            current = self._purchases.get(purchase.transaction_id)
            if current is not None and current.user_id != purchase.user_id:
                raise OwnershipConflictError(purchase.transaction_id, current.user_id)
            self._purchases[purchase.transaction_id] = purchase
            return purchase

    async def delete_purchase(self, transaction_id: str) -> bool:
        async with self._lock:
            return self._purchases.pop(transaction_id, None) is not None
