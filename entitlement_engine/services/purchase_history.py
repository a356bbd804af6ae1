"""
Purchase History Service - Owner-only reads and deletes of purchase records.

Every call goes through AuthorizationGuard before touching the store.
"""

from structlog import get_logger

from entitlement_engine.exceptions import DatabaseError
from entitlement_engine.models.domain import Purchase
from entitlement_engine.models.result import (
    EngineError,
    Err,
    ErrorCode,
    Ok,
    Result,
    error_from_exception,
    fail,
)
from entitlement_engine.observability.metrics import metrics
from entitlement_engine.providers.protocols import PurchaseStore
from entitlement_engine.services.authorization import AuthorizationGuard
from entitlement_engine.services.feature_gating import FeatureGatingService

logger = get_logger(__name__)


class PurchaseHistoryService:
    """Authorized access to a user's stored purchases."""

    def __init__(
        self,
        store: PurchaseStore,
        guard: AuthorizationGuard,
        gating: FeatureGatingService,
    ) -> None:
        self.store = store
        self.guard = guard
        self.gating = gating

    async def get_history(self, user_id: str) -> Result[list[Purchase], EngineError]:
        """Get a user's purchases, newest first."""
        decision = self.guard.can_access_history(user_id)
        if isinstance(decision, Err):
            return decision
        if not decision.value:
            return fail(ErrorCode.PERMISSION_DENIED, "Cannot view another user's purchases")

        try:
            purchases = await self.store.get_all_purchases(user_id)
        except DatabaseError as exc:
            logger.error("purchase_history_read_failed", user_id=user_id, error=str(exc))
            metrics.record_error(ErrorCode.DB_ERROR.value, "get_history")
            return Err(error_from_exception(exc))

        owned = [p for p in purchases if p.user_id == user_id]
        owned.sort(key=lambda p: p.purchased_at, reverse=True)
        return Ok(owned)

    async def get_purchase(
        self, user_id: str, transaction_id: str
    ) -> Result[Purchase | None, EngineError]:
        """
        Get one purchase.

        A transaction owned by somebody else is reported as None, so callers
        cannot discover other users' transaction IDs.
        """
        decision = self.guard.can_access_history(user_id)
        if isinstance(decision, Err):
            return decision
        if not decision.value:
            return fail(ErrorCode.PERMISSION_DENIED, "Cannot view another user's purchases")
        if not isinstance(transaction_id, str) or not transaction_id.strip():
            return fail(ErrorCode.INVALID_INPUT, "Transaction ID cannot be empty")

        try:
            purchase = await self.store.get_purchase(transaction_id)
        except DatabaseError as exc:
            logger.error("purchase_read_failed", transaction_id=transaction_id, error=str(exc))
            metrics.record_error(ErrorCode.DB_ERROR.value, "get_purchase")
            return Err(error_from_exception(exc))

        if purchase is None or purchase.user_id != user_id:
            return Ok(None)
        return Ok(purchase)

    async def delete_purchase(self, user_id: str, transaction_id: str) -> Result[bool, EngineError]:
        """
        Delete one purchase record.

        Returns:
            Ok(True) if deleted, Ok(False) if there was nothing to delete
        """
        decision = self.guard.can_delete_purchase(user_id, transaction_id)
        if isinstance(decision, Err):
            return decision
        if not decision.value:
            return fail(ErrorCode.PERMISSION_DENIED, "Cannot delete another user's purchases")

        try:
            existing = await self.store.get_purchase(transaction_id)
            if existing is None or existing.user_id != user_id:
                return Ok(False)
            deleted = await self.store.delete_purchase(transaction_id)
        except DatabaseError as exc:
            logger.error("purchase_delete_failed", transaction_id=transaction_id, error=str(exc))
            metrics.record_error(ErrorCode.DB_ERROR.value, "delete_purchase")
            return Err(error_from_exception(exc))

        self.gating.forget_purchase(user_id, transaction_id)
        logger.info("purchase_deleted", user_id=user_id, transaction_id=transaction_id, deleted=deleted)
        return Ok(deleted)
