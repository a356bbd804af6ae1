"""
Feature Gating Service - Decides whether the current user may use a feature.

Fail closed: unknown IDs, missing principals and any internal error deny
access. Free features are always accessible.

Two entry points:
- can_access_sync: cache only, never performs I/O or takes a lock
- can_access: reloads the user's purchases from the store, then decides
"""

from structlog import get_logger

from entitlement_engine.models.domain import FeatureDefinition, FeatureLevel, Purchase
from entitlement_engine.models.result import EngineError, ErrorCode, Ok, Result, fail
from entitlement_engine.observability.metrics import metrics
from entitlement_engine.providers.protocols import ProductCatalog, PurchaseStore
from entitlement_engine.services.authorization import AuthorizationGuard

logger = get_logger(__name__)


class FeatureGatingService:
    """
    Feature access control backed by verified purchases.

    Usage:
        gating = FeatureGatingService(catalog, store, guard)

        # Render path (synchronous, cache only)
        if gating.can_access_sync("export_data"):
            ...

        # Request path (fresh store lookup)
        if await gating.can_access("export_data"):
            ...
    """

    def __init__(
        self,
        catalog: ProductCatalog,
        store: PurchaseStore,
        guard: AuthorizationGuard,
    ) -> None:
        self.catalog = catalog
        self.store = store
        self.guard = guard
        # user_id -> {transaction_id: Purchase}; inner dicts are never mutated
        # after publication, updates swap in a new dict.
        self._snapshots: dict[str, dict[str, Purchase]] = {}
        # Bumped by register_purchase/forget_purchase; loads compare it to
        # find changes that landed while they were reading the store.
        self._generations: dict[str, int] = {}
        self._changes: dict[str, dict[str, tuple[int, Purchase | None]]] = {}
        self._loading: dict[str, int] = {}
        self._load_sequence = 0
        self._published: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Catalog queries
    # ------------------------------------------------------------------

    def get_feature_definition(self, feature_id: str) -> Result[FeatureDefinition, EngineError]:
        """Look up a feature definition."""
        if not isinstance(feature_id, str) or not feature_id:
            return fail(ErrorCode.INVALID_INPUT, "Feature ID cannot be empty")

        feature = self.catalog.get(feature_id)
        if feature is None:
            return fail(ErrorCode.NOT_FOUND, f"Unknown feature: {feature_id}")
        return Ok(feature)

    def get_unlocked_features_by_product(self, product_id: str) -> list[FeatureDefinition]:
        """Get all features a product unlocks ([] for invalid input)."""
        if not isinstance(product_id, str) or not product_id:
            return []
        try:
            return list(self.catalog.for_product(product_id))
        except Exception:
            logger.exception("unlocked_features_lookup_failed", product_id=product_id)
            return []

    def get_features_by_level(self, level: FeatureLevel) -> list[FeatureDefinition]:
        """Get features at an access level."""
        return [f for f in self.catalog.all() if f.level == level]

    def get_required_product(self, feature_id: str) -> str | None:
        """Get the product a paywall should offer for a feature."""
        feature = self.catalog.get(feature_id) if isinstance(feature_id, str) else None
        return feature.required_product_id if feature else None

    # ------------------------------------------------------------------
    # Access decisions
    # ------------------------------------------------------------------

    def _lookup(self, feature_id: object) -> FeatureDefinition | None:
        if not isinstance(feature_id, str) or not feature_id:
            return None
        return self.catalog.get(feature_id)

    @staticmethod
    def _granted(feature: FeatureDefinition, purchases: dict[str, Purchase] | None) -> bool:
        if feature.is_free:
            return True
        if feature.level != FeatureLevel.PREMIUM or not purchases:
            return False
        return any(purchase.grants(feature) for purchase in purchases.values())

    def can_access_sync(self, feature_id: str) -> bool:
        """
        Check access using cached purchases only.

        Safe to call during synchronous rendering: no I/O, no locks.
        Premium features are denied until the cache has been populated by
        can_access, refresh or a completed purchase.
        """
        try:
            feature = self._lookup(feature_id)
            if feature is None:
                return False

            if feature.is_free:
                granted = True
            else:
                principal = self.guard.current_user()
                snapshot = self._snapshots.get(principal.id) if principal else None
                granted = self._granted(feature, snapshot)

            metrics.record_access_check("sync", granted)
            return granted
        except Exception:
            logger.exception("feature_access_sync_failed", feature_id=feature_id)
            return False

    async def can_access(self, feature_id: str) -> bool:
        """Check access against a fresh read of the user's purchases."""
        try:
            feature = self._lookup(feature_id)
            if feature is None:
                return False

            if feature.is_free:
                metrics.record_access_check("async", True)
                return True

            snapshot = await self._load_snapshot()
            granted = self._granted(feature, snapshot)

            logger.debug("feature_access_checked", feature_id=feature_id, granted=granted)
            metrics.record_access_check("async", granted)
            return granted
        except Exception:
            logger.exception("feature_access_failed", feature_id=feature_id)
            return False

    # ------------------------------------------------------------------
    # Cache maintenance
    # ------------------------------------------------------------------

    def _record_change(self, user_id: str, transaction_id: str, purchase: Purchase | None) -> None:
        generation = self._generations.get(user_id, 0) + 1
        self._generations[user_id] = generation
        # Only loads already reading the store need to replay this change.
        if user_id in self._loading:
            self._changes.setdefault(user_id, {})[transaction_id] = (generation, purchase)

    async def _load_snapshot(self) -> dict[str, Purchase] | None:
        """
        Read the current user's purchases through the guard and publish them.

        Returns None (deny) when there is no principal or access is refused.
        Store errors propagate to the caller.

        Purchases registered or forgotten while the read was pending are
        replayed onto the loaded snapshot, and a load never replaces a
        snapshot published by a load that started after it.
        """
        principal = self.guard.current_user()
        if principal is None:
            return None

        decision = self.guard.can_access_history(principal.id)
        if not isinstance(decision, Ok) or not decision.value:
            return None

        user_id = principal.id
        started_at = self._generations.get(user_id, 0)
        self._load_sequence += 1
        sequence = self._load_sequence
        self._loading[user_id] = self._loading.get(user_id, 0) + 1
        try:
            purchases = await self.store.get_all_purchases(user_id)
        finally:
            replay = self._changes.get(user_id, {})
            self._loading[user_id] -= 1
            if not self._loading[user_id]:
                del self._loading[user_id]
                self._changes.pop(user_id, None)

        snapshot = {
            p.transaction_id: p
            for p in purchases
            if p.user_id == user_id and p.is_verified
        }
        for transaction_id, (generation, purchase) in replay.items():
            if generation <= started_at:
                continue
            if purchase is None:
                snapshot.pop(transaction_id, None)
            else:
                snapshot[transaction_id] = purchase

        if sequence > self._published.get(user_id, 0):
            self._snapshots[user_id] = snapshot
            self._published[user_id] = sequence
        else:
            logger.debug("entitlement_snapshot_superseded", user_id=user_id)
        return snapshot

    async def refresh(self) -> bool:
        """Reload the current user's purchases into the cache. False on failure."""
        try:
            return await self._load_snapshot() is not None
        except Exception:
            logger.exception("entitlement_cache_refresh_failed")
            return False

    def register_purchase(self, purchase: Purchase) -> None:
        """Make a persisted, verified purchase visible to can_access_sync."""
        if not purchase.is_verified:
            return
        self._record_change(purchase.user_id, purchase.transaction_id, purchase)
        current = self._snapshots.get(purchase.user_id, {})
        self._snapshots[purchase.user_id] = {**current, purchase.transaction_id: purchase}

    def forget_purchase(self, user_id: str, transaction_id: str) -> None:
        """Drop a purchase from the cache (after deletion)."""
        self._record_change(user_id, transaction_id, None)
        current = self._snapshots.get(user_id)
        if current and transaction_id in current:
            self._snapshots[user_id] = {
                txn: p for txn, p in current.items() if txn != transaction_id
            }

    def invalidate(self, user_id: str | None = None) -> None:
        """Drop cached purchases for one user, or for everyone."""
        if user_id is None:
            self._snapshots = {}
        else:
            self._snapshots.pop(user_id, None)
