"""
Entitlement Engine - Explicit container wiring every component once.

Usage:
    async with EntitlementEngine.create(
        payment_provider=provider,
        verifier=JWSReceiptVerifier.from_settings(settings),
        store=SQLAlchemyPurchaseStore(get_session_factory()),
        current_user=session.current_user,
    ) as engine:
        result = await engine.purchase_product("premium_unlock")
        if engine.can_access_sync("advanced_search"):
            ...
"""

from types import TracebackType

from structlog import get_logger

from entitlement_engine.config import Settings
from entitlement_engine.config import settings as default_settings
from entitlement_engine.models.domain import Purchase, RestoreSummary, RevalidationSummary
from entitlement_engine.models.result import EngineError, Result
from entitlement_engine.providers.protocols import (
    CurrentUserProvider,
    OperatorCheck,
    PaymentProvider,
    ProductCatalog,
    PurchaseStore,
    ReceiptVerifier,
)
from entitlement_engine.services.authorization import AuthorizationGuard
from entitlement_engine.services.feature_catalog import default_catalog
from entitlement_engine.services.feature_gating import FeatureGatingService
from entitlement_engine.services.manual_review import ManualReviewService
from entitlement_engine.services.offline_validator import (
    OfflineFallbackVerifier,
    OfflineVerificationCache,
)
from entitlement_engine.services.purchase_history import PurchaseHistoryService
from entitlement_engine.services.purchase_orchestrator import PurchaseOrchestrator
from entitlement_engine.services.restore_orchestrator import RestoreOrchestrator
from entitlement_engine.services.retry_limiter import RetryLimiter

logger = get_logger(__name__)


def _no_operator() -> bool:
    return False


class EntitlementEngine:
    """Owns the limiter, guard, gating cache, offline cache and both orchestrators."""

    def __init__(
        self,
        store: PurchaseStore,
        limiter: RetryLimiter,
        guard: AuthorizationGuard,
        gating: FeatureGatingService,
        purchases: PurchaseOrchestrator,
        restores: RestoreOrchestrator,
        history: PurchaseHistoryService,
        review: ManualReviewService,
        offline: OfflineFallbackVerifier | None = None,
    ) -> None:
        self.store = store
        self.limiter = limiter
        self.guard = guard
        self.gating = gating
        self.purchases = purchases
        self.restores = restores
        self.history = history
        self.review = review
        self.offline = offline
        self._closed = False

    @classmethod
    def create(
        cls,
        payment_provider: PaymentProvider,
        verifier: ReceiptVerifier,
        store: PurchaseStore,
        current_user: CurrentUserProvider,
        is_operator: OperatorCheck = _no_operator,
        catalog: ProductCatalog = default_catalog,
        settings: Settings | None = None,
    ) -> "EntitlementEngine":
        """Construct every component from its collaborators."""
        config = settings or default_settings

        limiter = RetryLimiter.from_settings(config)
        guard = AuthorizationGuard(current_user)
        gating = FeatureGatingService(catalog, store, guard)

        offline: OfflineFallbackVerifier | None = None
        if config.offline_cache_enabled:
            offline = OfflineFallbackVerifier(
                verifier, OfflineVerificationCache.from_settings(config)
            )
            verifier = offline

        engine = cls(
            store=store,
            limiter=limiter,
            guard=guard,
            gating=gating,
            purchases=PurchaseOrchestrator(
                payment_provider, verifier, store, limiter, gating, guard
            ),
            restores=RestoreOrchestrator(
                payment_provider,
                verifier,
                store,
                gating,
                guard,
                delete_orphans=config.restore_delete_orphans,
            ),
            history=PurchaseHistoryService(store, guard, gating),
            review=ManualReviewService(limiter, is_operator),
            offline=offline,
        )
        logger.info(
            "entitlement_engine_created",
            max_retries=limiter.max_retries,
            reset_window_seconds=int(limiter.reset_window.total_seconds()),
            offline_cache_enabled=offline is not None,
        )
        return engine

    # ------------------------------------------------------------------
    # Shortcuts for the common paths
    # ------------------------------------------------------------------

    def can_access_sync(self, feature_id: str) -> bool:
        return self.gating.can_access_sync(feature_id)

    async def can_access(self, feature_id: str) -> bool:
        return await self.gating.can_access(feature_id)

    async def purchase_product(self, product_id: str) -> Result[Purchase, EngineError]:
        return await self.purchases.purchase_product(product_id)

    async def restore_purchases(self) -> Result[RestoreSummary, EngineError]:
        return await self.restores.restore_purchases()

    async def on_network_restored(self) -> RevalidationSummary:
        """Re-verify results served from the offline cache while disconnected."""
        if self.offline is None:
            return RevalidationSummary(revalidated_count=0)
        return await self.offline.on_network_restored()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Cancel in-flight attempts and close the store if it can be closed."""
        if self._closed:
            return
        self._closed = True

        await self.purchases.close()
        await self.restores.close()

        close = getattr(self.store, "close", None)
        if callable(close):
            await close()
        logger.info("entitlement_engine_closed")

    async def __aenter__(self) -> "EntitlementEngine":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
