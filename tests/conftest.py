"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fakes and fixtures for testing:
- Controllable clock and principal
- Payment provider and receipt verifier doubles
- In-memory purchase store
- Fully wired services (limiter, guard, gating, orchestrators)
"""

import asyncio
import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

# Set environment BEFORE importing engine modules
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("METRICS_ENABLED", "true")

from entitlement_engine.exceptions import ReceiptVerificationError
from entitlement_engine.models.domain import (
    Purchase,
    RawReceipt,
    UserContext,
    VerifiedReceipt,
)
from entitlement_engine.services.authorization import AuthorizationGuard
from entitlement_engine.services.feature_catalog import FeatureCatalog
from entitlement_engine.services.feature_gating import FeatureGatingService
from entitlement_engine.services.purchase_history import PurchaseHistoryService
from entitlement_engine.services.purchase_orchestrator import PurchaseOrchestrator
from entitlement_engine.services.restore_orchestrator import RestoreOrchestrator
from entitlement_engine.services.retry_limiter import RetryLimiter
from entitlement_engine.stores.memory import InMemoryPurchaseStore

BASE_TIME = datetime(2025, 1, 8, 12, 0, 0, tzinfo=UTC)


# ============================================================================
# Builders
# ============================================================================


def make_receipt(
    transaction_id: str = "txn_001",
    product_id: str = "premium_unlock",
    receipt_data: str | None = None,
    price: Decimal = Decimal("4.99"),
) -> RawReceipt:
    """Build an unverified receipt (the fake verifier reads the product from receipt_data)."""
    return RawReceipt(
        transaction_id=transaction_id,
        product_id=product_id,
        receipt_data=receipt_data if receipt_data is not None else f"signed:{product_id}",
        purchased_at=BASE_TIME,
        price=price,
        currency_code="USD",
    )


def make_purchase(
    transaction_id: str = "txn_001",
    user_id: str = "alice",
    product_id: str = "premium_unlock",
    is_verified: bool = True,
    unlocked_features: frozenset[str] | None = None,
    purchased_at: datetime = BASE_TIME,
) -> Purchase:
    """Build a stored purchase."""
    if unlocked_features is None:
        unlocked_features = (
            frozenset({"advanced_search", "advanced_analytics"}) if is_verified else frozenset()
        )
    return Purchase(
        transaction_id=transaction_id,
        user_id=user_id,
        product_id=product_id,
        purchased_at=purchased_at,
        price=Decimal("4.99"),
        currency_code="USD",
        is_verified=is_verified,
        verified_at=BASE_TIME if is_verified else None,
        is_synced=True,
        synced_at=BASE_TIME,
        unlocked_features=unlocked_features,
    )


# ============================================================================
# Fakes
# ============================================================================


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime = BASE_TIME) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class FakeSession:
    """Host session holding the current principal."""

    def __init__(self, user: UserContext | None = None) -> None:
        self.user = user

    def current_user(self) -> UserContext | None:
        return self.user


class FakePaymentProvider:
    """
    Scriptable PaymentProvider.

    pay() returns receipts from `receipts` (by product) or raises `pay_error`.
    Set `gate` to an asyncio.Event to hold payments until it is set.
    """

    def __init__(self) -> None:
        self.receipts: dict[str, RawReceipt] = {}
        self.pay_error: Exception | None = None
        self.history: object = []
        self.history_error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.pay_calls: list[str] = []
        self.history_calls: list[str] = []

    async def pay(self, product_id: str) -> RawReceipt:
        self.pay_calls.append(product_id)
        if self.gate is not None:
            await self.gate.wait()
        if self.pay_error is not None:
            raise self.pay_error
        return self.receipts.get(product_id) or make_receipt(
            transaction_id=f"txn_{len(self.pay_calls):03d}", product_id=product_id
        )

    async def list_historical_receipts(self, user_id: str) -> list[RawReceipt]:
        self.history_calls.append(user_id)
        if self.gate is not None:
            await self.gate.wait()
        if self.history_error is not None:
            raise self.history_error
        return self.history  # type: ignore[return-value]


class FakeVerifier:
    """
    Scriptable ReceiptVerifier.

    Transactions listed in `rejected` fail verification; `errors` maps a
    transaction to an exception to raise instead.
    """

    def __init__(self, clock: Callable[[], datetime]) -> None:
        self.clock = clock
        self.rejected: set[str] = set()
        self.errors: dict[str, Exception] = {}
        self.product_override: dict[str, str] = {}
        self.calls: list[str] = []

    async def verify(self, transaction_id: str, receipt_data: str) -> VerifiedReceipt:
        self.calls.append(transaction_id)
        if transaction_id in self.errors:
            raise self.errors[transaction_id]
        if transaction_id in self.rejected:
            raise ReceiptVerificationError(transaction_id, "bad signature")
        product_id = self.product_override.get(transaction_id) or receipt_data.split(":", 1)[-1]
        return VerifiedReceipt(
            transaction_id=transaction_id,
            product_id=product_id,
            purchased_at=BASE_TIME,
            verified_at=self.clock(),
        )


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def alice() -> UserContext:
    return UserContext(id="alice", email="alice@example.com")


@pytest.fixture
def session(alice: UserContext) -> FakeSession:
    """Session with alice logged in."""
    return FakeSession(alice)


@pytest.fixture
def guard(session: FakeSession) -> AuthorizationGuard:
    return AuthorizationGuard(session.current_user)


@pytest.fixture
def catalog() -> FeatureCatalog:
    return FeatureCatalog()


@pytest.fixture
def store() -> InMemoryPurchaseStore:
    return InMemoryPurchaseStore()


@pytest.fixture
def limiter(clock: FakeClock) -> RetryLimiter:
    return RetryLimiter(max_retries=3, reset_window=timedelta(hours=24), clock=clock)


@pytest.fixture
def gating(
    catalog: FeatureCatalog, store: InMemoryPurchaseStore, guard: AuthorizationGuard
) -> FeatureGatingService:
    return FeatureGatingService(catalog, store, guard)


@pytest.fixture
def provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def verifier(clock: FakeClock) -> FakeVerifier:
    return FakeVerifier(clock)


@pytest.fixture
def orchestrator(
    provider: FakePaymentProvider,
    verifier: FakeVerifier,
    store: InMemoryPurchaseStore,
    limiter: RetryLimiter,
    gating: FeatureGatingService,
    guard: AuthorizationGuard,
    clock: FakeClock,
) -> PurchaseOrchestrator:
    return PurchaseOrchestrator(provider, verifier, store, limiter, gating, guard, clock=clock)


@pytest.fixture
def restorer(
    provider: FakePaymentProvider,
    verifier: FakeVerifier,
    store: InMemoryPurchaseStore,
    gating: FeatureGatingService,
    guard: AuthorizationGuard,
    clock: FakeClock,
) -> RestoreOrchestrator:
    return RestoreOrchestrator(provider, verifier, store, gating, guard, clock=clock)


@pytest.fixture
def history(
    store: InMemoryPurchaseStore, guard: AuthorizationGuard, gating: FeatureGatingService
) -> PurchaseHistoryService:
    return PurchaseHistoryService(store, guard, gating)
