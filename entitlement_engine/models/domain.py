"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed dataclasses.
"""

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class FeatureLevel(str, Enum):
    """Feature access level."""

    FREE = "free"
    PREMIUM = "premium"


class PurchaseState(str, Enum):
    """States of a single purchase attempt."""

    IDLE = "idle"
    PAYING = "paying"
    VERIFYING = "verifying"
    PERSISTING = "persisting"
    UNLOCKED = "unlocked"
    CANCELLED = "cancelled"
    NETWORK_ERROR = "network_error"
    VERIFICATION_FAILED = "verification_failed"
    DB_ERROR = "db_error"
    UNKNOWN_ERROR = "unknown_error"

    @property
    def is_terminal(self) -> bool:
        """Whether the attempt has finished (successfully or not)."""
        return self not in (
            PurchaseState.IDLE,
            PurchaseState.PAYING,
            PurchaseState.VERIFYING,
            PurchaseState.PERSISTING,
        )


@dataclass(frozen=True)
class UserContext:
    """Currently authenticated principal, supplied by the host session."""

    id: str
    email: str | None = None


@dataclass(frozen=True)
class FeatureDefinition:
    """Static catalog entry for a gated feature."""

    id: str
    level: FeatureLevel
    name: str
    description: str
    required_product_id: str | None = None

    def __post_init__(self) -> None:
        """Validate feature definition."""
        if not self.id:
            raise ValueError("Feature ID required")
        if not self.name:
            raise ValueError("Name required")
        if self.level == FeatureLevel.PREMIUM and not self.required_product_id:
            raise ValueError(f"Premium feature {self.id} requires a product ID")

    @property
    def is_free(self) -> bool:
        return self.level == FeatureLevel.FREE


@dataclass(frozen=True)
class RawReceipt:
    """Unverified receipt returned by the payment provider."""

    transaction_id: str
    product_id: str
    receipt_data: str
    purchased_at: datetime
    price: Decimal = Decimal("0")
    currency_code: str = "USD"


@dataclass(frozen=True)
class VerifiedReceipt:
    """Receipt whose signature and claims were accepted by the verifier."""

    transaction_id: str
    product_id: str
    purchased_at: datetime
    verified_at: datetime


@dataclass(frozen=True)
class Purchase:
    """
    One-time purchase record.

    Invariants:
    - unlocked_features may only be non-empty when is_verified
    - synced_at is set whenever is_synced
    """

    transaction_id: str
    user_id: str
    product_id: str
    purchased_at: datetime
    price: Decimal
    currency_code: str
    is_verified: bool = False
    is_synced: bool = False
    synced_at: datetime | None = None
    verified_at: datetime | None = None
    unlocked_features: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        """Validate purchase constraints."""
        if not self.transaction_id:
            raise ValueError("transaction_id cannot be empty")
        if not self.user_id:
            raise ValueError("user_id cannot be empty")
        if not self.product_id:
            raise ValueError("product_id cannot be empty")
        if self.price < 0:
            raise ValueError(f"Price cannot be negative: {self.price}")
        if len(self.currency_code) != 3:
            raise ValueError(f"Invalid currency code: {self.currency_code}")
        if self.is_synced and self.synced_at is None:
            raise ValueError("synced_at is required when is_synced is set")
        if self.unlocked_features and not self.is_verified:
            raise ValueError("Unverified purchase cannot unlock features")
        if not isinstance(self.unlocked_features, frozenset):
            object.__setattr__(self, "unlocked_features", frozenset(self.unlocked_features))

    def grants(self, feature: FeatureDefinition) -> bool:
        """Whether this purchase entitles its owner to the feature."""
        if not self.is_verified:
            return False
        if feature.id in self.unlocked_features:
            return True
        return (
            feature.required_product_id is not None
            and self.product_id == feature.required_product_id
        )

    def with_reverification(
        self,
        verified_at: datetime,
        unlocked_features: frozenset[str],
        synced_at: datetime | None = None,
    ) -> "Purchase":
        """
        Copy with refreshed verification and sync metadata.

        Identity, product and price are never touched.
        """
        return replace(
            self,
            is_verified=True,
            verified_at=verified_at,
            is_synced=True,
            synced_at=synced_at or utc_now(),
            unlocked_features=frozenset(unlocked_features),
        )

    def differs_in_state(self, other: "Purchase") -> bool:
        """Whether verification, sync state or unlocked features differ."""
        return (
            self.is_verified != other.is_verified
            or self.is_synced != other.is_synced
            or self.unlocked_features != other.unlocked_features
        )


@dataclass
class RetryRecord:
    """Verification failure tracking for one transaction (mutable, limiter-owned)."""

    failure_count: int
    last_failure_at: datetime
    reset_at: datetime


@dataclass(frozen=True)
class RetryStatus:
    """Snapshot of a transaction's retry state."""

    transaction_id: str
    count: int
    is_limited: bool
    requires_manual_intervention: bool
    last_failure_at: datetime | None = None
    reset_at: datetime | None = None

    @classmethod
    def empty(cls, transaction_id: str = "") -> "RetryStatus":
        """Zero status for unknown or invalid transactions."""
        return cls(
            transaction_id=transaction_id,
            count=0,
            is_limited=False,
            requires_manual_intervention=False,
        )


@dataclass(frozen=True)
class RetryStatistics:
    """Aggregate view over all tracked transactions."""

    total_tracked: int
    limited_count: int
    average_count: float
    max_count: int


@dataclass(frozen=True)
class RestoreSummary:
    """Outcome of a restore run."""

    restored_count: int
    new_count: int
    updated_count: int
    skipped_count: int = 0
    # Local purchases the platform no longer reports
    orphaned_transaction_ids: tuple[str, ...] = ()
    deleted_count: int = 0
    failed_count: int = 0

    def __post_init__(self) -> None:
        """Validate counts."""
        if self.restored_count != self.new_count + self.updated_count:
            raise ValueError("restored_count must equal new_count + updated_count")
        if self.deleted_count + self.failed_count > len(self.orphaned_transaction_ids):
            raise ValueError("deleted_count + failed_count cannot exceed the orphan count")

    @property
    def orphaned_count(self) -> int:
        return len(self.orphaned_transaction_ids)

    @property
    def is_empty(self) -> bool:
        """Nothing was restored; callers show an informational message."""
        return self.restored_count == 0


@dataclass
class CachedVerification:
    """Verification result kept for use while the verifier is unreachable."""

    transaction_id: str
    receipt_data: str = field(repr=False)
    verified: VerifiedReceipt
    cached_at: datetime
    expires_at: datetime
    requires_revalidation: bool = False
    revalidation_requested_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class OfflineCacheStatistics:
    """Aggregate view over the offline verification cache."""

    total_cached: int
    pending_revalidation: int
    expired_count: int


@dataclass(frozen=True)
class RevalidationSummary:
    """Outcome of re-verifying cached results after connectivity returns."""

    revalidated_count: int
    rejected_transaction_ids: tuple[str, ...] = ()
    remaining_count: int = 0
