"""
Offline Verification Cache.

Keeps recent successful receipt verifications so that a verifier outage does
not lock users out of purchases that were already verified once. Results
served from the cache are flagged for revalidation, and are re-verified as
soon as connectivity returns.

- Entries are keyed by the SHA-256 of the receipt payload
- Entries expire after a fixed TTL; expiry is checked lazily on access
- All reads and writes are serialized by one lock, never held across an await
"""

import hashlib
import threading
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta

from structlog import get_logger

from entitlement_engine.config import Settings
from entitlement_engine.exceptions import ProviderNetworkError, ReceiptVerificationError
from entitlement_engine.models.domain import (
    CachedVerification,
    OfflineCacheStatistics,
    RevalidationSummary,
    VerifiedReceipt,
    utc_now,
)
from entitlement_engine.models.result import EngineError, ErrorCode, Ok, Result, fail
from entitlement_engine.observability.metrics import metrics
from entitlement_engine.providers.protocols import ReceiptVerifier

logger = get_logger(__name__)

DEFAULT_CACHE_TTL = timedelta(hours=24)


def receipt_key(receipt_data: str) -> str:
    """Cache key for a receipt payload."""
    return hashlib.sha256(receipt_data.encode("utf-8")).hexdigest()


def _is_valid(value: object) -> bool:
    return isinstance(value, str) and value != ""


class OfflineVerificationCache:
    """
    In-memory cache of verified receipts.

    Usage:
        cache = OfflineVerificationCache(ttl=timedelta(hours=24))

        cache.cache_result("txn_001", receipt_data, verified)
        result = cache.lookup(receipt_data)

        # Connectivity is back: re-verify everything served offline
        cache.notify_network_restored()
        for entry in cache.pending_revalidations():
            ...
    """

    def __init__(
        self,
        ttl: timedelta = DEFAULT_CACHE_TTL,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if ttl <= timedelta(0):
            raise ValueError(f"ttl must be positive: {ttl}")

        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, CachedVerification] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, config: Settings) -> "OfflineVerificationCache":
        """Build a cache from engine settings."""
        return cls(ttl=config.offline_cache_ttl)

    def cache_result(
        self, transaction_id: str, receipt_data: str, verified: VerifiedReceipt
    ) -> Result[CachedVerification, EngineError]:
        """Store a successful verification, replacing any earlier entry."""
        if not _is_valid(transaction_id) or not _is_valid(receipt_data):
            return fail(ErrorCode.INVALID_INPUT, "Transaction ID and receipt data are required")

        now = self._clock()
        entry = CachedVerification(
            transaction_id=transaction_id,
            receipt_data=receipt_data,
            verified=verified,
            cached_at=now,
            expires_at=now + self.ttl,
        )
        with self._lock:
            self._entries[receipt_key(receipt_data)] = entry
        logger.debug("verification_cached", transaction_id=transaction_id)
        return Ok(replace(entry))

    def lookup(self, receipt_data: str) -> Result[CachedVerification, EngineError]:
        """
        Get a cached verification.

        An expired entry is kept but flagged for revalidation, and reported as
        NOT_FOUND so it is never served.
        """
        if not _is_valid(receipt_data):
            return fail(ErrorCode.INVALID_INPUT, "Receipt data cannot be empty")

        now = self._clock()
        with self._lock:
            entry = self._entries.get(receipt_key(receipt_data))
            if entry is None:
                outcome = "miss"
            elif entry.is_expired(now):
                outcome = "expired"
                self._request_revalidation(entry, now)
            else:
                outcome = "hit"
                entry = replace(entry)

        metrics.record_offline_verification(outcome)
        if outcome == "miss":
            return fail(ErrorCode.NOT_FOUND, "Receipt is not cached")
        if outcome == "expired":
            return fail(ErrorCode.NOT_FOUND, "Cached verification has expired")
        return Ok(entry)

    def _request_revalidation(self, entry: CachedVerification, now: datetime) -> None:
        # Caller holds the lock.
        if not entry.requires_revalidation:
            entry.requires_revalidation = True
            entry.revalidation_requested_at = now

    def request_revalidation(self, receipt_data: str) -> bool:
        """Flag one entry for revalidation. False if it is not cached."""
        if not _is_valid(receipt_data):
            return False
        with self._lock:
            entry = self._entries.get(receipt_key(receipt_data))
            if entry is None:
                return False
            self._request_revalidation(entry, self._clock())
        return True

    def notify_network_restored(self) -> int:
        """Flag every entry for revalidation. Returns the number flagged."""
        now = self._clock()
        with self._lock:
            for entry in self._entries.values():
                self._request_revalidation(entry, now)
            count = len(self._entries)
        logger.info("offline_cache_revalidation_requested", count=count)
        return count

    def pending_revalidations(self) -> list[CachedVerification]:
        """Entries awaiting revalidation, oldest request first."""
        with self._lock:
            pending = [replace(e) for e in self._entries.values() if e.requires_revalidation]
        pending.sort(key=lambda e: e.revalidation_requested_at or e.cached_at)
        return pending

    def mark_revalidated(
        self, receipt_data: str, verified: VerifiedReceipt
    ) -> Result[CachedVerification, EngineError]:
        """Record a fresh verification for an entry awaiting revalidation."""
        if not _is_valid(receipt_data):
            return fail(ErrorCode.INVALID_INPUT, "Receipt data cannot be empty")

        now = self._clock()
        with self._lock:
            entry = self._entries.get(receipt_key(receipt_data))
            if entry is None:
                return fail(ErrorCode.NOT_FOUND, "Receipt is not cached")
            if not entry.requires_revalidation:
                return fail(ErrorCode.INVALID_INPUT, "Receipt is not pending revalidation")

            entry.verified = verified
            entry.cached_at = now
            entry.expires_at = now + self.ttl
            entry.requires_revalidation = False
            entry.revalidation_requested_at = None
            snapshot = replace(entry)

        logger.info("offline_cache_revalidated", transaction_id=snapshot.transaction_id)
        return Ok(snapshot)

    def evict(self, receipt_data: str) -> bool:
        """Drop one entry. False if it was not cached."""
        if not _is_valid(receipt_data):
            return False
        with self._lock:
            return self._entries.pop(receipt_key(receipt_data), None) is not None

    def clear(self) -> None:
        """Drop every entry."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info("offline_cache_cleared", count=count)

    def statistics(self) -> OfflineCacheStatistics:
        """Aggregate cache statistics."""
        now = self._clock()
        with self._lock:
            entries = list(self._entries.values())
        return OfflineCacheStatistics(
            total_cached=len(entries),
            pending_revalidation=sum(1 for e in entries if e.requires_revalidation),
            expired_count=sum(1 for e in entries if e.is_expired(now)),
        )


class OfflineFallbackVerifier:
    """
    ReceiptVerifier that falls back to cached results on network failure.

    Rejections from the wrapped verifier are never masked: a receipt that
    fails verification is evicted and the error propagates.
    """

    def __init__(self, verifier: ReceiptVerifier, cache: OfflineVerificationCache) -> None:
        self.verifier = verifier
        self.cache = cache

    async def verify(self, transaction_id: str, receipt_data: str) -> VerifiedReceipt:
        try:
            verified = await self.verifier.verify(transaction_id, receipt_data)
        except ReceiptVerificationError:
            self.cache.evict(receipt_data)
            raise
        except ProviderNetworkError:
            cached = self.cache.lookup(receipt_data)
            if not isinstance(cached, Ok) or cached.value.transaction_id != transaction_id:
                raise
            self.cache.request_revalidation(receipt_data)
            logger.warning("verification_served_offline", transaction_id=transaction_id)
            return cached.value.verified

        self.cache.cache_result(transaction_id, receipt_data, verified)
        return verified

    async def revalidate_pending(self) -> RevalidationSummary:
        """
        Re-verify every entry awaiting revalidation.

        Stops at the first network failure; the remaining entries stay
        pending for the next attempt.
        """
        revalidated = 0
        rejected: list[str] = []

        for entry in self.cache.pending_revalidations():
            try:
                verified = await self.verifier.verify(entry.transaction_id, entry.receipt_data)
            except ReceiptVerificationError as exc:
                self.cache.evict(entry.receipt_data)
                rejected.append(entry.transaction_id)
                logger.warning(
                    "offline_revalidation_rejected",
                    transaction_id=entry.transaction_id,
                    reason=exc.reason,
                )
                continue
            except ProviderNetworkError as exc:
                logger.warning("offline_revalidation_interrupted", error=str(exc))
                break

            if isinstance(self.cache.mark_revalidated(entry.receipt_data, verified), Ok):
                revalidated += 1

        summary = RevalidationSummary(
            revalidated_count=revalidated,
            rejected_transaction_ids=tuple(rejected),
            remaining_count=len(self.cache.pending_revalidations()),
        )
        logger.info(
            "offline_revalidation_completed",
            revalidated_count=summary.revalidated_count,
            rejected_count=len(summary.rejected_transaction_ids),
            remaining_count=summary.remaining_count,
        )
        return summary

    async def on_network_restored(self) -> RevalidationSummary:
        """Flag every cached entry and re-verify them all."""
        self.cache.notify_network_restored()
        return await self.revalidate_pending()
