"""
Verification Retry Limiter.

Tracks receipt verification failures per transaction and decides whether an
automatic retry is still permitted. Once a transaction exceeds the limit,
automatic retries stop until an operator clears the record.

- In-memory map keyed by transaction ID
- Records expire lazily (checked on every access), no background sweep
- All reads and writes are serialized by one lock, never held across an await
"""

import threading
from collections.abc import Callable
from datetime import datetime, timedelta

from structlog import get_logger

from entitlement_engine.config import Settings
from entitlement_engine.models.domain import (
    RetryRecord,
    RetryStatistics,
    RetryStatus,
    utc_now,
)

logger = get_logger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RESET_WINDOW = timedelta(hours=24)


def _is_valid_id(transaction_id: object) -> bool:
    return isinstance(transaction_id, str) and transaction_id != ""


class RetryLimiter:
    """
    Per-transaction verification retry limiter.

    Usage:
        limiter = RetryLimiter(max_retries=3)

        limiter.record_failure("txn_001")
        if not limiter.can_retry("txn_001"):
            # Escalate to manual review
            ...

        # Operator action after manual review
        limiter.clear("txn_001")
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        reset_window: timedelta = DEFAULT_RESET_WINDOW,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0: {max_retries}")
        if reset_window <= timedelta(0):
            raise ValueError(f"reset_window must be positive: {reset_window}")

        self.max_retries = max_retries
        self.reset_window = reset_window
        self._clock = clock
        self._records: dict[str, RetryRecord] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, config: Settings) -> "RetryLimiter":
        """Build a limiter from engine settings."""
        return cls(
            max_retries=config.retry_max_retries,
            reset_window=config.retry_reset_window,
        )

    # ------------------------------------------------------------------
    # Internal helpers (caller holds the lock)
    # ------------------------------------------------------------------

    def _live_record(self, transaction_id: str, now: datetime) -> RetryRecord | None:
        """Get the record for a transaction, deleting it first if expired."""
        record = self._records.get(transaction_id)
        if record is not None and now > record.reset_at:
            del self._records[transaction_id]
            logger.debug("verification_retry_expired", transaction_id=transaction_id)
            return None
        return record

    def _purge_expired(self, now: datetime) -> None:
        expired = [txn for txn, record in self._records.items() if now > record.reset_at]
        for txn in expired:
            del self._records[txn]
        if expired:
            logger.debug("verification_retry_records_purged", count=len(expired))

    def _is_limited(self, count: int) -> bool:
        return count > self.max_retries

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def can_retry(self, transaction_id: str) -> bool:
        """
        Check whether an automatic retry is allowed.

        Returns False for invalid transaction IDs (fail closed).
        """
        if not _is_valid_id(transaction_id):
            return False

        with self._lock:
            record = self._live_record(transaction_id, self._clock())
            count = record.failure_count if record else 0
        return not self._is_limited(count)

    def record_failure(self, transaction_id: str) -> None:
        """Record one verification failure. No-op for invalid IDs."""
        if not _is_valid_id(transaction_id):
            return

        with self._lock:
            now = self._clock()
            record = self._live_record(transaction_id, now)
            if record is None:
                record = RetryRecord(
                    failure_count=1,
                    last_failure_at=now,
                    reset_at=now + self.reset_window,
                )
                self._records[transaction_id] = record
            else:
                record.failure_count += 1
                record.last_failure_at = now
            count = record.failure_count

        logger.info(
            "verification_retry_failure_recorded",
            transaction_id=transaction_id,
            failure_count=count,
            max_retries=self.max_retries,
        )
        if count == self.max_retries + 1:
            logger.warning(
                "verification_retry_limited",
                transaction_id=transaction_id,
                failure_count=count,
                requires_manual_intervention=True,
            )

    def get_count(self, transaction_id: str) -> int:
        """Get current failure count (0 for unknown or invalid IDs)."""
        if not _is_valid_id(transaction_id):
            return 0

        with self._lock:
            record = self._live_record(transaction_id, self._clock())
            return record.failure_count if record else 0

    def status(self, transaction_id: str) -> RetryStatus:
        """Get detailed retry status. Invalid IDs get a zero status."""
        if not _is_valid_id(transaction_id):
            return RetryStatus.empty()

        with self._lock:
            record = self._live_record(transaction_id, self._clock())
            if record is None:
                return RetryStatus.empty(transaction_id)
            return self._status_of(transaction_id, record)

    def _status_of(self, transaction_id: str, record: RetryRecord) -> RetryStatus:
        limited = self._is_limited(record.failure_count)
        return RetryStatus(
            transaction_id=transaction_id,
            count=record.failure_count,
            is_limited=limited,
            requires_manual_intervention=limited,
            last_failure_at=record.last_failure_at,
            reset_at=record.reset_at,
        )

    def clear(self, transaction_id: str) -> None:
        """
        Remove a transaction's retry record.

        Used after manual review and after a successful retry. Idempotent.
        """
        if not _is_valid_id(transaction_id):
            return

        with self._lock:
            removed = self._records.pop(transaction_id, None)

        if removed is not None:
            logger.info(
                "verification_retry_cleared",
                transaction_id=transaction_id,
                failure_count=removed.failure_count,
            )

    def list_limited(self) -> list[str]:
        """Get transaction IDs requiring manual intervention, purging expired records."""
        with self._lock:
            self._purge_expired(self._clock())
            return [
                txn
                for txn, record in self._records.items()
                if self._is_limited(record.failure_count)
            ]

    def limited_statuses(self) -> list[RetryStatus]:
        """Same as list_limited but with full status snapshots."""
        with self._lock:
            self._purge_expired(self._clock())
            return [
                self._status_of(txn, record)
                for txn, record in self._records.items()
                if self._is_limited(record.failure_count)
            ]

    def statistics(self) -> RetryStatistics:
        """Get aggregate statistics, purging expired records first."""
        with self._lock:
            self._purge_expired(self._clock())
            counts = [record.failure_count for record in self._records.values()]

        total = len(counts)
        return RetryStatistics(
            total_tracked=total,
            limited_count=sum(1 for count in counts if self._is_limited(count)),
            average_count=sum(counts) / total if total else 0.0,
            max_count=max(counts, default=0),
        )
