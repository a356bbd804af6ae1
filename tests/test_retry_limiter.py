"""
Tests for RetryLimiter.

Covers failure counting, the manual-intervention threshold, lazy expiry,
invalid input handling and aggregate statistics.
"""

import threading
from datetime import timedelta

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from conftest import BASE_TIME, FakeClock
from entitlement_engine.config import Settings
from entitlement_engine.services.retry_limiter import RetryLimiter

transaction_ids = st.text(min_size=1, max_size=40)


class TestConstruction:
    """Tests for limiter construction."""

    def test_defaults(self):
        """Defaults are three retries over 24 hours."""
        limiter = RetryLimiter()
        assert limiter.max_retries == 3
        assert limiter.reset_window == timedelta(hours=24)

    def test_negative_max_retries_rejected(self):
        with pytest.raises(ValueError, match="max_retries"):
            RetryLimiter(max_retries=-1)

    def test_non_positive_window_rejected(self):
        with pytest.raises(ValueError, match="reset_window"):
            RetryLimiter(reset_window=timedelta(0))

    def test_from_settings(self):
        """Limiter takes its limits from settings."""
        config = Settings(retry_max_retries=5, retry_reset_window_seconds=60)
        limiter = RetryLimiter.from_settings(config)
        assert limiter.max_retries == 5
        assert limiter.reset_window == timedelta(seconds=60)


class TestCounting:
    """Tests for failure counting and the limit threshold."""

    def test_fresh_transaction_can_retry(self, limiter):
        """A transaction with no failures may be retried."""
        assert limiter.can_retry("txn_001") is True
        assert limiter.get_count("txn_001") == 0

    def test_four_failures_exceed_limit_of_three(self, limiter):
        """Four failures with max_retries=3 deny further retries."""
        for _ in range(4):
            limiter.record_failure("txn_010")

        assert limiter.get_count("txn_010") == 4
        assert limiter.can_retry("txn_010") is False

    def test_failures_at_limit_still_allowed(self, limiter):
        """Exactly max_retries failures still permit a retry."""
        for _ in range(3):
            limiter.record_failure("txn_010")
        assert limiter.can_retry("txn_010") is True
        assert limiter.status("txn_010").requires_manual_intervention is False

    def test_status_when_limited(self, limiter, clock):
        """Status reports the limit and manual-intervention flag."""
        for _ in range(4):
            limiter.record_failure("txn_010")

        status = limiter.status("txn_010")
        assert status.transaction_id == "txn_010"
        assert status.count == 4
        assert status.is_limited is True
        assert status.requires_manual_intervention is True
        assert status.last_failure_at == clock.now
        assert status.reset_at == BASE_TIME + timedelta(hours=24)

    def test_transactions_are_independent(self, limiter):
        for _ in range(4):
            limiter.record_failure("txn_a")
        assert limiter.can_retry("txn_b") is True
        assert limiter.get_count("txn_b") == 0

    def test_zero_max_retries_limits_on_first_failure(self, clock):
        limiter = RetryLimiter(max_retries=0, clock=clock)
        assert limiter.can_retry("txn_001") is True
        limiter.record_failure("txn_001")
        assert limiter.can_retry("txn_001") is False

    def test_window_is_fixed_from_first_failure(self, limiter, clock):
        """Later failures do not extend the reset time."""
        limiter.record_failure("txn_001")
        clock.advance(timedelta(hours=10))
        limiter.record_failure("txn_001")
        assert limiter.status("txn_001").reset_at == BASE_TIME + timedelta(hours=24)


class TestClear:
    """Tests for clearing records."""

    def test_clear_resets_count(self, limiter):
        for _ in range(4):
            limiter.record_failure("txn_010")

        limiter.clear("txn_010")

        assert limiter.get_count("txn_010") == 0
        assert limiter.can_retry("txn_010") is True

    def test_clear_is_idempotent(self, limiter):
        """Clearing twice is the same as clearing once."""
        limiter.record_failure("txn_010")
        limiter.clear("txn_010")
        limiter.clear("txn_010")
        assert limiter.get_count("txn_010") == 0
        assert limiter.statistics().total_tracked == 0

    def test_clear_unknown_transaction(self, limiter):
        limiter.clear("never_seen")
        assert limiter.get_count("never_seen") == 0


class TestExpiry:
    """Tests for lazy expiry of records."""

    def test_record_expires_after_window(self, limiter, clock):
        """After the reset window the transaction is treated as fresh."""
        for _ in range(4):
            limiter.record_failure("txn_010")

        clock.advance(timedelta(hours=24, seconds=1))

        assert limiter.can_retry("txn_010") is True
        assert limiter.get_count("txn_010") == 0

    def test_record_alive_at_exact_reset_time(self, limiter, clock):
        """Expiry happens strictly after reset_at."""
        for _ in range(4):
            limiter.record_failure("txn_010")
        clock.advance(timedelta(hours=24))
        assert limiter.can_retry("txn_010") is False

    def test_failure_after_expiry_starts_new_window(self, limiter, clock):
        for _ in range(4):
            limiter.record_failure("txn_010")
        clock.advance(timedelta(days=2))

        limiter.record_failure("txn_010")

        status = limiter.status("txn_010")
        assert status.count == 1
        assert status.reset_at == clock.now + timedelta(hours=24)

    def test_list_limited_purges_expired(self, limiter, clock):
        for _ in range(4):
            limiter.record_failure("txn_old")
        clock.advance(timedelta(hours=12))
        for _ in range(4):
            limiter.record_failure("txn_new")
        clock.advance(timedelta(hours=13))

        assert limiter.list_limited() == ["txn_new"]
        assert limiter.statistics().total_tracked == 1


class TestInvalidInput:
    """Invalid transaction IDs never raise."""

    @pytest.mark.parametrize("bad_id", ["", None, 42])
    def test_invalid_ids(self, limiter, bad_id):
        """Invalid IDs fail closed for can_retry and are otherwise ignored."""
        assert limiter.can_retry(bad_id) is False
        limiter.record_failure(bad_id)
        limiter.clear(bad_id)
        assert limiter.get_count(bad_id) == 0
        status = limiter.status(bad_id)
        assert status.count == 0
        assert status.is_limited is False
        assert limiter.statistics().total_tracked == 0


class TestStatistics:
    """Tests for aggregate statistics."""

    def test_empty(self, limiter):
        stats = limiter.statistics()
        assert stats.total_tracked == 0
        assert stats.limited_count == 0
        assert stats.average_count == 0.0
        assert stats.max_count == 0

    def test_mixed(self, limiter):
        limiter.record_failure("txn_a")
        for _ in range(5):
            limiter.record_failure("txn_b")

        stats = limiter.statistics()
        assert stats.total_tracked == 2
        assert stats.limited_count == 1
        assert stats.average_count == 3.0
        assert stats.max_count == 5

    def test_limited_statuses(self, limiter):
        for _ in range(4):
            limiter.record_failure("txn_b")
        limiter.record_failure("txn_a")

        statuses = limiter.limited_statuses()
        assert [s.transaction_id for s in statuses] == ["txn_b"]
        assert statuses[0].requires_manual_intervention is True


class TestConcurrency:
    """Concurrent failures are all counted."""

    def test_parallel_record_failure(self):
        limiter = RetryLimiter(max_retries=1000)

        def worker():
            for _ in range(100):
                limiter.record_failure("txn_shared")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert limiter.get_count("txn_shared") == 800


class TestLimiterProperties:
    """Hypothesis property tests."""

    @given(txn=transaction_ids, max_retries=st.integers(min_value=0, max_value=10))
    @settings(max_examples=50)
    def test_limited_exactly_after_max_plus_one(self, txn, max_retries):
        """can_retry flips to False exactly at max_retries + 1 failures."""
        limiter = RetryLimiter(max_retries=max_retries, clock=FakeClock())

        for _ in range(max_retries):
            limiter.record_failure(txn)
        assert limiter.can_retry(txn) is True

        limiter.record_failure(txn)
        assert limiter.can_retry(txn) is False
        assert limiter.status(txn).requires_manual_intervention is True

        limiter.clear(txn)
        assert limiter.get_count(txn) == 0
        assert limiter.can_retry(txn) is True

    @given(txn=transaction_ids, failures=st.integers(min_value=0, max_value=20))
    @settings(max_examples=50)
    def test_count_matches_failures(self, txn, failures):
        limiter = RetryLimiter(clock=FakeClock())
        for _ in range(failures):
            limiter.record_failure(txn)
        assert limiter.get_count(txn) == failures
        assert limiter.status(txn).is_limited == (failures > 3)
