"""
Tests for ManualReviewService.
"""

import pytest

from entitlement_engine.models.result import Err, ErrorCode, Ok
from entitlement_engine.services.manual_review import ManualReviewService


@pytest.fixture
def review(limiter):
    return ManualReviewService(limiter, is_operator=lambda: True)


def _limit(limiter, txn):
    for _ in range(limiter.max_retries + 1):
        limiter.record_failure(txn)


class TestOperatorAccess:
    """Tests for operator gating."""

    def test_default_denies(self, limiter):
        review = ManualReviewService(limiter)
        for result in (review.list_limited(), review.clear("txn_001"), review.statistics()):
            assert isinstance(result, Err)
            assert result.error.code == ErrorCode.PERMISSION_DENIED

    def test_non_operator_cannot_clear(self, limiter):
        _limit(limiter, "txn_010")
        review = ManualReviewService(limiter, is_operator=lambda: False)

        result = review.clear("txn_010")

        assert isinstance(result, Err)
        assert limiter.can_retry("txn_010") is False

    def test_raising_operator_check_denies(self, limiter):
        def broken():
            raise RuntimeError("directory unavailable")

        review = ManualReviewService(limiter, is_operator=broken)
        result = review.statistics()
        assert isinstance(result, Err)
        assert result.error.code == ErrorCode.PERMISSION_DENIED


class TestReview:
    """Tests for operator operations."""

    def test_list_limited(self, review, limiter):
        _limit(limiter, "txn_010")
        limiter.record_failure("txn_011")

        result = review.list_limited()

        assert isinstance(result, Ok)
        assert [s.transaction_id for s in result.value] == ["txn_010"]

    def test_clear_returns_previous_status(self, review, limiter):
        _limit(limiter, "txn_010")

        result = review.clear("txn_010")

        assert isinstance(result, Ok)
        assert result.value.count == 4
        assert result.value.is_limited is True
        assert limiter.can_retry("txn_010") is True

    def test_clear_twice(self, review, limiter):
        _limit(limiter, "txn_010")
        review.clear("txn_010")
        second = review.clear("txn_010")
        assert isinstance(second, Ok)
        assert second.value.count == 0

    @pytest.mark.parametrize("bad_id", ["", "  ", None])
    def test_clear_invalid_id(self, review, bad_id):
        result = review.clear(bad_id)
        assert isinstance(result, Err)
        assert result.error.code == ErrorCode.INVALID_INPUT

    def test_statistics(self, review, limiter):
        _limit(limiter, "txn_010")
        result = review.statistics()
        assert isinstance(result, Ok)
        assert result.value.limited_count == 1
        assert result.value.max_count == 4
