"""
Manual Review Service - Operator view over rate-limited verifications.

Clearing a limiter record re-enables automatic verification for a
transaction, so every operation here requires an operator.
"""

from structlog import get_logger

from entitlement_engine.models.domain import RetryStatistics, RetryStatus
from entitlement_engine.models.result import EngineError, ErrorCode, Ok, Result, fail
from entitlement_engine.providers.protocols import OperatorCheck
from entitlement_engine.services.retry_limiter import RetryLimiter

logger = get_logger(__name__)


def _deny_all() -> bool:
    return False


class ManualReviewService:
    """Operator-only access to the retry limiter."""

    def __init__(self, limiter: RetryLimiter, is_operator: OperatorCheck = _deny_all) -> None:
        self.limiter = limiter
        self._is_operator = is_operator

    def _operator_allowed(self, operation: str) -> bool:
        try:
            allowed = bool(self._is_operator())
        except Exception:
            logger.exception("operator_check_failed", operation=operation)
            return False
        if not allowed:
            logger.warning("manual_review_denied", operation=operation)
        return allowed

    def list_limited(self) -> Result[list[RetryStatus], EngineError]:
        """Get every transaction awaiting manual review."""
        if not self._operator_allowed("list_limited"):
            return fail(ErrorCode.PERMISSION_DENIED, "Operator access required")
        return Ok(self.limiter.limited_statuses())

    def clear(self, transaction_id: str) -> Result[RetryStatus, EngineError]:
        """
        Reset a transaction's failure record after review.

        Returns:
            Ok(status before clearing)
        """
        if not self._operator_allowed("clear"):
            return fail(ErrorCode.PERMISSION_DENIED, "Operator access required")
        if not isinstance(transaction_id, str) or not transaction_id.strip():
            return fail(ErrorCode.INVALID_INPUT, "Transaction ID cannot be empty")

        before = self.limiter.status(transaction_id)
        self.limiter.clear(transaction_id)

        logger.info(
            "manual_review_cleared",
            transaction_id=transaction_id,
            failure_count=before.count,
            was_limited=before.is_limited,
        )
        return Ok(before)

    def statistics(self) -> Result[RetryStatistics, EngineError]:
        """Get aggregate limiter statistics."""
        if not self._operator_allowed("statistics"):
            return fail(ErrorCode.PERMISSION_DENIED, "Operator access required")
        return Ok(self.limiter.statistics())
