"""
Purchase Orchestrator - Drives one purchase attempt end to end.

    idle -> paying -> verifying -> persisting -> unlocked
    error exits: cancelled, network_error, verification_failed, db_error,
                 unknown_error

Within one transaction verification strictly precedes persistence, which
strictly precedes feature-unlock visibility. Every outcome is returned as a
Result; collaborator exceptions never reach the caller.
"""

import asyncio
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from datetime import datetime

from structlog import get_logger

from entitlement_engine.exceptions import (
    DatabaseError,
    InvalidResponseError,
    OwnershipConflictError,
    PaymentProviderError,
    ProviderNetworkError,
    ReceiptVerificationError,
)
from entitlement_engine.models.domain import (
    Purchase,
    PurchaseState,
    RawReceipt,
    UserContext,
    utc_now,
)
from entitlement_engine.models.result import (
    EngineError,
    Err,
    ErrorCode,
    Ok,
    Result,
    error_from_exception,
    fail,
)
from entitlement_engine.observability.logging import log_context
from entitlement_engine.observability.metrics import metrics, track_duration
from entitlement_engine.observability.tracing import trace_operation
from entitlement_engine.providers.protocols import (
    PaymentProvider,
    PurchaseStore,
    ReceiptVerifier,
)
from entitlement_engine.services.authorization import AuthorizationGuard
from entitlement_engine.services.feature_gating import FeatureGatingService
from entitlement_engine.services.retry_limiter import RetryLimiter

logger = get_logger(__name__)

PurchaseResult = Result[Purchase, EngineError]

_STATE_FOR_CODE: dict[ErrorCode, PurchaseState] = {
    ErrorCode.CANCELLED: PurchaseState.CANCELLED,
    ErrorCode.NETWORK_ERROR: PurchaseState.NETWORK_ERROR,
    ErrorCode.STORE_PROBLEM_ERROR: PurchaseState.NETWORK_ERROR,
    ErrorCode.VERIFICATION_FAILED: PurchaseState.VERIFICATION_FAILED,
    ErrorCode.DB_ERROR: PurchaseState.DB_ERROR,
}


@dataclass(frozen=True)
class PendingReceipt:
    """Paid-for receipt that has not been verified and persisted yet."""

    user_id: str
    receipt: RawReceipt
    recorded_at: datetime


@dataclass(frozen=True)
class _StateEntry:
    state: PurchaseState
    changed_at: datetime


class PurchaseOrchestrator:
    """
    Purchase flow orchestration.

    At most one attempt per (user, product) is in flight. A second caller
    arriving while an attempt is running awaits that same attempt instead of
    starting a new payment. Retries coalesce separately, per transaction.

    Pending receipts and finished states are kept for the limiter's reset
    window, then dropped.
    """

    def __init__(
        self,
        payment_provider: PaymentProvider,
        verifier: ReceiptVerifier,
        store: PurchaseStore,
        limiter: RetryLimiter,
        gating: FeatureGatingService,
        guard: AuthorizationGuard,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.payment_provider = payment_provider
        self.verifier = verifier
        self.store = store
        self.limiter = limiter
        self.gating = gating
        self.guard = guard
        self._clock = clock
        self._in_flight: dict[Hashable, asyncio.Task[PurchaseResult]] = {}
        self._retrying: dict[Hashable, asyncio.Task[PurchaseResult]] = {}
        self._states: dict[tuple[str, str], _StateEntry] = {}
        self._pending: dict[str, PendingReceipt] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def purchase_product(self, product_id: str) -> PurchaseResult:
        """
        Buy a product and unlock its features.

        Returns:
            Ok(Purchase) with is_verified=True and unlocked_features resolved,
            or Err(EngineError) with one of CANCELLED, NETWORK_ERROR,
            STORE_PROBLEM_ERROR, VERIFICATION_FAILED, DB_ERROR,
            NOT_AUTHENTICATED, INVALID_INPUT, UNKNOWN_ERROR
        """
        if not isinstance(product_id, str) or not product_id.strip():
            return fail(ErrorCode.INVALID_INPUT, "Invalid product ID")

        principal = self.guard.current_user()
        if principal is None:
            return fail(ErrorCode.NOT_AUTHENTICATED, "User must be logged in to purchase")

        self._prune()
        return await self._coalesce(
            self._in_flight,
            (principal.id, product_id),
            lambda: self._run("purchase_product", principal, product_id, self._attempt),
        )

    async def retry_verification(self, transaction_id: str) -> PurchaseResult:
        """
        Verify and persist a receipt whose earlier attempt did not complete.

        No new payment is made. Denied without calling the verifier once the
        transaction is rate limited.
        """
        if not isinstance(transaction_id, str) or not transaction_id.strip():
            return fail(ErrorCode.INVALID_INPUT, "Transaction ID cannot be empty")

        principal = self.guard.current_user()
        if principal is None:
            return fail(ErrorCode.NOT_AUTHENTICATED, "User must be logged in to retry")

        self._prune()
        pending = self._pending.get(transaction_id)
        if pending is None or pending.user_id != principal.id:
            return fail(ErrorCode.NOT_FOUND, f"No pending receipt for {transaction_id}")

        receipt = pending.receipt

        async def attempt(user: UserContext, key: tuple[str, str]) -> PurchaseResult:
            return await self._verify_and_persist(user, key, receipt)

        return await self._coalesce(
            self._retrying,
            transaction_id,
            lambda: self._run("retry_verification", principal, receipt.product_id, attempt),
        )

    def state(self, product_id: str) -> PurchaseState:
        """Last observed attempt state for the current user and product."""
        principal = self.guard.current_user()
        if principal is None:
            return PurchaseState.IDLE
        self._prune()
        entry = self._states.get((principal.id, product_id))
        return entry.state if entry else PurchaseState.IDLE

    def pending_transactions(self) -> list[str]:
        """Transaction IDs of the current user's receipts awaiting verification."""
        principal = self.guard.current_user()
        if principal is None:
            return []
        self._prune()
        return [txn for txn, p in self._pending.items() if p.user_id == principal.id]

    async def close(self) -> None:
        """Cancel attempts still in flight."""
        tasks = [*self._in_flight.values(), *self._retrying.values()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()
        self._retrying.clear()

    # ------------------------------------------------------------------
    # In-flight coalescing
    # ------------------------------------------------------------------

    async def _coalesce(
        self,
        in_flight: dict[Hashable, asyncio.Task[PurchaseResult]],
        key: Hashable,
        start: Callable[[], Awaitable[PurchaseResult]],
    ) -> PurchaseResult:
        task = in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(start())
            in_flight[key] = task
            task.add_done_callback(lambda t: self._release(in_flight, key, t))
        else:
            logger.info("purchase_attempt_coalesced", key=key)

        # A caller giving up must not cancel the attempt other callers share.
        return await asyncio.shield(task)

    @staticmethod
    def _release(
        in_flight: dict[Hashable, asyncio.Task[PurchaseResult]],
        key: Hashable,
        task: asyncio.Task[PurchaseResult],
    ) -> None:
        if in_flight.get(key) is task:
            del in_flight[key]

    async def _run(
        self,
        operation: str,
        principal: UserContext,
        product_id: str,
        attempt: Callable[[UserContext, tuple[str, str]], Awaitable[PurchaseResult]],
    ) -> PurchaseResult:
        key = (principal.id, product_id)
        with (
            log_context(user_id=principal.id, product_id=product_id),
            trace_operation(operation, user_id=principal.id, product_id=product_id) as span,
            track_duration() as timer,
        ):
            try:
                result = await attempt(principal, key)
            except Exception as exc:
                logger.exception("purchase_unexpected_error", operation=operation)
                result = self._finish(
                    key,
                    Err(EngineError.of(ErrorCode.UNKNOWN_ERROR, f"Purchase failed: {exc}")),
                )
            span.set_attribute("outcome", self._states[key].state.value)

        metrics.record_purchase(self._states[key].state.value, timer.elapsed)
        if isinstance(result, Err):
            metrics.record_error(result.error.code.value, operation)
        return result

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _prune(self) -> None:
        """Drop pending receipts and finished states older than the reset window."""
        cutoff = self._clock() - self.limiter.reset_window
        expired = [txn for txn, p in self._pending.items() if p.recorded_at < cutoff]
        for txn in expired:
            del self._pending[txn]
            logger.info("pending_receipt_expired", transaction_id=txn)

        stale = [
            key
            for key, entry in self._states.items()
            if entry.state.is_terminal and entry.changed_at < cutoff
        ]
        for key in stale:
            del self._states[key]

    def _set_state(self, key: tuple[str, str], state: PurchaseState) -> None:
        self._states[key] = _StateEntry(state, self._clock())
        logger.debug("purchase_state_changed", state=state.value)

    def _finish(self, key: tuple[str, str], result: PurchaseResult) -> PurchaseResult:
        if isinstance(result, Ok):
            self._set_state(key, PurchaseState.UNLOCKED)
        else:
            state = _STATE_FOR_CODE.get(result.error.code, PurchaseState.UNKNOWN_ERROR)
            self._set_state(key, state)
        return result

    async def _attempt(self, principal: UserContext, key: tuple[str, str]) -> PurchaseResult:
        product_id = key[1]

        # Paying
        self._set_state(key, PurchaseState.PAYING)
        try:
            receipt = await self.payment_provider.pay(product_id)
        except PaymentProviderError as exc:
            error = error_from_exception(exc)
            logger.warning("payment_failed", error_code=error.code.value, error=str(exc))
            return self._finish(key, Err(error))

        if (
            not isinstance(receipt, RawReceipt)
            or not receipt.transaction_id
            or receipt.product_id != product_id
        ):
            raise InvalidResponseError("payment provider", "malformed receipt for payment")

        logger.info("payment_completed", transaction_id=receipt.transaction_id)
        return await self._verify_and_persist(principal, key, receipt)

    async def _verify_and_persist(
        self,
        principal: UserContext,
        key: tuple[str, str],
        receipt: RawReceipt,
    ) -> PurchaseResult:
        txn = receipt.transaction_id

        # Verifying
        self._set_state(key, PurchaseState.VERIFYING)
        self._pending[txn] = PendingReceipt(
            user_id=principal.id, receipt=receipt, recorded_at=self._clock()
        )

        if not self.limiter.can_retry(txn):
            logger.warning("verification_skipped_rate_limited", transaction_id=txn)
            return self._finish(key, self._limited_error(txn))

        try:
            verified = await self.verifier.verify(txn, receipt.receipt_data)
            if verified.transaction_id != txn or verified.product_id != receipt.product_id:
                raise ReceiptVerificationError(txn, "receipt claims do not match the payment")
        except ReceiptVerificationError as exc:
            return self._finish(key, self._verification_failed(txn, exc))
        except ProviderNetworkError as exc:
            logger.warning("verification_unreachable", transaction_id=txn, error=str(exc))
            return self._finish(key, Err(error_from_exception(exc)))

        logger.info("receipt_verified", transaction_id=txn)

        # Persisting
        self._set_state(key, PurchaseState.PERSISTING)
        decision = self.guard.can_access_history(principal.id)
        if isinstance(decision, Err):
            return self._finish(key, decision)
        if not decision.value:
            return self._finish(
                key, fail(ErrorCode.PERMISSION_DENIED, "Cannot write another user's purchase")
            )

        unlocked = frozenset(
            feature.id for feature in self.gating.get_unlocked_features_by_product(receipt.product_id)
        )
        purchase = Purchase(
            transaction_id=txn,
            user_id=principal.id,
            product_id=receipt.product_id,
            purchased_at=verified.purchased_at,
            price=receipt.price,
            currency_code=receipt.currency_code,
            is_verified=True,
            verified_at=verified.verified_at,
            is_synced=True,
            synced_at=self._clock(),
            unlocked_features=unlocked,
        )

        try:
            stored = await self.store.insert_or_update_purchase(purchase)
        except (DatabaseError, OwnershipConflictError) as exc:
            logger.error("purchase_persist_failed", transaction_id=txn, error=str(exc))
            return self._finish(key, Err(error_from_exception(exc)))

        if not isinstance(stored, Purchase) or stored.transaction_id != txn:
            raise InvalidResponseError("purchase store", "upsert returned a different record")

        # Unlocked
        self._pending.pop(txn, None)
        self.limiter.clear(txn)
        self.gating.register_purchase(stored)

        logger.info(
            "purchase_unlocked",
            transaction_id=txn,
            unlocked_features=sorted(stored.unlocked_features),
        )
        return self._finish(key, Ok(stored))

    def _verification_failed(self, txn: str, exc: ReceiptVerificationError) -> PurchaseResult:
        self.limiter.record_failure(txn)
        if not self.limiter.can_retry(txn):
            metrics.record_verification_failure(limited=True)
            return self._limited_error(txn)

        metrics.record_verification_failure(limited=False)
        logger.warning(
            "receipt_verification_failed",
            transaction_id=txn,
            reason=exc.reason,
            failure_count=self.limiter.get_count(txn),
            retryable=True,
        )
        return Err(
            EngineError.of(
                ErrorCode.VERIFICATION_FAILED,
                f"Receipt verification failed: {exc.reason}",
                retryable=True,
            )
        )

    def _limited_error(self, txn: str) -> PurchaseResult:
        status = self.limiter.status(txn)
        logger.warning(
            "receipt_verification_rate_limited",
            transaction_id=txn,
            failure_count=status.count,
            requires_manual_intervention=True,
        )
        return Err(
            EngineError.of(
                ErrorCode.VERIFICATION_FAILED,
                "Receipt verification failed too many times; manual review required",
                retryable=False,
                requires_manual_intervention=True,
            )
        )
