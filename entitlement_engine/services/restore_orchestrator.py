"""
Restore Orchestrator - Reconciles platform purchase history with the store.

Used after reinstall or on a new device: every historical receipt is
re-verified and written back so previously bought features unlock again.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
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
    RawReceipt,
    RestoreSummary,
    UserContext,
    VerifiedReceipt,
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
from entitlement_engine.observability.metrics import metrics
from entitlement_engine.observability.tracing import trace_operation
from entitlement_engine.providers.protocols import (
    PaymentProvider,
    PurchaseStore,
    ReceiptVerifier,
)
from entitlement_engine.services.authorization import AuthorizationGuard
from entitlement_engine.services.feature_gating import FeatureGatingService

logger = get_logger(__name__)

RestoreResult = Result[RestoreSummary, EngineError]


@dataclass
class _Tally:
    new: int = 0
    updated: int = 0
    skipped: int = 0
    orphaned: list[str] = field(default_factory=list)
    deleted: int = 0
    failed: int = 0

    def summary(self) -> RestoreSummary:
        return RestoreSummary(
            restored_count=self.new + self.updated,
            new_count=self.new,
            updated_count=self.updated,
            skipped_count=self.skipped,
            orphaned_transaction_ids=tuple(self.orphaned),
            deleted_count=self.deleted,
            failed_count=self.failed,
        )


class RestoreOrchestrator:
    """
    Restore previously purchased products for the current user.

    Overlapping calls for the same user share one reconciliation run.

    Local purchases missing from a non-empty platform history are reported
    as orphans; they are deleted only when delete_orphans is set.
    """

    def __init__(
        self,
        payment_provider: PaymentProvider,
        verifier: ReceiptVerifier,
        store: PurchaseStore,
        gating: FeatureGatingService,
        guard: AuthorizationGuard,
        clock: Callable[[], datetime] = utc_now,
        delete_orphans: bool = False,
    ) -> None:
        self.payment_provider = payment_provider
        self.verifier = verifier
        self.store = store
        self.gating = gating
        self.guard = guard
        self.delete_orphans = delete_orphans
        self._clock = clock
        self._in_flight: dict[str, asyncio.Task[RestoreResult]] = {}

    async def restore_purchases(self) -> RestoreResult:
        """
        Re-verify and persist every historical purchase of the current user.

        Returns:
            Ok(RestoreSummary), Ok(RestoreSummary(0, 0, 0)) when the platform
            reports nothing (orphans are not detected on an empty history), or
            Err(EngineError) with NOT_AUTHENTICATED, NETWORK_ERROR,
            STORE_PROBLEM_ERROR, CANCELLED, INVALID_RESPONSE, DB_ERROR or
            UNKNOWN_ERROR
        """
        principal = self.guard.current_user()
        if principal is None:
            return fail(ErrorCode.NOT_AUTHENTICATED, "User must be logged in to restore purchases")

        task = self._in_flight.get(principal.id)
        if task is None:
            task = asyncio.ensure_future(self._run(principal))
            self._in_flight[principal.id] = task
            task.add_done_callback(lambda t: self._release(principal.id, t))
        else:
            logger.info("restore_coalesced", user_id=principal.id)

        return await asyncio.shield(task)

    def _release(self, user_id: str, task: asyncio.Task[RestoreResult]) -> None:
        if self._in_flight.get(user_id) is task:
            del self._in_flight[user_id]

    async def close(self) -> None:
        """Cancel restores still in flight."""
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()

    async def _run(self, principal: UserContext) -> RestoreResult:
        with (
            log_context(user_id=principal.id),
            trace_operation("restore_purchases", user_id=principal.id) as span,
        ):
            try:
                result = await self._reconcile(principal)
            except Exception as exc:
                logger.exception("restore_unexpected_error")
                result = Err(EngineError.of(ErrorCode.UNKNOWN_ERROR, f"Restore failed: {exc}"))

            if isinstance(result, Ok):
                span.set_attribute("restored_count", result.value.restored_count)
                metrics.record_restore(
                    "success",
                    new_count=result.value.new_count,
                    updated_count=result.value.updated_count,
                    deleted_count=result.value.deleted_count,
                )
            else:
                span.set_attribute("error_code", result.error.code.value)
                metrics.record_restore(result.error.code.value.lower())
                metrics.record_error(result.error.code.value, "restore_purchases")
        return result

    async def _reconcile(self, principal: UserContext) -> RestoreResult:
        decision = self.guard.can_access_history(principal.id)
        if isinstance(decision, Err):
            return decision
        if not decision.value:
            return fail(ErrorCode.PERMISSION_DENIED, "Cannot restore another user's purchases")

        logger.info("restore_started")

        try:
            receipts = await self.payment_provider.list_historical_receipts(principal.id)
        except PaymentProviderError as exc:
            error = error_from_exception(exc)
            logger.warning("restore_history_unavailable", error_code=error.code.value, error=str(exc))
            return Err(error)

        if not isinstance(receipts, list) or not all(isinstance(r, RawReceipt) for r in receipts):
            error = error_from_exception(
                InvalidResponseError("payment provider", "purchase history is not a receipt list")
            )
            logger.error("restore_invalid_response", response_type=type(receipts).__name__)
            return Err(error)

        if not receipts:
            logger.info("restore_found_nothing")
            return Ok(RestoreSummary(restored_count=0, new_count=0, updated_count=0))

        try:
            existing = {
                p.transaction_id: p
                for p in await self.store.get_all_purchases(principal.id)
                if p.user_id == principal.id
            }
        except DatabaseError as exc:
            logger.error("restore_store_read_failed", error=str(exc))
            return Err(error_from_exception(exc))

        reported = {r.transaction_id for r in receipts}
        tally = _Tally(orphaned=sorted(txn for txn in existing if txn not in reported))

        for receipt in receipts:
            verified = await self._verify(receipt)
            if verified is None:
                tally.skipped += 1
                continue

            purchase = self._reconciled(principal, receipt, verified, existing.get(receipt.transaction_id))
            if purchase is None:
                continue

            try:
                stored = await self.store.insert_or_update_purchase(purchase)
            except OwnershipConflictError:
                logger.warning(
                    "restore_receipt_owned_by_other_user",
                    transaction_id=receipt.transaction_id,
                )
                metrics.record_error(ErrorCode.PERMISSION_DENIED.value, "restore_purchases")
                tally.skipped += 1
                continue
            except DatabaseError as exc:
                logger.error(
                    "restore_persist_failed",
                    transaction_id=receipt.transaction_id,
                    error=str(exc),
                )
                return Err(error_from_exception(exc))

            if receipt.transaction_id in existing:
                tally.updated += 1
            else:
                tally.new += 1
            existing[receipt.transaction_id] = stored

        if tally.orphaned:
            await self._handle_orphans(principal, tally)

        # Unlock visibility only after every write succeeded.
        await self.gating.refresh()

        summary = tally.summary()
        logger.info(
            "restore_completed",
            restored_count=summary.restored_count,
            new_count=summary.new_count,
            updated_count=summary.updated_count,
            skipped_count=summary.skipped_count,
            orphaned_count=summary.orphaned_count,
            deleted_count=summary.deleted_count,
        )
        return Ok(summary)

    async def _handle_orphans(self, principal: UserContext, tally: _Tally) -> None:
        """Report local purchases the platform no longer lists; delete them if configured."""
        logger.warning("restore_orphans_detected", orphaned_transaction_ids=tally.orphaned)
        if not self.delete_orphans:
            return

        for txn in tally.orphaned:
            try:
                deleted = await self.store.delete_purchase(txn)
            except DatabaseError as exc:
                logger.error("restore_orphan_delete_failed", transaction_id=txn, error=str(exc))
                tally.failed += 1
                continue
            self.gating.forget_purchase(principal.id, txn)
            if deleted:
                tally.deleted += 1
                logger.info("restore_orphan_deleted", transaction_id=txn)

    async def _verify(self, receipt: RawReceipt) -> VerifiedReceipt | None:
        """Verify one historical receipt. None means skip it."""
        txn = receipt.transaction_id
        if not txn or not receipt.product_id:
            logger.warning("restore_receipt_malformed", transaction_id=txn)
            return None

        try:
            verified = await self.verifier.verify(txn, receipt.receipt_data)
        except (ReceiptVerificationError, ProviderNetworkError) as exc:
            logger.warning("restore_receipt_unverified", transaction_id=txn, error=str(exc))
            return None

        if verified.transaction_id != txn or verified.product_id != receipt.product_id:
            logger.warning("restore_receipt_claims_mismatch", transaction_id=txn)
            return None
        return verified

    def _reconciled(
        self,
        principal: UserContext,
        receipt: RawReceipt,
        verified: VerifiedReceipt,
        current: Purchase | None,
    ) -> Purchase | None:
        """Build the record to write, or None when the stored one is already current."""
        unlocked = frozenset(
            feature.id
            for feature in self.gating.get_unlocked_features_by_product(receipt.product_id)
        )
        now = self._clock()

        if current is None:
            return Purchase(
                transaction_id=receipt.transaction_id,
                user_id=principal.id,
                product_id=receipt.product_id,
                purchased_at=verified.purchased_at,
                price=receipt.price,
                currency_code=receipt.currency_code,
                is_verified=True,
                verified_at=verified.verified_at,
                is_synced=True,
                synced_at=now,
                unlocked_features=unlocked,
            )

        refreshed = current.with_reverification(
            verified_at=verified.verified_at,
            unlocked_features=unlocked,
            synced_at=now,
        )
        if not current.differs_in_state(refreshed):
            logger.debug("restore_purchase_unchanged", transaction_id=receipt.transaction_id)
            return None
        return refreshed
