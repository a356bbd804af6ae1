"""
SQLAlchemy purchase store.

Each operation runs in its own session from the injected factory. Any
SQLAlchemyError is re-raised as DatabaseError so the engine can map it to a
DB_ERROR result.
"""

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from entitlement_engine.db.models import PurchaseRecord
from entitlement_engine.exceptions import DatabaseError, OwnershipConflictError
from entitlement_engine.models.domain import Purchase

logger = get_logger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo; everything is stored as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def to_domain(record: PurchaseRecord) -> Purchase:
    """Convert ORM row to domain model."""
    return Purchase(
        transaction_id=record.transaction_id,
        user_id=record.user_id,
        product_id=record.product_id,
        purchased_at=_aware(record.purchased_at),
        price=Decimal(record.price),
        currency_code=record.currency_code,
        is_verified=record.is_verified,
        verified_at=_aware(record.verified_at),
        is_synced=record.is_synced,
        synced_at=_aware(record.synced_at),
        unlocked_features=frozenset(record.unlocked_features or ()),
    )


def _apply(record: PurchaseRecord, purchase: Purchase) -> None:
    record.product_id = purchase.product_id
    record.price = purchase.price
    record.currency_code = purchase.currency_code
    record.purchased_at = purchase.purchased_at
    record.is_verified = purchase.is_verified
    record.verified_at = purchase.verified_at
    record.is_synced = purchase.is_synced
    record.synced_at = purchase.synced_at
    record.unlocked_features = sorted(purchase.unlocked_features)


class SQLAlchemyPurchaseStore:
    """
    PurchaseStore backed by an async SQLAlchemy engine.

    Usage:
        store = SQLAlchemyPurchaseStore(get_session_factory())
        await create_schema()
        purchases = await store.get_all_purchases("user-123")
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_all_purchases(self, user_id: str) -> list[Purchase]:
        try:
            async with self._session_factory() as session:
                stmt = (
                    select(PurchaseRecord)
                    .where(PurchaseRecord.user_id == user_id)
                    .order_by(PurchaseRecord.purchased_at.desc())
                )
                result = await session.execute(stmt)
                return [to_domain(record) for record in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error("purchase_store_query_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to load purchases for {user_id}: {e}") from e

    async def get_purchase(self, transaction_id: str) -> Purchase | None:
        try:
            async with self._session_factory() as session:
                record = await session.get(PurchaseRecord, transaction_id)
                return to_domain(record) if record is not None else None
        except SQLAlchemyError as e:
            logger.error(
                "purchase_store_query_failed", transaction_id=transaction_id, error=str(e)
            )
            raise DatabaseError(f"Failed to load purchase {transaction_id}: {e}") from e

    async def insert_or_update_purchase(self, purchase: Purchase) -> Purchase:
        try:
            async with self._session_factory() as session:
                record = await session.get(PurchaseRecord, purchase.transaction_id)
                if record is None:
                    record = PurchaseRecord(
                        transaction_id=purchase.transaction_id,
                        user_id=purchase.user_id,
                    )
                    _apply(record, purchase)
                    session.add(record)
                    operation = "insert"
                elif record.user_id != purchase.user_id:
                    raise OwnershipConflictError(purchase.transaction_id, record.user_id)
                else:
                    _apply(record, purchase)
                    operation = "update"

                await session.commit()
        except SQLAlchemyError as e:
            logger.error(
                "purchase_store_write_failed",
                transaction_id=purchase.transaction_id,
                error=str(e),
            )
            raise DatabaseError(f"Failed to save purchase {purchase.transaction_id}: {e}") from e

        logger.debug(
            "purchase_store_written", transaction_id=purchase.transaction_id, operation=operation
        )
        return purchase

    async def delete_purchase(self, transaction_id: str) -> bool:
        try:
            async with self._session_factory() as session:
                record = await session.get(PurchaseRecord, transaction_id)
                if record is None:
                    return False
                await session.delete(record)
                await session.commit()
                return True
        except SQLAlchemyError as e:
            logger.error(
                "purchase_store_delete_failed", transaction_id=transaction_id, error=str(e)
            )
            raise DatabaseError(f"Failed to delete purchase {transaction_id}: {e}") from e
