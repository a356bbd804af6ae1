"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, Index, Numeric, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from entitlement_engine.models.domain import utc_now


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class PurchaseRecord(Base):
    """
    ORM model for purchases table.

    One row per platform transaction; the transaction ID is the natural key.
    """

    __tablename__ = "purchases"

    # Primary Key
    transaction_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Ownership
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Price
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # Verification / sync state
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_synced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Feature IDs unlocked by this purchase
    unlocked_features: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    # Timestamps
    purchased_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_purchases_price_non_negative"),
        Index("idx_purchases_user_id", "user_id"),
        Index("idx_purchases_user_purchased_at", "user_id", "purchased_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PurchaseRecord(transaction_id={self.transaction_id}, user_id={self.user_id}, "
            f"product_id={self.product_id}, is_verified={self.is_verified})>"
        )
