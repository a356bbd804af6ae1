"""
Collaborator Protocols - Provider-agnostic interfaces consumed by the engine.

NO DICTIONARIES - All data uses strongly typed models.

The host application supplies implementations. Failures are signalled with
the exceptions in entitlement_engine.exceptions; the engine converts them
into results at its own boundary.
"""

from typing import Callable, Protocol

from entitlement_engine.models.domain import (
    FeatureDefinition,
    Purchase,
    RawReceipt,
    UserContext,
    VerifiedReceipt,
)

CurrentUserProvider = Callable[[], UserContext | None]
OperatorCheck = Callable[[], bool]


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Any platform store (StoreKit, Google Play Billing, a test double) must
    implement this interface.
    """

    async def pay(self, product_id: str) -> RawReceipt:
        """
        Launch the platform payment flow for a product.

        Args:
            product_id: Platform product identifier

        Returns:
            Unverified receipt for the completed payment

        Raises:
            PaymentCancelledError: If the user dismissed the payment sheet
            ProviderNetworkError: If the platform could not be reached
            StoreProblemError: If the store reported a transient problem
            PaymentProviderError: For any other provider failure
        """
        ...

    async def list_historical_receipts(self, user_id: str) -> list[RawReceipt]:
        """
        List every receipt the platform knows for a user.

        Args:
            user_id: Owner of the receipts

        Returns:
            Receipts, possibly empty

        Raises:
            ProviderNetworkError, StoreProblemError, PaymentProviderError
        """
        ...


class ReceiptVerifier(Protocol):
    """Receipt verifier protocol."""

    async def verify(self, transaction_id: str, receipt_data: str) -> VerifiedReceipt:
        """
        Validate a signed receipt.

        Args:
            transaction_id: Transaction the receipt claims to prove
            receipt_data: Signed receipt payload

        Returns:
            Verified receipt claims

        Raises:
            ReceiptVerificationError: If the signature or claims are invalid
            ProviderNetworkError: If verification keys could not be fetched
        """
        ...


class PurchaseStore(Protocol):
    """Persistent store protocol for purchase records."""

    async def get_all_purchases(self, user_id: str) -> list[Purchase]:
        """Return every purchase owned by user_id. Raises DatabaseError."""
        ...

    async def get_purchase(self, transaction_id: str) -> Purchase | None:
        """Return a purchase by transaction ID, or None. Raises DatabaseError."""
        ...

    async def insert_or_update_purchase(self, purchase: Purchase) -> Purchase:
        """Upsert a purchase keyed by transaction ID. Raises DatabaseError."""
        ...

    async def delete_purchase(self, transaction_id: str) -> bool:
        """Delete a purchase; False if it did not exist. Raises DatabaseError."""
        ...


class ProductCatalog(Protocol):
    """Read-only mapping from features to the products that unlock them."""

    def get(self, feature_id: str) -> FeatureDefinition | None:
        ...

    def all(self) -> list[FeatureDefinition]:
        ...

    def for_product(self, product_id: str) -> list[FeatureDefinition]:
        ...
