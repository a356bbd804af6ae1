"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Collaborators (payment provider, receipt verifier, persistent store) raise
these. Engine components never let them escape: they are converted into
EngineError results at each component boundary.
"""


class EntitlementError(Exception):
    """Base exception for all entitlement engine errors."""

    pass


class DatabaseError(EntitlementError):
    """Raised when a persistent store operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Database error: {message}")


class PaymentProviderError(EntitlementError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class PaymentCancelledError(PaymentProviderError):
    """Raised when the user cancels the payment sheet."""

    def __init__(self, product_id: str) -> None:
        self.product_id = product_id
        super().__init__(f"Payment cancelled by user for {product_id}")


class ProviderNetworkError(PaymentProviderError):
    """Raised when the provider cannot be reached (transport failure)."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Network failure: {message}")


class StoreProblemError(PaymentProviderError):
    """Raised when the platform store reports a transient problem."""

    def __init__(self, message: str, native_code: int | None = None) -> None:
        self.native_code = native_code
        super().__init__(f"Store problem: {message}")


class ReceiptVerificationError(EntitlementError):
    """Raised when a receipt fails signature or claim verification."""

    def __init__(self, transaction_id: str, reason: str) -> None:
        self.transaction_id = transaction_id
        self.reason = reason
        super().__init__(f"Receipt verification failed for {transaction_id}: {reason}")


class InvalidResponseError(EntitlementError):
    """Raised when a collaborator returns a malformed or missing response."""

    def __init__(self, source: str, detail: str) -> None:
        self.source = source
        self.detail = detail
        super().__init__(f"Invalid response from {source}: {detail}")


class OwnershipConflictError(EntitlementError):
    """Raised when a write targets a transaction stored under another user."""

    def __init__(self, transaction_id: str, owner_id: str) -> None:
        self.transaction_id = transaction_id
        self.owner_id = owner_id
        super().__init__(f"Transaction {transaction_id} belongs to another user")
