"""
JWS Receipt Verifier - Validates compact JWS receipts with PyJWT.

Receipts carry StoreKit-style claims:
    transactionId, productId, purchaseDate (epoch ms), revocationDate (optional)
"""

from collections.abc import Callable
from datetime import UTC, datetime

import jwt
from structlog import get_logger

from entitlement_engine.config import Settings
from entitlement_engine.exceptions import ReceiptVerificationError
from entitlement_engine.models.domain import VerifiedReceipt, utc_now

logger = get_logger(__name__)


def _parse_timestamp(ms: object) -> datetime | None:
    if isinstance(ms, bool) or not isinstance(ms, (int, float)):
        return None
    return datetime.fromtimestamp(ms / 1000, tz=UTC)


class JWSReceiptVerifier:
    """
    ReceiptVerifier for signed receipts.

    Usage:
        verifier = JWSReceiptVerifier(public_key_pem, algorithms=["ES256"])
        verified = await verifier.verify("txn_001", signed_receipt)
    """

    def __init__(
        self,
        key: str | bytes,
        algorithms: list[str] | None = None,
        issuer: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not key:
            raise ValueError("Receipt verification key is required")
        self.key = key
        self.algorithms = algorithms or ["ES256"]
        self.issuer = issuer or None
        self._clock = clock

    @classmethod
    def from_settings(cls, config: Settings) -> "JWSReceiptVerifier":
        """Build a verifier from engine settings."""
        return cls(
            key=config.receipt_jws_public_key,
            algorithms=config.jws_algorithms,
            issuer=config.receipt_jws_issuer,
        )

    def _decode(self, transaction_id: str, receipt_data: str) -> dict[str, object]:
        options = {"require": ["iss"]} if self.issuer else {}
        try:
            payload: dict[str, object] = jwt.decode(
                receipt_data,
                self.key,
                algorithms=self.algorithms,
                issuer=self.issuer,
                options=options,
            )
            return payload
        except jwt.ExpiredSignatureError as e:
            raise ReceiptVerificationError(transaction_id, "receipt has expired") from e
        except jwt.InvalidTokenError as e:
            raise ReceiptVerificationError(transaction_id, f"invalid signature or claims: {e}") from e

    async def verify(self, transaction_id: str, receipt_data: str) -> VerifiedReceipt:
        """
        Verify a signed receipt for a transaction.

        Raises:
            ReceiptVerificationError: If the signature, issuer or claims are invalid
        """
        if not receipt_data:
            raise ReceiptVerificationError(transaction_id, "receipt data is empty")

        claims = self._decode(transaction_id, receipt_data)

        claimed_txn = claims.get("transactionId")
        if claimed_txn != transaction_id:
            logger.warning(
                "receipt_transaction_mismatch",
                transaction_id=transaction_id,
                claimed_transaction_id=claimed_txn,
            )
            raise ReceiptVerificationError(transaction_id, "transactionId claim does not match")

        product_id = claims.get("productId")
        if not isinstance(product_id, str) or not product_id:
            raise ReceiptVerificationError(transaction_id, "productId claim missing")

        if claims.get("revocationDate") is not None:
            raise ReceiptVerificationError(transaction_id, "purchase was revoked")

        now = self._clock()
        purchased_at = _parse_timestamp(claims.get("purchaseDate")) or now

        return VerifiedReceipt(
            transaction_id=transaction_id,
            product_id=product_id,
            purchased_at=purchased_at,
            verified_at=now,
        )
