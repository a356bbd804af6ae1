"""
Purchase Authorization Guard.

Users may only read or delete their own purchase records.

SECURITY: This is a critical security component.
- No principal means NOT_AUTHENTICATED, whatever the other arguments are
- Owner comparison is exact and case-sensitive (no normalization)
- Stateless: safe to call concurrently without synchronization
"""

from structlog import get_logger

from entitlement_engine.models.domain import UserContext
from entitlement_engine.models.result import EngineError, ErrorCode, Ok, Result, fail
from entitlement_engine.providers.protocols import CurrentUserProvider

logger = get_logger(__name__)


def _is_blank(value: object) -> bool:
    return not isinstance(value, str) or value.strip() == ""


class AuthorizationGuard:
    """Owner-only access checks for purchase history and deletion."""

    def __init__(self, current_user: CurrentUserProvider) -> None:
        self._current_user = current_user

    def current_user(self) -> UserContext | None:
        """
        Resolve the current principal.

        An accessor that raises is treated as "nobody is logged in".
        """
        try:
            user = self._current_user()
        except Exception:
            logger.exception("principal_lookup_failed")
            return None

        if user is None or _is_blank(getattr(user, "id", None)):
            return None
        return user

    def can_access_history(self, target_user_id: str) -> Result[bool, EngineError]:
        """
        Check whether the current user may read target_user_id's purchases.

        Returns:
            Ok(True) only when the principal's ID equals target_user_id
        """
        principal = self.current_user()
        if principal is None:
            return fail(
                ErrorCode.NOT_AUTHENTICATED,
                "User is not authenticated. Please log in to access purchase history.",
            )

        if _is_blank(target_user_id):
            return fail(ErrorCode.INVALID_INPUT, "Target user ID cannot be empty")

        allowed = principal.id == target_user_id
        if not allowed:
            logger.warning(
                "purchase_history_access_denied",
                principal_id=principal.id,
                target_user_id=target_user_id,
            )
        return Ok(allowed)

    def can_delete_purchase(
        self, target_user_id: str, transaction_id: str
    ) -> Result[bool, EngineError]:
        """
        Check whether the current user may delete a purchase owned by target_user_id.

        Returns:
            Ok(True) only when the principal's ID equals target_user_id
        """
        principal = self.current_user()
        if principal is None:
            return fail(
                ErrorCode.NOT_AUTHENTICATED,
                "User is not authenticated. Please log in to delete purchase records.",
            )

        if _is_blank(target_user_id):
            return fail(ErrorCode.INVALID_INPUT, "Target user ID cannot be empty")

        if _is_blank(transaction_id):
            return fail(ErrorCode.INVALID_INPUT, "Transaction ID cannot be empty")

        allowed = principal.id == target_user_id
        if not allowed:
            logger.warning(
                "purchase_delete_denied",
                principal_id=principal.id,
                target_user_id=target_user_id,
                transaction_id=transaction_id,
            )
        return Ok(allowed)
