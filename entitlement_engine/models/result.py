"""
Result Types - Tagged success/error values returned by every engine operation.

NO EXCEPTIONS ACROSS THE BOUNDARY - callers branch on Ok/Err explicitly.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, NoReturn, TypeAlias, TypeVar

from entitlement_engine.exceptions import (
    DatabaseError,
    InvalidResponseError,
    OwnershipConflictError,
    PaymentCancelledError,
    PaymentProviderError,
    ProviderNetworkError,
    ReceiptVerificationError,
    StoreProblemError,
)

T = TypeVar("T")
E = TypeVar("E")


class ErrorCode(str, Enum):
    """Closed set of engine error codes."""

    CANCELLED = "CANCELLED"
    NETWORK_ERROR = "NETWORK_ERROR"
    STORE_PROBLEM_ERROR = "STORE_PROBLEM_ERROR"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    DB_ERROR = "DB_ERROR"
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    INVALID_INPUT = "INVALID_INPUT"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    NOT_FOUND = "NOT_FOUND"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"

    @property
    def default_retryable(self) -> bool:
        """Whether errors with this code are retryable unless stated otherwise."""
        return self in _RETRYABLE_CODES


_RETRYABLE_CODES = frozenset(
    {
        ErrorCode.NETWORK_ERROR,
        ErrorCode.STORE_PROBLEM_ERROR,
        ErrorCode.VERIFICATION_FAILED,
        ErrorCode.DB_ERROR,
    }
)


@dataclass(frozen=True)
class EngineError:
    """Error value carried by Err results."""

    code: ErrorCode
    message: str
    retryable: bool
    requires_manual_intervention: bool = False

    @classmethod
    def of(
        cls,
        code: ErrorCode,
        message: str,
        retryable: bool | None = None,
        requires_manual_intervention: bool = False,
    ) -> "EngineError":
        """Build an error, defaulting retryable from the code."""
        return cls(
            code=code,
            message=message,
            retryable=code.default_retryable if retryable is None else retryable,
            requires_manual_intervention=requires_manual_intervention,
        )


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful result."""

    value: T

    @property
    def success(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err(Generic[E]):
    """Failed result."""

    error: E

    @property
    def success(self) -> bool:
        return False

    def unwrap(self) -> NoReturn:
        raise ValueError(f"Called unwrap on Err: {self.error}")


Result: TypeAlias = Ok[T] | Err[E]


def fail(code: ErrorCode, message: str, retryable: bool | None = None) -> Err[EngineError]:
    """Shorthand for an Err wrapping an EngineError."""
    return Err(EngineError.of(code, message, retryable=retryable))


def error_from_exception(exc: BaseException) -> EngineError:
    """
    Map a collaborator exception to an engine error.

    Anything not recognised is UNKNOWN_ERROR, which is never retryable.
    """
    if isinstance(exc, PaymentCancelledError):
        return EngineError.of(ErrorCode.CANCELLED, str(exc))
    if isinstance(exc, ProviderNetworkError):
        return EngineError.of(ErrorCode.NETWORK_ERROR, str(exc))
    if isinstance(exc, StoreProblemError):
        return EngineError.of(ErrorCode.STORE_PROBLEM_ERROR, str(exc))
    if isinstance(exc, ReceiptVerificationError):
        return EngineError.of(ErrorCode.VERIFICATION_FAILED, str(exc))
    if isinstance(exc, DatabaseError):
        return EngineError.of(ErrorCode.DB_ERROR, str(exc))
    if isinstance(exc, OwnershipConflictError):
        return EngineError.of(ErrorCode.PERMISSION_DENIED, str(exc))
    if isinstance(exc, InvalidResponseError):
        return EngineError.of(ErrorCode.INVALID_RESPONSE, str(exc))
    if isinstance(exc, PaymentProviderError):
        return EngineError.of(ErrorCode.UNKNOWN_ERROR, str(exc))
    return EngineError.of(ErrorCode.UNKNOWN_ERROR, f"Unexpected error: {exc}")
