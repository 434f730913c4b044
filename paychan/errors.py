"""
Error values for paychan.

Operations never raise for expected conditions. They return a Result that
carries either a value or a StoreError tagged with an ErrorKind:

- NOT_FOUND: entity absent (no channel, no payments, no token)
- IO_ERROR: storage failure or failed authoritative-ledger lookup
- INVARIANT_VIOLATION: caller asked for an impossible state
  (spend decrease, spend above deposit, negative amounts)

StoreAbort is the only exception in this module. It is raised inside a
transaction scope so the transaction rolls back, and is turned back into a
Result at the operation boundary.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Error categories. str-valued for JSON friendliness."""
    NOT_FOUND = 'not_found'
    IO_ERROR = 'io_error'
    INVARIANT_VIOLATION = 'invariant_violation'


@dataclass(frozen=True)
class StoreError:
    """A tagged error value."""
    kind: ErrorKind
    message: str
    cause: Optional[BaseException] = None

    def to_dict(self) -> dict:
        return {"error": self.kind.value, "message": self.message}


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Success-or-error value returned by every store operation.

    Exactly one of value/error is meaningful: when error is None the
    operation succeeded and value holds its output (which may itself be
    None for operations with nothing to return).
    """
    value: Optional[T] = None
    error: Optional[StoreError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def is_not_found(self) -> bool:
        return self.error is not None and self.error.kind == ErrorKind.NOT_FOUND

    @property
    def is_io_error(self) -> bool:
        return self.error is not None and self.error.kind == ErrorKind.IO_ERROR

    @property
    def is_invariant_violation(self) -> bool:
        return (self.error is not None and
                self.error.kind == ErrorKind.INVARIANT_VIOLATION)

    def unwrap(self) -> T:
        """
        Return the value, or raise StoreAbort carrying the error.

        Meant for use inside a transaction scope, where raising rolls the
        transaction back.
        """
        if self.error is not None:
            raise StoreAbort(self.error)
        return self.value


class StoreAbort(Exception):
    """Raised inside a transaction to roll it back with a tagged error."""

    def __init__(self, error: StoreError):
        super().__init__(error.message)
        self.error = error


def success(value: Any = None) -> Result:
    return Result(value=value)


def failure(kind: ErrorKind, message: str,
            cause: Optional[BaseException] = None) -> Result:
    return Result(error=StoreError(kind=kind, message=message, cause=cause))


def not_found(message: str) -> Result:
    return failure(ErrorKind.NOT_FOUND, message)


def io_error(message: str, cause: Optional[BaseException] = None) -> Result:
    return failure(ErrorKind.IO_ERROR, message, cause)


def invariant_violation(message: str) -> Result:
    return failure(ErrorKind.INVARIANT_VIOLATION, message)
