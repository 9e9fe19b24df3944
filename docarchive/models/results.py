"""Tagged outcomes returned by the credential lifecycle operations.

Every public operation returns either ``Ok(value)`` or ``Failure(kind,
message)``. Infrastructure faults are not represented here; they are
raised.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar, Union

T = TypeVar("T")


class FailureKind(str, Enum):
    """Business-rule failures a caller is expected to handle."""

    CONFLICT = "conflict"
    UNAUTHENTICATED = "unauthenticated"
    NOT_FOUND = "not_found"
    INVALID_OR_EXPIRED = "invalid_or_expired"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    message: str

    @property
    def ok(self) -> bool:
        return False


AuthResult = Union[Ok[T], Failure]


def conflict(message: str) -> Failure:
    return Failure(FailureKind.CONFLICT, message)


def unauthenticated(message: str) -> Failure:
    return Failure(FailureKind.UNAUTHENTICATED, message)


def not_found(message: str) -> Failure:
    return Failure(FailureKind.NOT_FOUND, message)


def invalid_or_expired(message: str) -> Failure:
    return Failure(FailureKind.INVALID_OR_EXPIRED, message)
