# errors.py
"""Typed results returned by the service layer.

Services never raise for business-rule violations; they return a ``Result``
carrying either a value or an ``ErrorKind`` plus a human readable message.
Route handlers call ``unwrap()`` which turns a failure into an
``HTTPException`` with the status mapped below.
"""
import enum
from dataclasses import dataclass
from typing import Generic, TypeVar

from fastapi import HTTPException, status

T = TypeVar("T")


class ErrorKind(str, enum.Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_INPUT = "invalid_input"
    INVALID_SIGNATURE = "invalid_signature"
    UNAUTHENTICATED = "unauthenticated"
    UNAUTHORIZED = "unauthorized"
    DEPENDENCY = "dependency"
    INTERNAL = "internal"


STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.INVALID_INPUT: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INVALID_SIGNATURE: status.HTTP_400_BAD_REQUEST,
    ErrorKind.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.UNAUTHORIZED: status.HTTP_403_FORBIDDEN,
    ErrorKind.DEPENDENCY: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@dataclass(frozen=True)
class Result(Generic[T]):
    value: T | None = None
    error: ErrorKind | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T = None, message: str = "") -> "Result[T]":
        return cls(value=value, message=message)

    @classmethod
    def failure(cls, error: ErrorKind, message: str) -> "Result[T]":
        return cls(error=error, message=message)

    def unwrap(self) -> T:
        if self.error is not None:
            raise HTTPException(status_code=STATUS_BY_KIND[self.error], detail=self.message)
        return self.value
