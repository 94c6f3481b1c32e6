"""
Result pattern used at the persistence boundary.

Store operations report database trouble as a value instead of raising, so
callers decide explicitly whether to degrade or to propagate.

Example:
    result = await store.get("market:assets:v1", "ttl")
    match result:
        case Success(entry):
            ...
        case Failure(error):
            logger.warning("cache unavailable: %s", error)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True, slots=True)
class Success(Generic[T]):
    """Represents a successful operation result."""

    value: T

    def is_success(self) -> bool:
        return True

    def is_failure(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, _default: T) -> T:
        return self.value

    def __repr__(self) -> str:
        return f"Success({self.value!r})"


@dataclass(frozen=True, slots=True)
class Failure(Generic[E]):
    """Represents a failed operation result."""

    error: E

    def is_success(self) -> bool:
        return False

    def is_failure(self) -> bool:
        return True

    def unwrap(self):
        """Raise the wrapped error (or a RuntimeError describing it)."""
        original = getattr(self.error, "original_exception", None)
        if isinstance(original, Exception):
            raise original
        if isinstance(self.error, Exception):
            raise self.error
        raise RuntimeError(f"Operation failed: {self.error}")

    def unwrap_or(self, default: T) -> T:
        return default

    def __repr__(self) -> str:
        return f"Failure({self.error!r})"


Result = Union[Success[T], Failure[E]]


def success(value: T) -> Success[T]:
    return Success(value)


def failure(error: E) -> Failure[E]:
    return Failure(error)


@dataclass(frozen=True, slots=True)
class DatabaseError:
    """Database operation error."""

    operation: str
    message: str
    original_exception: Exception | None = None

    def __str__(self) -> str:
        return f"Database error during {self.operation}: {self.message}"


__all__ = [
    "Success",
    "Failure",
    "Result",
    "success",
    "failure",
    "DatabaseError",
]
