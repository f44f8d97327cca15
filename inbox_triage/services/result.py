"""Ok/error container for operations whose failures are expected outcomes."""

from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default

    def unwrap_or_raise(self, exc_factory: Callable[[str], Exception]) -> T:
        """Return the value or raise ``exc_factory("<code>: <error>")``."""
        if self.ok:
            return self.value
        raise exc_factory(f"{self.error_code}: {self.error}")
