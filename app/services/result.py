from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of a lookup or external call that callers branch on instead of catching.

    Error codes in use: ``not_found``, ``wrong_type``, ``llm_error``.
    """

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

    def log_context(self, **context) -> dict:
        """Logging context for a failed result, merged with the caller's own keys."""
        if not self.ok:
            context["error"] = self.error
            context["code"] = self.error_code
        return context

    def __bool__(self) -> bool:
        return self.ok
