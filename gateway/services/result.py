from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar, Union

T = TypeVar("T")

SERVICE_UNAVAILABLE_MESSAGE = "The service is temporarily unavailable. Please try again later."


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T = None) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    def to_dict(self) -> dict:
        if self.ok:
            return {"success": True}
        return {"success": False, "error": self.error, "error_code": self.error_code}


@dataclass(frozen=True)
class FallbackBody:
    """Response body returned in place of a downstream reply."""

    status: int = 503
    error: str = "Service Unavailable"
    message: str = SERVICE_UNAVAILABLE_MESSAGE
    circuit_breaker: bool = True

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "data": {
                "error": self.error,
                "message": self.message,
                "circuit_breaker": self.circuit_breaker,
            },
        }


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Downstream call completed; ``value`` is the real result."""

    value: T


@dataclass(frozen=True)
class Fallback:
    """Downstream call skipped or failed.

    reason is one of ``open`` (rejected without calling), ``failure`` or ``timeout``.
    """

    reason: str
    body: FallbackBody = field(default_factory=FallbackBody)
    detail: Optional[str] = None

    @property
    def message(self) -> str:
        return self.body.message


BreakerOutcome = Union[Ok[Any], Fallback]
