"""Success/failure wrapper used by storage and lifecycle operations."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(StrEnum):
    """Why an operation failed."""

    SPAWN_FAILURE = "spawn_failure"   # child could not be started
    CRASH = "crash"                   # child exited unexpectedly
    STORAGE = "storage"               # store unavailable or corrupted
    TIMEOUT = "timeout"               # bounded operation ran out of time
    INVALID_STATE = "invalid_state"   # operation not allowed in current state
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either ``data`` (success) or ``error`` + ``kind`` (failure).

    Callers check ``success`` before touching ``data``.
    """

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    kind: Optional[ErrorKind] = None

    @classmethod
    def ok(cls, data: T = None) -> Result[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str | BaseException, kind: ErrorKind) -> Result[T]:
        message = str(error) if str(error) else type(error).__name__
        return cls(success=False, error=message, kind=kind)

    def to_response(self, **payload: Any) -> dict[str, Any]:
        """Render the user-visible ``{success, ...}`` shape."""
        if self.success:
            return {"success": True, **payload}
        return {"success": False, "error": self.error, "kind": str(self.kind), **payload}
