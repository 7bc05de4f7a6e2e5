"""
Ledger error kinds and operation results.

Mutating registry operations do not raise for rule violations. They return a
LedgerResult carrying either the success value or one ErrorCode. Callers that
prefer exceptions convert with LedgerResult.unwrap() or raise_if_error().

Numeric codes are stable and match the reference ledger deployment, so they
can be surfaced to external clients unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorCode(Enum):
    """Distinguished, enumerable rejection kinds."""
    UNAUTHORIZED = (100, "Unauthorized")
    PAUSED = (103, "Paused")
    ALREADY_INITIALIZED = (104, "AlreadyInitialized")
    METADATA_TOO_LONG = (105, "MetadataTooLong")
    INVALID_UPDATER = (106, "InvalidUpdater")
    STAGE_OUT_OF_ORDER = (107, "StageOutOfOrder")
    TOKEN_NOT_REGISTERED = (108, "TokenNotRegistered")
    INVALID_LOCATION = (110, "InvalidLocation")
    ALREADY_REGISTERED = (111, "AlreadyRegistered")
    NOT_FOUND = (112, "NotFound")

    def __init__(self, code: int, label: str):
        self.code = code
        self.label = label

    def __str__(self) -> str:
        return self.label


class RegistryError(Exception):
    """Raised when a failed LedgerResult is unwrapped."""

    def __init__(self, error: ErrorCode, message: str = ""):
        self.error = error
        self.message = message or error.label
        super().__init__(f"{error.label} ({error.code}): {self.message}")

    @property
    def code(self) -> int:
        return self.error.code


@dataclass(frozen=True)
class LedgerResult(Generic[T]):
    """Outcome of a mutating registry operation."""
    ok: bool
    value: Optional[T] = None
    error: Optional[ErrorCode] = None

    @classmethod
    def success(cls, value: Any = True) -> "LedgerResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: ErrorCode) -> "LedgerResult":
        return cls(ok=False, error=error)

    def unwrap(self) -> T:
        """Return the success value or raise RegistryError."""
        self.raise_if_error()
        return self.value  # type: ignore[return-value]

    def raise_if_error(self) -> None:
        if not self.ok:
            raise RegistryError(self.error)  # type: ignore[arg-type]

    def to_dict(self) -> dict:
        if self.ok:
            return {"ok": True, "value": self.value}
        return {"ok": False, "error": self.error.label, "code": self.error.code}

    def __bool__(self) -> bool:
        return self.ok
