"""
Ledger record types.

Stages are ordered lifecycle phases of a tracked crop batch. Records are
plain dataclasses; a ProvenanceEntry is immutable apart from the one-way
verified flag, which only the registry flips.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Any, Dict, Optional


class Stage(IntEnum):
    """Lifecycle phases, encoded 0-5."""
    PLANTING = 0
    GROWING = 1
    HARVESTING = 2
    PROCESSING = 3
    SHIPPING = 4
    SALE = 5

    @classmethod
    def parse(cls, value: Any) -> int:
        """Accept a stage number or a case-insensitive stage name."""
        if isinstance(value, str) and not value.strip().lstrip("-").isdigit():
            try:
                return cls[value.strip().upper()].value
            except KeyError:
                raise ValueError(f"Unknown stage name: {value}") from None
        return int(value)


MIN_STAGE = int(Stage.PLANTING)
MAX_STAGE = int(Stage.SALE)


@dataclass(frozen=True)
class TokenRegistration:
    """Registration record captured when a token enters the ledger."""
    registered_at: int
    owner: str

    def to_dict(self) -> Dict[str, Any]:
        return {"registered_at": self.registered_at, "owner": self.owner}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenRegistration":
        return cls(registered_at=int(data["registered_at"]), owner=str(data["owner"]))


@dataclass(frozen=True)
class ProvenanceEntry:
    """One lifecycle-stage entry for a token."""
    timestamp: int
    updater: str
    metadata: str
    location_hash: Optional[bytes] = None
    verified: bool = False

    def mark_verified(self) -> "ProvenanceEntry":
        return replace(self, verified=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "updater": self.updater,
            "metadata": self.metadata,
            "location_hash": self.location_hash.hex() if self.location_hash is not None else None,
            "verified": self.verified,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProvenanceEntry":
        loc = data.get("location_hash")
        return cls(
            timestamp=int(data["timestamp"]),
            updater=str(data["updater"]),
            metadata=str(data["metadata"]),
            location_hash=bytes.fromhex(loc) if loc is not None else None,
            verified=bool(data.get("verified", False)),
        )


@dataclass(frozen=True)
class AuthorizedUpdater:
    """Grant allowing a non-owner identity to submit entries for a token."""
    role: str
    added_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "added_at": self.added_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthorizedUpdater":
        return cls(role=str(data["role"]), added_at=int(data["added_at"]))
