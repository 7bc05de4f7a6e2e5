"""
Audit sink for ledger notifications.

The registry emits one notification per accepted state change. Notifications
are observational only: nothing in the registry reads them back, and a sink
failure never changes the outcome of an operation.

AuditLog keeps a tamper-evident hash chain. Each event commits to the digest
of its predecessor, so editing or dropping an event breaks verify_chain().
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple

from cropledger.core import canonical_json_bytes, sha256_bytes
from cropledger.observability import LedgerLogger


class AuditEventType(Enum):
    """Kinds of ledger notifications."""
    TOKEN_REGISTERED = "token_registered"
    ENTRY_ADDED = "entry_added"
    ENTRY_VERIFIED = "entry_verified"
    UPDATER_ADDED = "updater_added"
    UPDATER_REMOVED = "updater_removed"

    # Administrative
    REGISTRY_PAUSED = "registry_paused"
    REGISTRY_UNPAUSED = "registry_unpaused"
    ADMIN_TRANSFERRED = "admin_transferred"
    SOURCE_CHANGED = "source_changed"


@dataclass
class AuditEvent:
    """An audit log entry."""
    event_id: str
    event_type: AuditEventType
    token_id: Optional[int]
    actor: str
    timestamp: int
    details: Dict[str, Any] = field(default_factory=dict)

    # Tamper evidence
    previous_event_digest: Optional[str] = None
    event_digest: str = ""

    def __post_init__(self):
        if not self.event_digest:
            self.event_digest = self.compute_digest()

    def compute_digest(self) -> str:
        content = {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "token_id": self.token_id,
            "actor": self.actor,
            "timestamp": self.timestamp,
            "details": self.details,
            "previous_event_digest": self.previous_event_digest,
        }
        return sha256_bytes(canonical_json_bytes(content))

    def describe(self) -> str:
        """Human-readable one-liner."""
        subject = f"token {self.token_id}" if self.token_id is not None else "registry"
        return f"{self.event_type.value} on {subject} by {self.actor} at {self.timestamp}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "token_id": self.token_id,
            "actor": self.actor,
            "timestamp": self.timestamp,
            "details": self.details,
            "previous_event_digest": self.previous_event_digest,
            "event_digest": self.event_digest,
        }


class AuditSink(Protocol):
    """Anything that accepts ledger notifications."""

    def emit(
        self,
        event_type: AuditEventType,
        token_id: Optional[int],
        actor: str,
        timestamp: int,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


class NullAuditSink:
    """Discards every notification."""

    def emit(
        self,
        event_type: AuditEventType,
        token_id: Optional[int],
        actor: str,
        timestamp: int,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        return None


class AuditLog:
    """
    In-memory, hash-chained audit sink.

    Events are append-only and numbered sequentially per log.
    """

    def __init__(self):
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def emit(
        self,
        event_type: AuditEventType,
        token_id: Optional[int],
        actor: str,
        timestamp: int,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.record(event_type, token_id, actor, timestamp, details)

    def record(
        self,
        event_type: AuditEventType,
        token_id: Optional[int],
        actor: str,
        timestamp: int,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        """Append an event and return it."""
        with self._lock:
            previous_digest = self._events[-1].event_digest if self._events else None
            event = AuditEvent(
                event_id=f"evt-{len(self._events) + 1:012d}",
                event_type=event_type,
                token_id=token_id,
                actor=actor,
                timestamp=timestamp,
                details=dict(details or {}),
                previous_event_digest=previous_digest,
            )
            self._events.append(event)
            return event

    def verify_chain(self) -> Tuple[bool, Optional[int]]:
        """
        Verify the audit log chain integrity.

        Returns (valid, first_invalid_index).
        """
        with self._lock:
            for i, event in enumerate(self._events):
                if event.compute_digest() != event.event_digest:
                    return (False, i)

                expected_prev = self._events[i - 1].event_digest if i > 0 else None
                if event.previous_event_digest != expected_prev:
                    return (False, i)

            return (True, None)

    def get_events(
        self,
        token_id: Optional[int] = None,
        event_type: Optional[AuditEventType] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEvent]:
        """Query events, oldest first."""
        with self._lock:
            events = list(self._events)

        if token_id is not None:
            events = [e for e in events if e.token_id == token_id]
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]

        if limit is not None:
            return events[-limit:] if limit > 0 else []
        return events

    def export(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [e.to_dict() for e in self._events]

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class LoggingAuditSink:
    """Forwards notifications to a structured logger."""

    def __init__(self, logger: LedgerLogger):
        self._logger = logger

    def emit(
        self,
        event_type: AuditEventType,
        token_id: Optional[int],
        actor: str,
        timestamp: int,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._logger.info(
            f"AUDIT: {event_type.value}",
            operation="audit",
            event_type=event_type.value,
            token_id=token_id,
            actor=actor,
            ledger_time=timestamp,
            **(details or {}),
        )


class FanOutAuditSink:
    """Delivers each notification to several sinks in order."""

    def __init__(self, *sinks: AuditSink):
        self._sinks = list(sinks)

    def emit(
        self,
        event_type: AuditEventType,
        token_id: Optional[int],
        actor: str,
        timestamp: int,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        for sink in self._sinks:
            sink.emit(event_type, token_id, actor, timestamp, details)
