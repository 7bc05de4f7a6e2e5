"""
Provenance Registry

Stage-ordered, access-controlled provenance ledger. For each registered token
the registry keeps an append-only, strictly increasing sequence of
lifecycle-stage entries and decides who may register tokens, submit entries,
verify entries and manage authorized updaters.

Control Flow:

    caller ──► operation ──► ordered precondition checks ──► atomic write
                                   │                             │
                     OwnershipSource / VerifiedIdentitySource    ├─► audit sink
                     (queried during validation only)            └─► structured log

Every mutating operation runs under the registry's re-entrant lock and
returns a LedgerResult. A rejected call performs no writes, so the state
root before and after a rejection is identical.

Entry submission checks, first failure wins:

    1. PAUSED                 registry is paused
    2. INVALID_UPDATER        caller is not a verified originator
    3. TOKEN_NOT_REGISTERED   token has no registration
    4. UNAUTHORIZED           caller is neither owner nor authorized updater
    5. STAGE_OUT_OF_ORDER     not (current_stage < stage <= MAX_STAGE)
    6. METADATA_TOO_LONG      metadata exceeds the configured limit
    7. INVALID_LOCATION       supplied fingerprint exceeds the configured limit
"""

from __future__ import annotations

import pathlib
import threading
from typing import Any, Dict, List, Optional, Tuple, Union

from cropledger.audit import AuditEventType, AuditSink, NullAuditSink
from cropledger.config import RegistryConfig, get_config
from cropledger.core import Clock, unix_clock
from cropledger.errors import ErrorCode, LedgerResult, RegistryError
from cropledger.models import (
    MAX_STAGE,
    AuthorizedUpdater,
    ProvenanceEntry,
    Stage,
    TokenRegistration,
)
from cropledger.observability import LedgerLayer, get_logger, timed_operation
from cropledger.sources import OwnershipSource, RegisteredOwnerSource, VerifiedIdentitySource
from cropledger.state import LedgerState, load_state, save_state, state_root

logger = get_logger("registry", LedgerLayer.REGISTRY)

LocationInput = Union[bytes, bytearray, memoryview, str, None]


def _require_token_id(token_id: Any) -> int:
    if isinstance(token_id, bool) or not isinstance(token_id, int):
        raise TypeError(f"token_id must be an int, got {type(token_id).__name__}")
    return token_id


def _require_stage(stage: Any) -> int:
    if isinstance(stage, bool) or not isinstance(stage, int):
        raise TypeError(f"stage must be an int, got {type(stage).__name__}")
    return int(stage)


def _require_identity(value: Any, field_name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a str, got {type(value).__name__}")
    return value


def _coerce_location(location_hash: LocationInput) -> Optional[bytes]:
    if location_hash is None:
        return None
    if isinstance(location_hash, str):
        return location_hash.encode("utf-8")
    if isinstance(location_hash, (bytes, bytearray, memoryview)):
        return bytes(location_hash)
    raise TypeError(
        f"location_hash must be bytes or str, got {type(location_hash).__name__}"
    )


class ProvenanceRegistry:
    """
    The ledger's state-transition and authorization engine.

    Args:
        ownership_source: resolves the current owner of a token
        identity_source: affirms verified originator identities
        admin: deploying identity; defaults to ``registry.default_admin``
        state: existing state to continue from (e.g. a loaded snapshot)
        audit_sink: receives observational notifications
        clock: ledger time source returning integers
        config: registry settings; defaults to the global configuration
    """

    def __init__(
        self,
        ownership_source: OwnershipSource,
        identity_source: VerifiedIdentitySource,
        *,
        admin: Optional[str] = None,
        state: Optional[LedgerState] = None,
        audit_sink: Optional[AuditSink] = None,
        clock: Optional[Clock] = None,
        config: Optional[RegistryConfig] = None,
    ):
        # picks up the current log settings for the shared module logger
        get_logger("registry", LedgerLayer.REGISTRY)
        self._config = config or get_config().registry
        self._lock = threading.RLock()
        self._clock = clock or unix_clock
        self._audit: AuditSink = audit_sink or NullAuditSink()

        if state is None:
            state = LedgerState(admin=admin or self._config.default_admin.get())
        elif admin is not None and admin != state.admin:
            raise ValueError("admin conflicts with the admin recorded in state")
        self._state = state

        self._ownership = self._attach(ownership_source)
        self._identity = identity_source
        self._state.ownership_source = ownership_source.address
        self._state.identity_source = identity_source.address

    @classmethod
    def from_snapshot(
        cls,
        path: Union[str, pathlib.Path],
        ownership_source: OwnershipSource,
        identity_source: VerifiedIdentitySource,
        **kwargs: Any,
    ) -> "ProvenanceRegistry":
        """Continue a ledger from a saved snapshot."""
        return cls(ownership_source, identity_source, state=load_state(path), **kwargs)

    def save(self, path: Union[str, pathlib.Path]) -> str:
        """Write a snapshot and return its digest."""
        with self._lock:
            digest = save_state(self._state, path)
        logger.info("Ledger snapshot saved", operation="save", path=str(path), digest=digest)
        return digest

    def _attach(self, source: OwnershipSource) -> OwnershipSource:
        if isinstance(source, RegisteredOwnerSource):
            source.bind(self)
        return source

    # -------------------------------------------------------------------------
    # internals
    # -------------------------------------------------------------------------

    def _reject(self, operation: str, caller: str, error: ErrorCode, **context: Any) -> LedgerResult:
        logger.warning(
            f"{operation} rejected: {error.label}",
            operation=operation,
            error_code=error.label,
            caller=caller,
            **context,
        )
        return LedgerResult.failure(error)

    def _emit(
        self,
        event_type: AuditEventType,
        token_id: Optional[int],
        actor: str,
        timestamp: int,
        **details: Any,
    ) -> None:
        try:
            self._audit.emit(event_type, token_id, actor, timestamp, details)
        except Exception:
            # Notifications are observational; the write has already happened.
            logger.error(
                f"Audit sink failed for {event_type.value}",
                error_code="AuditSinkFailure",
                exc_info=True,
                token_id=token_id,
            )

    def _is_admin(self, caller: str) -> bool:
        return caller == self._state.admin

    def _admin_only(self, operation: str, caller: str) -> Optional[LedgerResult]:
        _require_identity(caller, "caller")
        if not self._is_admin(caller):
            return self._reject(operation, caller, ErrorCode.UNAUTHORIZED)
        return None

    def _is_owner(self, token_id: int, caller: str) -> bool:
        reg = self._state.registrations.get(token_id)
        return reg is not None and reg.owner == caller

    # -------------------------------------------------------------------------
    # administrative operations
    # -------------------------------------------------------------------------

    def pause(self, caller: str) -> LedgerResult:
        """Block entry submission until unpaused."""
        with self._lock:
            denied = self._admin_only("pause", caller)
            if denied is not None:
                return denied
            self._state.paused = True
            self._emit(AuditEventType.REGISTRY_PAUSED, None, caller, self._clock())
            logger.info("Registry paused", operation="pause", caller=caller)
            return LedgerResult.success(True)

    def unpause(self, caller: str) -> LedgerResult:
        with self._lock:
            denied = self._admin_only("unpause", caller)
            if denied is not None:
                return denied
            self._state.paused = False
            self._emit(AuditEventType.REGISTRY_UNPAUSED, None, caller, self._clock())
            logger.info("Registry unpaused", operation="unpause", caller=caller)
            return LedgerResult.success(True)

    def transfer_admin(self, caller: str, new_admin: str) -> LedgerResult:
        """Replace the admin identity. Effective immediately, no handoff step."""
        _require_identity(new_admin, "new_admin")
        with self._lock:
            denied = self._admin_only("transfer_admin", caller)
            if denied is not None:
                return denied
            self._state.admin = new_admin
            self._emit(
                AuditEventType.ADMIN_TRANSFERRED, None, caller, self._clock(),
                new_admin=new_admin,
            )
            logger.info("Admin transferred", operation="transfer_admin", caller=caller, new_admin=new_admin)
            return LedgerResult.success(True)

    def set_ownership_source(self, caller: str, source: OwnershipSource) -> LedgerResult:
        with self._lock:
            denied = self._admin_only("set_ownership_source", caller)
            if denied is not None:
                return denied
            self._ownership = self._attach(source)
            self._state.ownership_source = source.address
            self._emit(
                AuditEventType.SOURCE_CHANGED, None, caller, self._clock(),
                source="ownership", address=source.address,
            )
            logger.info("Ownership source rewired", operation="set_ownership_source", address=source.address)
            return LedgerResult.success(True)

    def set_verified_identity_source(self, caller: str, source: VerifiedIdentitySource) -> LedgerResult:
        with self._lock:
            denied = self._admin_only("set_verified_identity_source", caller)
            if denied is not None:
                return denied
            self._identity = source
            self._state.identity_source = source.address
            self._emit(
                AuditEventType.SOURCE_CHANGED, None, caller, self._clock(),
                source="identity", address=source.address,
            )
            logger.info("Identity source rewired", operation="set_verified_identity_source", address=source.address)
            return LedgerResult.success(True)

    # -------------------------------------------------------------------------
    # token registration
    # -------------------------------------------------------------------------

    @timed_operation(logger, "register_token")
    def register_token(self, caller: str, token_id: int) -> LedgerResult:
        """
        Register a token and open its stage pointer at PLANTING.

        The owner-of-record follows ``registry.owner_policy``:
        ``caller`` records the caller, ``resolved`` records the identity the
        ownership source returns (falling back to the caller when the source
        has no answer).
        """
        _require_identity(caller, "caller")
        _require_token_id(token_id)
        with self._lock:
            resolved = self._ownership.resolve_owner(token_id)

            if token_id in self._state.registrations:
                return self._reject("register_token", caller, ErrorCode.ALREADY_INITIALIZED, token_id=token_id)

            owner = caller
            if self._config.owner_policy.get() == "resolved":
                if resolved:
                    owner = resolved
                else:
                    logger.warning(
                        "Ownership source has no owner; recording caller",
                        operation="register_token",
                        token_id=token_id,
                        caller=caller,
                    )

            now = self._clock()
            self._state.registrations[token_id] = TokenRegistration(registered_at=now, owner=owner)
            self._state.current_stage[token_id] = int(Stage.PLANTING)
            self._state.update_count[token_id] = 0

            self._emit(AuditEventType.TOKEN_REGISTERED, token_id, caller, now, owner=owner)
            logger.info(
                "Token registered",
                operation="register_token",
                token_id=token_id,
                owner=owner,
                resolved_owner=resolved,
            )
            return LedgerResult.success(True)

    # -------------------------------------------------------------------------
    # entry submission
    # -------------------------------------------------------------------------

    @timed_operation(logger, "add_provenance_entry")
    def add_provenance_entry(
        self,
        caller: str,
        token_id: int,
        stage: int,
        metadata: str,
        location_hash: LocationInput = None,
    ) -> LedgerResult:
        """Append the entry for ``stage`` and advance the token to it."""
        _require_identity(caller, "caller")
        _require_token_id(token_id)
        stage = _require_stage(stage)
        if not isinstance(metadata, str):
            raise TypeError(f"metadata must be a str, got {type(metadata).__name__}")
        location = _coerce_location(location_hash)

        with self._lock:
            op = "add_provenance_entry"
            state = self._state

            if state.paused:
                return self._reject(op, caller, ErrorCode.PAUSED, token_id=token_id)

            if not self._identity.is_eligible_originator(caller):
                return self._reject(op, caller, ErrorCode.INVALID_UPDATER, token_id=token_id)

            if token_id not in state.registrations:
                return self._reject(op, caller, ErrorCode.TOKEN_NOT_REGISTERED, token_id=token_id)

            if not (self._is_owner(token_id, caller) or caller in state.grants.get(token_id, {})):
                return self._reject(op, caller, ErrorCode.UNAUTHORIZED, token_id=token_id)

            current = state.current_stage.get(token_id, 0)
            if not (current < stage <= MAX_STAGE):
                return self._reject(
                    op, caller, ErrorCode.STAGE_OUT_OF_ORDER,
                    token_id=token_id, stage=stage, current_stage=current,
                )

            if len(metadata) > self._config.max_metadata_length.get():
                return self._reject(
                    op, caller, ErrorCode.METADATA_TOO_LONG,
                    token_id=token_id, metadata_length=len(metadata),
                )

            if location is not None and len(location) > self._config.max_location_length.get():
                return self._reject(
                    op, caller, ErrorCode.INVALID_LOCATION,
                    token_id=token_id, location_length=len(location),
                )

            now = self._clock()
            state.entries.setdefault(token_id, {})[stage] = ProvenanceEntry(
                timestamp=now,
                updater=caller,
                metadata=metadata,
                location_hash=location,
                verified=False,
            )
            state.current_stage[token_id] = stage
            state.update_count[token_id] = state.update_count.get(token_id, 0) + 1
            state.total_updates += 1

            self._emit(AuditEventType.ENTRY_ADDED, token_id, caller, now, stage=stage)
            logger.info(
                "Provenance entry added",
                operation=op,
                token_id=token_id,
                stage=Stage(stage).name.lower(),
                updater=caller,
            )
            return LedgerResult.success(True)

    # -------------------------------------------------------------------------
    # verification
    # -------------------------------------------------------------------------

    def verify_entry(self, caller: str, token_id: int, stage: int) -> LedgerResult:
        """Mark an entry verified. One-way and idempotent."""
        _require_identity(caller, "caller")
        _require_token_id(token_id)
        stage = _require_stage(stage)
        with self._lock:
            entry = self._state.entries.get(token_id, {}).get(stage)
            if entry is None:
                return self._reject("verify_entry", caller, ErrorCode.NOT_FOUND, token_id=token_id, stage=stage)

            if not self._is_admin(caller):
                return self._reject("verify_entry", caller, ErrorCode.UNAUTHORIZED, token_id=token_id, stage=stage)

            already = entry.verified
            if not already:
                self._state.entries[token_id][stage] = entry.mark_verified()

            self._emit(
                AuditEventType.ENTRY_VERIFIED, token_id, caller, self._clock(),
                stage=stage, already_verified=already,
            )
            logger.info("Entry verified", operation="verify_entry", token_id=token_id, stage=stage)
            return LedgerResult.success(True)

    # -------------------------------------------------------------------------
    # authorized updaters
    # -------------------------------------------------------------------------

    def add_authorized_updater(self, caller: str, token_id: int, updater: str, role: str) -> LedgerResult:
        """Grant ``updater`` permission to submit entries for ``token_id``."""
        _require_identity(caller, "caller")
        _require_identity(updater, "updater")
        _require_identity(role, "role")
        _require_token_id(token_id)
        with self._lock:
            if not self._is_owner(token_id, caller):
                return self._reject("add_authorized_updater", caller, ErrorCode.UNAUTHORIZED, token_id=token_id)

            grants = self._state.grants.get(token_id, {})
            if updater in grants:
                return self._reject(
                    "add_authorized_updater", caller, ErrorCode.ALREADY_REGISTERED,
                    token_id=token_id, updater=updater,
                )

            now = self._clock()
            self._state.grants.setdefault(token_id, {})[updater] = AuthorizedUpdater(role=role, added_at=now)

            self._emit(AuditEventType.UPDATER_ADDED, token_id, caller, now, updater=updater, role=role)
            logger.info(
                "Authorized updater added",
                operation="add_authorized_updater",
                token_id=token_id,
                updater=updater,
                role=role,
            )
            return LedgerResult.success(True)

    def remove_authorized_updater(self, caller: str, token_id: int, updater: str) -> LedgerResult:
        """Revoke a grant. Succeeds even when no grant exists."""
        _require_identity(caller, "caller")
        _require_identity(updater, "updater")
        _require_token_id(token_id)
        with self._lock:
            if not self._is_owner(token_id, caller):
                return self._reject("remove_authorized_updater", caller, ErrorCode.UNAUTHORIZED, token_id=token_id)

            grants = self._state.grants.get(token_id)
            existed = False
            if grants is not None and updater in grants:
                del grants[updater]
                existed = True
                if not grants:
                    del self._state.grants[token_id]

            self._emit(
                AuditEventType.UPDATER_REMOVED, token_id, caller, self._clock(),
                updater=updater, existed=existed,
            )
            logger.info(
                "Authorized updater removed",
                operation="remove_authorized_updater",
                token_id=token_id,
                updater=updater,
                existed=existed,
            )
            return LedgerResult.success(True)

    # -------------------------------------------------------------------------
    # reads
    # -------------------------------------------------------------------------

    def get_current_stage(self, token_id: int) -> int:
        with self._lock:
            if token_id not in self._state.registrations and self._config.strict_reads.get():
                raise RegistryError(ErrorCode.TOKEN_NOT_REGISTERED, f"token {token_id} is not registered")
            return self._state.current_stage.get(token_id, 0)

    def get_provenance_entry(self, token_id: int, stage: int) -> Optional[ProvenanceEntry]:
        stage = _require_stage(stage)
        with self._lock:
            return self._state.entries.get(token_id, {}).get(stage)

    def get_full_history(self, token_id: int) -> List[ProvenanceEntry]:
        """Entries for every stage in [0, MAX_STAGE] that has one, ascending."""
        return [entry for _, entry in self.get_history_items(token_id)]

    def get_history_items(self, token_id: int) -> List[Tuple[Stage, ProvenanceEntry]]:
        with self._lock:
            entries = self._state.entries.get(token_id, {})
            return [
                (stage, entries[int(stage)])
                for stage in Stage
                if int(stage) in entries
            ]

    def is_registered_token(self, token_id: int) -> bool:
        with self._lock:
            return token_id in self._state.registrations

    def get_registration(self, token_id: int) -> Optional[TokenRegistration]:
        with self._lock:
            return self._state.registrations.get(token_id)

    def get_authorized_updater(self, token_id: int, updater: str) -> Optional[AuthorizedUpdater]:
        with self._lock:
            return self._state.grants.get(token_id, {}).get(updater)

    def list_authorized_updaters(self, token_id: int) -> Dict[str, AuthorizedUpdater]:
        with self._lock:
            return dict(self._state.grants.get(token_id, {}))

    def get_update_count(self, token_id: int) -> int:
        with self._lock:
            return self._state.update_count.get(token_id, 0)

    def get_total_updates(self) -> int:
        with self._lock:
            return self._state.total_updates

    def is_paused(self) -> bool:
        with self._lock:
            return self._state.paused

    def get_admin(self) -> str:
        with self._lock:
            return self._state.admin

    def snapshot(self) -> LedgerState:
        """Detached copy of the current state."""
        with self._lock:
            return self._state.copy()

    def state_root(self) -> str:
        with self._lock:
            return state_root(self._state)

    def status(self) -> Dict[str, Any]:
        """Summary used by the CLI and health reporting."""
        with self._lock:
            return {
                "admin": self._state.admin,
                "paused": self._state.paused,
                "total_updates": self._state.total_updates,
                "registered_tokens": len(self._state.registrations),
                "ownership_source": self._state.ownership_source,
                "identity_source": self._state.identity_source,
                "state_root": state_root(self._state),
            }
