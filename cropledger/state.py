"""State container and snapshot persistence for the provenance ledger.

A LedgerState holds every map the registry mutates. It is a plain object
owned by one registry instance, so independent ledgers never share state.

Snapshots are canonical JSON documents:

 - state_root = sha256(canonical_json(state.to_dict()))
 - load_state() validates the document against the bundled JSON Schema
   (Draft 2020-12) before rebuilding the state

Composite keys are nested mappings: entries[token][stage] and
grants[token][updater]. JSON object keys are strings, so token ids and
stages are stringified on save and parsed back on load.
"""

from __future__ import annotations

import copy
import pathlib
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Optional, Union

from jsonschema import Draft202012Validator

from cropledger.core import (
    PACKAGE_ROOT,
    canonical_json_bytes,
    load_json,
    sha256_bytes,
    write_canonical_json,
)
from cropledger.models import AuthorizedUpdater, ProvenanceEntry, TokenRegistration

STATE_SCHEMA_PATH = PACKAGE_ROOT / "schemas" / "ledger-state.schema.json"
STATE_FORMAT = "cropledger.state.v1"


class StateFileError(Exception):
    """A snapshot could not be read or failed validation."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = list(errors or [])
        super().__init__(message)


@dataclass
class LedgerState:
    """All mutable ledger state."""
    admin: str
    paused: bool = False
    total_updates: int = 0
    ownership_source: str = ""
    identity_source: str = ""
    registrations: Dict[int, TokenRegistration] = field(default_factory=dict)
    current_stage: Dict[int, int] = field(default_factory=dict)
    update_count: Dict[int, int] = field(default_factory=dict)
    entries: Dict[int, Dict[int, ProvenanceEntry]] = field(default_factory=dict)
    grants: Dict[int, Dict[str, AuthorizedUpdater]] = field(default_factory=dict)

    def copy(self) -> "LedgerState":
        """Deep copy; records are frozen so only the containers are copied."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format": STATE_FORMAT,
            "admin": self.admin,
            "paused": self.paused,
            "total_updates": self.total_updates,
            "ownership_source": self.ownership_source,
            "identity_source": self.identity_source,
            "tokens": {
                str(token_id): {
                    "registration": reg.to_dict(),
                    "current_stage": self.current_stage.get(token_id, 0),
                    "update_count": self.update_count.get(token_id, 0),
                    "entries": {
                        str(stage): entry.to_dict()
                        for stage, entry in sorted(self.entries.get(token_id, {}).items())
                    },
                    "grants": {
                        updater: grant.to_dict()
                        for updater, grant in sorted(self.grants.get(token_id, {}).items())
                    },
                }
                for token_id, reg in sorted(self.registrations.items())
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerState":
        state = cls(
            admin=str(data["admin"]),
            paused=bool(data.get("paused", False)),
            total_updates=int(data.get("total_updates", 0)),
            ownership_source=str(data.get("ownership_source", "")),
            identity_source=str(data.get("identity_source", "")),
        )
        for key, token in (data.get("tokens") or {}).items():
            token_id = int(key)
            state.registrations[token_id] = TokenRegistration.from_dict(token["registration"])
            state.current_stage[token_id] = int(token.get("current_stage", 0))
            state.update_count[token_id] = int(token.get("update_count", 0))
            entries = {
                int(stage): ProvenanceEntry.from_dict(entry)
                for stage, entry in (token.get("entries") or {}).items()
            }
            if entries:
                state.entries[token_id] = entries
            grants = {
                str(updater): AuthorizedUpdater.from_dict(grant)
                for updater, grant in (token.get("grants") or {}).items()
            }
            if grants:
                state.grants[token_id] = grants
        return state


def state_root(state: LedgerState) -> str:
    """Compute state_root = sha256(canonical_json(state))."""
    return sha256_bytes(canonical_json_bytes(state.to_dict()))


@lru_cache(maxsize=1)
def state_validator() -> Draft202012Validator:
    """Validator for snapshot documents."""
    schema = load_json(STATE_SCHEMA_PATH)
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def validate_state_document(obj: Any) -> List[str]:
    """Return schema errors for a snapshot document (empty if valid)."""
    return [
        f"{error.json_path}: {error.message}"
        for error in state_validator().iter_errors(obj)
    ]


def save_state(state: LedgerState, path: Union[str, pathlib.Path]) -> str:
    """Write a canonical snapshot and return its digest."""
    return write_canonical_json(pathlib.Path(path), state.to_dict())


def load_state(path: Union[str, pathlib.Path]) -> LedgerState:
    """Read, validate and rebuild a snapshot."""
    path = pathlib.Path(path)
    if not path.exists():
        raise StateFileError(f"state file not found: {path}")
    try:
        doc = load_json(path)
    except ValueError as e:
        raise StateFileError(f"state file is not valid JSON: {path}: {e}") from e

    errors = validate_state_document(doc)
    if errors:
        raise StateFileError(f"invalid ledger state: {path}: {errors[0]}", errors)

    return LedgerState.from_dict(doc)
