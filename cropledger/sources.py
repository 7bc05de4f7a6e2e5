"""
Collaborator adapters consumed by the registry.

The registry never decides ownership or originator eligibility itself. It
asks two injected collaborators, once per call, during validation:

    OwnershipSource.resolve_owner(token_id) -> identity
    VerifiedIdentitySource.is_eligible_originator(identity) -> bool

Every implementation exposes an ``address`` string. The registry stores the
address in its state snapshot and reports it in audit details when a source
is rewired.

Implementations:
    InMemoryOwnershipSource / InMemoryIdentitySource   test doubles
    CallableOwnershipSource / CallableIdentitySource   wrap any lookup (RPC, DB)
    YamlOwnershipSource / YamlIdentitySource           file-backed registries
    RegisteredOwnerSource                               owners from the ledger itself
"""

from __future__ import annotations

import pathlib
import threading
from typing import TYPE_CHECKING, Any, Callable, Dict, FrozenSet, Iterable, Optional, Protocol, Set, Union

import yaml

from cropledger.core import load_yaml

if TYPE_CHECKING:
    from cropledger.registry import ProvenanceRegistry


class SourceError(Exception):
    """A collaborator could not be constructed or loaded."""
    pass


class OwnershipSource(Protocol):
    """Answers who currently owns a token."""

    @property
    def address(self) -> str:
        ...

    def resolve_owner(self, token_id: int) -> Optional[str]:
        ...


class VerifiedIdentitySource(Protocol):
    """Answers whether an identity is a verified originator (farmer)."""

    @property
    def address(self) -> str:
        ...

    def is_eligible_originator(self, identity: str) -> bool:
        ...


# =============================================================================
# TEST DOUBLES
# =============================================================================

class InMemoryOwnershipSource:
    """Dictionary-backed ownership source."""

    def __init__(
        self,
        owners: Optional[Dict[int, str]] = None,
        address: str = "memory:ownership",
    ):
        self._owners: Dict[int, str] = dict(owners or {})
        self._address = address

    @property
    def address(self) -> str:
        return self._address

    def resolve_owner(self, token_id: int) -> Optional[str]:
        return self._owners.get(token_id)

    def set_owner(self, token_id: int, owner: str) -> None:
        self._owners[token_id] = owner


class InMemoryIdentitySource:
    """Set-backed verified-identity source."""

    def __init__(
        self,
        verified: Iterable[str] = (),
        address: str = "memory:identity",
    ):
        self._verified: Set[str] = set(verified)
        self._address = address

    @property
    def address(self) -> str:
        return self._address

    def is_eligible_originator(self, identity: str) -> bool:
        return identity in self._verified

    def add(self, identity: str) -> None:
        self._verified.add(identity)

    def revoke(self, identity: str) -> None:
        self._verified.discard(identity)


# =============================================================================
# PRODUCTION ADAPTERS
# =============================================================================

class CallableOwnershipSource:
    """Adapts any ``token_id -> owner`` lookup, e.g. an RPC client method."""

    def __init__(self, lookup: Callable[[int], Optional[str]], address: str):
        if not address:
            raise SourceError("ownership source address must be non-empty")
        self._lookup = lookup
        self._address = address

    @property
    def address(self) -> str:
        return self._address

    def resolve_owner(self, token_id: int) -> Optional[str]:
        owner = self._lookup(token_id)
        return str(owner) if owner else None


class CallableIdentitySource:
    """Adapts any ``identity -> bool`` predicate."""

    def __init__(self, predicate: Callable[[str], Any], address: str):
        if not address:
            raise SourceError("identity source address must be non-empty")
        self._predicate = predicate
        self._address = address

    @property
    def address(self) -> str:
        return self._address

    def is_eligible_originator(self, identity: str) -> bool:
        return bool(self._predicate(identity))


def _load_mapping(path: pathlib.Path) -> Dict[str, Any]:
    if not path.exists():
        raise SourceError(f"source registry file not found: {path}")
    try:
        data = load_yaml(path) or {}
    except yaml.YAMLError as e:
        raise SourceError(f"source registry file is not valid YAML: {path}: {e}") from e
    if not isinstance(data, dict):
        raise SourceError(f"source registry file must be a mapping: {path}")
    return data


class YamlIdentitySource:
    """
    Verified farmers listed in a YAML registry file.

    Expected layout::

        farmers:
          - farmer_1
          - farmer_2
    """

    def __init__(self, path: Union[str, pathlib.Path]):
        self._path = pathlib.Path(path)
        self._lock = threading.Lock()
        self._verified: FrozenSet[str] = frozenset()
        self.reload()

    @property
    def address(self) -> str:
        return f"file:{self._path}"

    def reload(self) -> None:
        data = _load_mapping(self._path)
        farmers = data.get("farmers") or []
        if not isinstance(farmers, list):
            raise SourceError(f"'farmers' must be a list in {self._path}")
        with self._lock:
            self._verified = frozenset(str(f) for f in farmers)

    def is_eligible_originator(self, identity: str) -> bool:
        with self._lock:
            return identity in self._verified


class YamlOwnershipSource:
    """
    Token owners listed in a YAML registry file.

    Expected layout::

        owners:
          1: farmer_1
          2: farmer_2
    """

    def __init__(self, path: Union[str, pathlib.Path]):
        self._path = pathlib.Path(path)
        self._lock = threading.Lock()
        self._owners: Dict[int, str] = {}
        self.reload()

    @property
    def address(self) -> str:
        return f"file:{self._path}"

    def reload(self) -> None:
        data = _load_mapping(self._path)
        owners = data.get("owners") or {}
        if not isinstance(owners, dict):
            raise SourceError(f"'owners' must be a mapping in {self._path}")
        try:
            parsed = {int(k): str(v) for k, v in owners.items()}
        except (TypeError, ValueError) as e:
            raise SourceError(f"invalid token id in {self._path}: {e}") from e
        with self._lock:
            self._owners = parsed

    def resolve_owner(self, token_id: int) -> Optional[str]:
        with self._lock:
            return self._owners.get(token_id)


class RegisteredOwnerSource:
    """
    Resolves owners from the registry's own registration records.

    Unregistered tokens resolve to None.
    """

    def __init__(self, registry: Optional["ProvenanceRegistry"] = None, address: str = "ledger:self"):
        self._registry = registry
        self._address = address

    @property
    def address(self) -> str:
        return self._address

    def bind(self, registry: "ProvenanceRegistry") -> None:
        self._registry = registry

    def resolve_owner(self, token_id: int) -> Optional[str]:
        if self._registry is None:
            return None
        reg = self._registry.get_registration(token_id)
        return reg.owner if reg else None
