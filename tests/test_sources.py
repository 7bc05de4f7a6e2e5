"""
Collaborator adapter tests.

Run with: pytest tests/test_sources.py -v
"""

import pytest

from cropledger.registry import ProvenanceRegistry
from cropledger.sources import (
    CallableIdentitySource,
    CallableOwnershipSource,
    InMemoryIdentitySource,
    InMemoryOwnershipSource,
    RegisteredOwnerSource,
    SourceError,
    YamlIdentitySource,
    YamlOwnershipSource,
)


@pytest.fixture
def sources_file(tmp_path):
    path = tmp_path / "sources.yaml"
    path.write_text(
        "farmers:\n"
        "  - farmer_1\n"
        "  - farmer_2\n"
        "owners:\n"
        "  1: farmer_1\n"
        "  2: farmer_2\n",
        encoding="utf-8",
    )
    return path


class TestInMemorySources:
    """Tests for the dictionary and set backed doubles."""

    def test_ownership(self):
        source = InMemoryOwnershipSource({1: "farmer_1"})
        assert source.resolve_owner(1) == "farmer_1"
        assert source.resolve_owner(2) is None
        source.set_owner(2, "farmer_2")
        assert source.resolve_owner(2) == "farmer_2"
        assert source.address == "memory:ownership"

    def test_identity(self):
        source = InMemoryIdentitySource(["farmer_1"])
        assert source.is_eligible_originator("farmer_1")
        source.revoke("farmer_1")
        assert not source.is_eligible_originator("farmer_1")
        source.add("farmer_3")
        assert source.is_eligible_originator("farmer_3")


class TestCallableSources:
    """Tests for adapters wrapping external lookups."""

    def test_callable_ownership(self):
        source = CallableOwnershipSource({5: "coop"}.get, address="rpc:owners")
        assert source.resolve_owner(5) == "coop"
        assert source.resolve_owner(6) is None
        assert source.address == "rpc:owners"

    def test_callable_identity(self):
        source = CallableIdentitySource(lambda ident: ident.startswith("farmer_"), address="rpc:kyc")
        assert source.is_eligible_originator("farmer_9")
        assert not source.is_eligible_originator("mallory")

    def test_address_required(self):
        with pytest.raises(SourceError):
            CallableOwnershipSource(lambda t: None, address="")
        with pytest.raises(SourceError):
            CallableIdentitySource(lambda i: True, address="")

    def test_queried_per_call(self, clock):
        """Collaborator answers are never cached between operations."""
        verified = {"farmer_1"}
        identity = CallableIdentitySource(lambda ident: ident in verified, address="rpc:kyc")
        reg = ProvenanceRegistry(InMemoryOwnershipSource(), identity, admin="deployer", clock=clock)
        reg.register_token("farmer_1", 1).unwrap()

        assert reg.add_provenance_entry("farmer_1", 1, 1, "x").ok
        verified.clear()
        assert not reg.add_provenance_entry("farmer_1", 1, 2, "x").ok


class TestYamlSources:
    """Tests for file-backed registries."""

    def test_identity_file(self, sources_file):
        source = YamlIdentitySource(sources_file)
        assert source.is_eligible_originator("farmer_2")
        assert not source.is_eligible_originator("mallory")
        assert source.address == f"file:{sources_file}"

    def test_ownership_file(self, sources_file):
        source = YamlOwnershipSource(sources_file)
        assert source.resolve_owner(1) == "farmer_1"
        assert source.resolve_owner(3) is None

    def test_reload(self, sources_file):
        source = YamlIdentitySource(sources_file)
        sources_file.write_text("farmers: [farmer_9]\n", encoding="utf-8")
        source.reload()
        assert source.is_eligible_originator("farmer_9")
        assert not source.is_eligible_originator("farmer_1")

    def test_missing_sections_are_empty(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert not YamlIdentitySource(path).is_eligible_originator("farmer_1")
        assert YamlOwnershipSource(path).resolve_owner(1) is None

    def test_missing_file(self, tmp_path):
        with pytest.raises(SourceError, match="not found"):
            YamlIdentitySource(tmp_path / "absent.yaml")

    def test_bad_layout(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("farmers: farmer_1\nowners: [1, 2]\n", encoding="utf-8")
        with pytest.raises(SourceError):
            YamlIdentitySource(path)
        with pytest.raises(SourceError):
            YamlOwnershipSource(path)

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("farmers: [farmer_1\n", encoding="utf-8")
        with pytest.raises(SourceError, match="not valid YAML"):
            YamlIdentitySource(path)

    def test_non_integer_token_key(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("owners:\n  lot-a: farmer_1\n", encoding="utf-8")
        with pytest.raises(SourceError, match="invalid token id"):
            YamlOwnershipSource(path)


class TestRegisteredOwnerSource:
    """Tests for the ledger-backed ownership source."""

    def test_unbound_resolves_nothing(self):
        assert RegisteredOwnerSource().resolve_owner(1) is None

    def test_rebinding_on_rewire(self, registered):
        source = RegisteredOwnerSource(address="ledger:local")
        registered.set_ownership_source("deployer", source).unwrap()
        assert source.resolve_owner(1) == "farmer_1"
