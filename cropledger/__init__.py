"""
cropledger: stage-ordered provenance ledger for agricultural produce

Each tracked crop batch (a token) accumulates one entry per lifecycle stage,
strictly in order, from PLANTING through SALE. The registry decides who may
register tokens, submit entries, verify entries and delegate submission
rights.

Architecture
────────────

    ┌──────────────────────────────────────────────────────────────────┐
    │  cli.py           command-line surface over a snapshot file      │
    │                                                                  │
    │  registry.py      state transitions, authorization, validation   │
    │  sources.py       ownership / verified-identity collaborators    │
    │  audit.py         hash-chained notification sinks               │
    │                                                                  │
    │  state.py         ledger state, canonical snapshots, schema      │
    │  models.py        stages and record types                        │
    │  errors.py        error kinds and LedgerResult                   │
    │                                                                  │
    │  config.py        YAML + environment configuration              │
    │  observability.py structured logging, correlation ids           │
    │  core.py          hashing, canonical JSON, file helpers          │
    └──────────────────────────────────────────────────────────────────┘

Usage
─────

    from cropledger import ProvenanceRegistry, InMemoryOwnershipSource, InMemoryIdentitySource

    registry = ProvenanceRegistry(
        InMemoryOwnershipSource(),
        InMemoryIdentitySource(["farmer_1"]),
        admin="deployer",
    )
    registry.register_token("farmer_1", 1).unwrap()
    registry.add_provenance_entry("farmer_1", 1, 1, "seeded plot 7").unwrap()
"""

__version__ = "0.3.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import ledger modules on first access."""

    if name in ("ProvenanceRegistry",):
        from cropledger import registry
        return getattr(registry, name)

    if name in ("Stage", "MIN_STAGE", "MAX_STAGE", "TokenRegistration",
                "ProvenanceEntry", "AuthorizedUpdater"):
        from cropledger import models
        return getattr(models, name)

    if name in ("ErrorCode", "LedgerResult", "RegistryError"):
        from cropledger import errors
        return getattr(errors, name)

    if name in ("OwnershipSource", "VerifiedIdentitySource", "SourceError",
                "InMemoryOwnershipSource", "InMemoryIdentitySource",
                "CallableOwnershipSource", "CallableIdentitySource",
                "YamlOwnershipSource", "YamlIdentitySource", "RegisteredOwnerSource"):
        from cropledger import sources
        return getattr(sources, name)

    if name in ("AuditEventType", "AuditEvent", "AuditSink", "AuditLog",
                "NullAuditSink", "LoggingAuditSink", "FanOutAuditSink"):
        from cropledger import audit
        return getattr(audit, name)

    if name in ("LedgerState", "StateFileError", "load_state", "save_state", "state_root"):
        from cropledger import state
        return getattr(state, name)

    if name in ("get_config", "get_config_manager", "ConfigError"):
        from cropledger import config
        return getattr(config, name)

    raise AttributeError(f"module 'cropledger' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Registry
    "ProvenanceRegistry",
    # Models
    "Stage",
    "MIN_STAGE",
    "MAX_STAGE",
    "TokenRegistration",
    "ProvenanceEntry",
    "AuthorizedUpdater",
    # Errors
    "ErrorCode",
    "LedgerResult",
    "RegistryError",
    # Sources
    "OwnershipSource",
    "VerifiedIdentitySource",
    "SourceError",
    "InMemoryOwnershipSource",
    "InMemoryIdentitySource",
    "CallableOwnershipSource",
    "CallableIdentitySource",
    "YamlOwnershipSource",
    "YamlIdentitySource",
    "RegisteredOwnerSource",
    # Audit
    "AuditEventType",
    "AuditEvent",
    "AuditSink",
    "AuditLog",
    "NullAuditSink",
    "LoggingAuditSink",
    "FanOutAuditSink",
    # State
    "LedgerState",
    "StateFileError",
    "load_state",
    "save_state",
    "state_root",
    # Config
    "get_config",
    "get_config_manager",
    "ConfigError",
]
