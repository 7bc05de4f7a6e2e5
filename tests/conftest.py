import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import cropledger`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from cropledger.audit import AuditLog  # noqa: E402
from cropledger.config import get_config_manager  # noqa: E402
from cropledger.observability import apply_logging_config  # noqa: E402
from cropledger.registry import ProvenanceRegistry  # noqa: E402
from cropledger.sources import InMemoryIdentitySource, InMemoryOwnershipSource  # noqa: E402

ADMIN = "deployer"
FARMER_1 = "farmer_1"
FARMER_2 = "farmer_2"


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless CROPLEDGER_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('CROPLEDGER_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set CROPLEDGER_RUN_SLOW=1 to enable'))


class StepClock:
    """Deterministic ledger clock advancing one second per reading."""

    def __init__(self, start: int = 1_700_000_000):
        self.now = start

    def __call__(self) -> int:
        self.now += 1
        return self.now


@pytest.fixture(autouse=True)
def _clean_config(monkeypatch):
    """Every test starts from default configuration with no CROPLEDGER_* overrides."""
    for key in list(os.environ):
        if key.startswith("CROPLEDGER_") and key != "CROPLEDGER_RUN_SLOW":
            monkeypatch.delenv(key, raising=False)
    get_config_manager().reset()
    apply_logging_config()
    yield
    get_config_manager().reset()
    apply_logging_config()


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def ownership():
    return InMemoryOwnershipSource()


@pytest.fixture
def identity():
    return InMemoryIdentitySource([FARMER_1, FARMER_2])


@pytest.fixture
def audit_log():
    return AuditLog()


@pytest.fixture
def registry(ownership, identity, audit_log, clock):
    return ProvenanceRegistry(
        ownership,
        identity,
        admin=ADMIN,
        audit_sink=audit_log,
        clock=clock,
    )


@pytest.fixture
def registered(registry):
    """Registry with token 1 registered by farmer_1."""
    registry.register_token(FARMER_1, 1).unwrap()
    return registry
