"""
Command-line interface tests.

Each test drives cropledger.cli.main against a snapshot in tmp_path and
reads the machine output from stdout.

Run with: pytest tests/test_cli.py -v
"""

import json
import pathlib

import pytest
import yaml

from cropledger.cli import EXIT_REJECTED, format_output, main, OutputFormat
from cropledger.config import get_config_manager
from cropledger.state import load_state


@pytest.fixture
def ledger(tmp_path: pathlib.Path):
    """Paths for a snapshot and a sources file listing two farmers."""
    sources = tmp_path / "sources.yaml"
    sources.write_text(
        "farmers:\n  - farmer_1\n  - farmer_2\nowners:\n  1: farmer_2\n",
        encoding="utf-8",
    )
    state = tmp_path / "ledger.json"
    return state, sources


def _run(capsys, state, sources, *args):
    capsys.readouterr()
    rc = main(["--state", str(state), "--sources", str(sources), *args])
    out = capsys.readouterr()
    return rc, (json.loads(out.out) if out.out.strip() else None), out


def _init(capsys, state, sources, admin="deployer"):
    rc, payload, _ = _run(capsys, state, sources, "init", "--admin", admin)
    assert rc == 0
    return payload


class TestInit:
    """Tests for ledger creation."""

    def test_init_creates_snapshot(self, capsys, ledger):
        state, sources = ledger
        payload = _init(capsys, state, sources)

        assert state.exists()
        assert payload["admin"] == "deployer"
        assert load_state(state).admin == "deployer"

    def test_init_refuses_overwrite(self, capsys, ledger):
        state, sources = ledger
        _init(capsys, state, sources)

        rc, payload, out = _run(capsys, state, sources, "init", "--admin", "someone")
        assert rc == 1
        assert payload is None
        assert "already exists" in out.err

        rc, _, _ = _run(capsys, state, sources, "init", "--admin", "someone", "--force")
        assert rc == 0
        assert load_state(state).admin == "someone"

    def test_commands_need_a_ledger(self, capsys, ledger):
        state, sources = ledger
        rc, _, out = _run(capsys, state, sources, "status")
        assert rc == 1
        assert "cropledger init" in out.err


class TestMutations:
    """Tests for commands that change the ledger."""

    def test_walkthrough(self, capsys, ledger):
        state, sources = ledger
        _init(capsys, state, sources)

        rc, payload, _ = _run(capsys, state, sources, "register", "1", "--as", "farmer_1")
        assert rc == 0
        assert payload["ok"] is True
        assert payload["state_root"]

        rc, _, _ = _run(capsys, state, sources, "add-entry", "1", "growing", "seeded", "--as", "farmer_1",
                        "--location", "0xdeadbeef")
        assert rc == 0

        rc, payload, _ = _run(capsys, state, sources, "add-entry", "1", "1", "again", "--as", "farmer_1")
        assert rc == EXIT_REJECTED
        assert payload == {"ok": False, "error": "StageOutOfOrder", "code": 107}

        rc, _, _ = _run(capsys, state, sources, "verify", "1", "1", "--as", "deployer")
        assert rc == 0

        rc, payload, _ = _run(capsys, state, sources, "add-entry", "1", "2", "cut", "--as", "farmer_2")
        assert payload["error"] == "Unauthorized"

        rc, _, _ = _run(capsys, state, sources, "grant", "1", "farmer_2", "--role", "harvester", "--as", "farmer_1")
        assert rc == 0
        rc, _, _ = _run(capsys, state, sources, "add-entry", "1", "harvesting", "cut", "--as", "farmer_2")
        assert rc == 0

        rc, payload, _ = _run(capsys, state, sources, "stage", "1")
        assert payload["current_stage"] == 2
        assert payload["stage_name"] == "harvesting"

        rc, payload, _ = _run(capsys, state, sources, "history", "1")
        assert payload["count"] == 2
        assert [e["stage_name"] for e in payload["entries"]] == ["growing", "harvesting"]
        assert payload["entries"][0]["verified"] is True
        assert payload["entries"][0]["location_hash"] == "deadbeef"

    def test_rejection_does_not_touch_snapshot(self, capsys, ledger):
        state, sources = ledger
        _init(capsys, state, sources)
        before = state.read_bytes()

        rc, payload, _ = _run(capsys, state, sources, "pause", "--as", "farmer_1")
        assert rc == EXIT_REJECTED
        assert payload["code"] == 100
        assert state.read_bytes() == before

    def test_unverified_caller(self, capsys, ledger):
        state, sources = ledger
        _init(capsys, state, sources)
        _run(capsys, state, sources, "register", "1", "--as", "mallory")

        rc, payload, _ = _run(capsys, state, sources, "add-entry", "1", "1", "x", "--as", "mallory")
        assert rc == EXIT_REJECTED
        assert payload["error"] == "InvalidUpdater"

    def test_pause_and_transfer(self, capsys, ledger):
        state, sources = ledger
        _init(capsys, state, sources)
        _run(capsys, state, sources, "register", "1", "--as", "farmer_1")

        assert _run(capsys, state, sources, "pause", "--as", "deployer")[0] == 0
        rc, payload, _ = _run(capsys, state, sources, "add-entry", "1", "1", "x", "--as", "farmer_1")
        assert payload["error"] == "Paused"

        assert _run(capsys, state, sources, "transfer-admin", "auditor", "--as", "deployer")[0] == 0
        assert _run(capsys, state, sources, "unpause", "--as", "deployer")[0] == EXIT_REJECTED
        assert _run(capsys, state, sources, "unpause", "--as", "auditor")[0] == 0

        rc, payload, _ = _run(capsys, state, sources, "status")
        assert payload["admin"] == "auditor"
        assert payload["paused"] is False

    def test_grant_and_revoke(self, capsys, ledger):
        state, sources = ledger
        _init(capsys, state, sources)
        _run(capsys, state, sources, "register", "1", "--as", "farmer_1")
        _run(capsys, state, sources, "grant", "1", "farmer_2", "--role", "miller", "--as", "farmer_1")

        rc, payload, _ = _run(capsys, state, sources, "grants", "1")
        assert payload["grants"]["farmer_2"]["role"] == "miller"

        assert _run(capsys, state, sources, "revoke", "1", "farmer_2", "--as", "farmer_1")[0] == 0
        assert _run(capsys, state, sources, "revoke", "1", "farmer_2", "--as", "farmer_1")[0] == 0
        rc, payload, _ = _run(capsys, state, sources, "grants", "1")
        assert payload["grants"] == {}

    def test_location_text(self, capsys, ledger):
        state, sources = ledger
        _init(capsys, state, sources)
        _run(capsys, state, sources, "register", "1", "--as", "farmer_1")
        _run(capsys, state, sources, "add-entry", "1", "1", "x", "--location-text", "ab", "--as", "farmer_1")

        rc, payload, _ = _run(capsys, state, sources, "entry", "1", "1")
        assert payload["entry"]["location_hash"] == "6162"

    def test_bad_hex_location(self, capsys, ledger):
        state, sources = ledger
        _init(capsys, state, sources)
        rc, _, out = _run(capsys, state, sources, "add-entry", "1", "1", "x", "--location", "zz", "--as", "farmer_1")
        assert rc == 1
        assert "hex" in out.err

    def test_resolved_owner_policy_from_config(self, capsys, ledger, tmp_path):
        state, sources = ledger
        config = tmp_path / "cropledger.yaml"
        config.write_text("registry:\n  owner_policy: resolved\n", encoding="utf-8")
        _init(capsys, state, sources)

        rc, _, _ = _run(capsys, state, sources, "--config", str(config), "register", "1", "--as", "farmer_1")
        assert rc == 0
        assert load_state(state).registrations[1].owner == "farmer_2"


class TestQueries:
    """Tests for read-only commands."""

    def test_unknown_token_reads(self, capsys, ledger):
        state, sources = ledger
        _init(capsys, state, sources)

        rc, payload, _ = _run(capsys, state, sources, "stage", "9")
        assert rc == 0
        assert payload == {"token": 9, "registered": False, "current_stage": 0, "stage_name": "planting"}

        rc, payload, _ = _run(capsys, state, sources, "entry", "9", "shipping")
        assert payload["entry"] is None
        assert payload["stage"] == 4

    def test_strict_stage_read_is_a_rejection(self, capsys, ledger, tmp_path):
        state, sources = ledger
        config = tmp_path / "cropledger.yaml"
        config.write_text("registry:\n  strict_reads: true\n", encoding="utf-8")
        _init(capsys, state, sources)

        rc, payload, out = _run(capsys, state, sources, "--config", str(config), "stage", "99")
        assert rc == EXIT_REJECTED
        assert payload == {"ok": False, "error": "TokenNotRegistered", "code": 108}
        assert "Traceback" not in out.err

    def test_yaml_output(self, capsys, ledger):
        state, sources = ledger
        _init(capsys, state, sources)
        capsys.readouterr()

        rc = main(["--state", str(state), "--format", "yaml", "status"])
        out = capsys.readouterr().out
        assert rc == 0
        assert yaml.safe_load(out)["admin"] == "deployer"

    def test_missing_sources_file(self, capsys, ledger, tmp_path):
        state, _ = ledger
        _init(capsys, state, ledger[1])
        rc, _, out = _run(capsys, state, tmp_path / "absent.yaml", "status")
        assert rc == 1
        assert "not found" in out.err

    def test_corrupt_snapshot(self, capsys, ledger):
        state, sources = ledger
        state.write_text('{"format": "something-else"}', encoding="utf-8")
        rc, _, out = _run(capsys, state, sources, "status")
        assert rc == 1
        assert "invalid ledger state" in out.err


class TestConfigCommands:
    """Tests for config subcommands."""

    def test_config_get(self, capsys, ledger):
        state, sources = ledger
        rc, payload, _ = _run(capsys, state, sources, "config", "get", "registry.max_metadata_length")
        assert rc == 0
        assert payload == {"path": "registry.max_metadata_length", "value": 1000}

    def test_config_show(self, capsys, ledger):
        state, sources = ledger
        rc, payload, _ = _run(capsys, state, sources, "config", "show")
        assert payload["registry"]["owner_policy"] == "caller"

    def test_config_validate(self, capsys, ledger, monkeypatch):
        state, sources = ledger
        assert _run(capsys, state, sources, "config", "validate")[1]["valid"] is True

        monkeypatch.setenv("CROPLEDGER_LOG_FORMAT", "xml")
        rc, payload, _ = _run(capsys, state, sources, "config", "validate")
        assert rc == 1
        assert payload["valid"] is False

    def test_invalid_environment_refused_before_dispatch(self, capsys, ledger, monkeypatch):
        state, sources = ledger
        _init(capsys, state, sources)
        before = state.read_bytes()

        monkeypatch.setenv("CROPLEDGER_OWNER_POLICY", "Resolved")
        rc, payload, out = _run(capsys, state, sources, "register", "1", "--as", "farmer_1")
        assert rc == 1
        assert payload is None
        assert "Invalid configuration" in out.err
        assert "registry.owner_policy" in out.err
        assert state.read_bytes() == before

        rc, payload, _ = _run(capsys, state, sources, "config", "validate")
        assert rc == 1
        assert any(e.startswith("registry.owner_policy") for e in payload["errors"])

    def test_log_settings_from_config_file(self, capsys, ledger, tmp_path):
        state, sources = ledger
        _init(capsys, state, sources)

        quiet = tmp_path / "quiet.yaml"
        quiet.write_text("observability:\n  log_level: error\n  log_format: text\n", encoding="utf-8")
        rc, _, out = _run(capsys, state, sources, "--config", str(quiet), "register", "1", "--as", "farmer_1")
        assert rc == 0
        assert "Token registered" not in out.err
        assert not any(line.startswith("{") for line in out.err.splitlines())

        get_config_manager().reset()
        text = tmp_path / "text.yaml"
        text.write_text("observability:\n  log_format: text\n", encoding="utf-8")
        rc, _, out = _run(capsys, state, sources, "--config", str(text), "register", "2", "--as", "farmer_1")
        assert rc == 0
        assert "INFO cropledger.registry.registry: Token registered" in out.err
        assert not any(line.startswith("{") for line in out.err.splitlines())

    def test_config_get_invalid_path(self, capsys, ledger):
        state, sources = ledger
        rc, _, out = _run(capsys, state, sources, "config", "get", "registry.bogus")
        assert rc == 1
        assert "Invalid config path" in out.err


class TestFormatOutput:
    """Tests for output rendering."""

    def test_text(self):
        assert format_output({"a": 1, "b": "x"}, OutputFormat.TEXT) == "a: 1\nb: x"
        assert format_output([1, 2], OutputFormat.TEXT) == "1\n2"

    def test_json(self):
        assert json.loads(format_output({"a": 1})) == {"a": 1}
